from __future__ import annotations
from typing import Optional
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from botgateway.adapters.base import RawEvent
from botgateway.adapters.registry import AdapterRegistry
from botgateway.config import Settings
from botgateway.core.gateway import Gateway
from botgateway.core.pipeline import PipelineClient
from botgateway.domain.errors import AuthError, GatewayError, NotRunningError, RateLimitedError
from botgateway.domain.models import OutboundMessage
from botgateway.persistence.db import make_engine, make_session_factory
from botgateway.persistence.migrations import init_db
from botgateway.protocol.api_models import CreateBotRequest, SendRequest, UpdateBotRequest
from botgateway.security.auth import client_principal
from botgateway.observability.logging import configure_logging, get_logger
from botgateway.observability import metrics

log = get_logger("app")

VERSION = "0.1.0"

def _error_response(err: GatewayError, status_code: Optional[int] = None) -> JSONResponse:
    headers = {}
    if isinstance(err, RateLimitedError):
        headers["Retry-After"] = str(max(1, round(err.retry_after_s)))
    return JSONResponse(status_code=status_code or err.http_status,
                        content={"success": False, "error": err.to_dict()}, headers=headers)

def create_app(settings: Settings, registry: Optional[AdapterRegistry] = None,
               pipeline: Optional[PipelineClient] = None) -> FastAPI:
    configure_logging(settings.log_level, settings.json_logs)
    app = FastAPI(title="Bot Gateway", version=VERSION)

    engine = make_engine(settings)
    session_factory = make_session_factory(engine)
    gateway = Gateway(settings, engine, session_factory, registry=registry, pipeline=pipeline)
    app.state.gateway = gateway

    @app.on_event("startup")
    async def _startup():
        await init_db(engine)
        await gateway.start()
        log.info("server_started", host=settings.host, port=settings.port)

    @app.on_event("shutdown")
    async def _shutdown():
        await gateway.stop()
        await engine.dispose()

    # ------------------------------------------------------------------
    # error mapping
    # ------------------------------------------------------------------

    @app.exception_handler(GatewayError)
    async def _gateway_error(request: Request, exc: GatewayError):
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"success": False, "error": {
            "code": "validation_error", "message": "invalid request", "details": {"errors": exc.errors()},
        }})

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        log.exception("unhandled_error", path=request.url.path)
        return JSONResponse(status_code=500, content={"success": False, "error": {
            "code": "internal", "message": "internal server error",
        }})

    @app.middleware("http")
    async def _count_requests(request: Request, call_next):
        response = await call_next(request)
        route = request.scope.get("route")
        metrics.api_requests.labels(route=getattr(route, "path", "unmatched"), status=str(response.status_code)).inc()
        return response

    async def _auth(x_api_key: str | None = Header(default=None)) -> str:
        principal = client_principal(settings, x_api_key)
        if principal is None:
            raise AuthError("missing or unknown API key")
        if not gateway.api_rate_limiter.allow(principal):
            raise RateLimitedError("too many management requests", retry_after_s=1.0 / max(settings.api_rate_limit_rps, 0.001))
        return principal

    def _tenant(x_tenant_id: str | None = Header(default=None), tenant_id: str | None = Query(default=None)) -> str | None:
        return x_tenant_id or tenant_id

    # ------------------------------------------------------------------
    # health / metrics / status
    # ------------------------------------------------------------------

    @app.get(settings.health_path)
    async def healthz():
        return {"ok": True, "service": "bot-gateway", "version": VERSION, "is_healthy": gateway.monitor.is_healthy}

    @app.get(settings.metrics_path)
    async def metrics_endpoint():
        return PlainTextResponse(generate_latest().decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

    @app.get("/status")
    async def status(_=Depends(_auth)):
        return {"success": True, **(await gateway.status())}

    # ------------------------------------------------------------------
    # bots
    # ------------------------------------------------------------------

    @app.get("/bots")
    async def list_bots(tenant_id: str | None = Depends(_tenant), _=Depends(_auth)):
        bots = await gateway.manager.list_bots(tenant_id=tenant_id)
        return {"success": True, "bots": bots}

    @app.post("/bots", status_code=201)
    async def create_bot(req: CreateBotRequest, tenant_id: str | None = Depends(_tenant), _=Depends(_auth)):
        bot = await gateway.manager.create_bot(
            tenant_id=req.tenant_id or tenant_id or "", name=req.name, platform=req.platform,
            credentials=req.credentials, webhook_url=req.webhook_url, settings=req.settings,
            auto_start=req.auto_start,
        )
        return {"success": True, "bot": bot.model_dump(mode="json")}

    @app.get("/bots/{bot_id}")
    async def get_bot(bot_id: str, tenant_id: str | None = Depends(_tenant), _=Depends(_auth)):
        bot = await gateway.manager.get_bot(bot_id, tenant_id)
        rb = gateway.manager.running_bot(bot_id)
        return {"success": True, "bot": {
            **bot.model_dump(mode="json"),
            "is_running": rb is not None,
            "started_at": rb.started_at.isoformat() if rb else None,
        }}

    @app.patch("/bots/{bot_id}")
    async def update_bot(bot_id: str, req: UpdateBotRequest, tenant_id: str | None = Depends(_tenant), _=Depends(_auth)):
        bot = await gateway.manager.update_settings(
            bot_id, tenant_id, settings=req.settings, webhook_url=req.webhook_url,
            auto_start=req.auto_start, name=req.name,
        )
        return {"success": True, "bot": bot.model_dump(mode="json")}

    @app.post("/bots/{bot_id}/start")
    async def start_bot(bot_id: str, tenant_id: str | None = Depends(_tenant), _=Depends(_auth)):
        result = await gateway.manager.start_bot(bot_id, tenant_id)
        return {"success": result.success, "result": result.model_dump(mode="json")}

    @app.post("/bots/{bot_id}/stop")
    async def stop_bot(bot_id: str, tenant_id: str | None = Depends(_tenant), _=Depends(_auth)):
        result = await gateway.manager.stop_bot(bot_id, tenant_id)
        return {"success": result.success, "result": result.model_dump(mode="json")}

    @app.post("/bots/{bot_id}/send")
    async def send(bot_id: str, req: SendRequest, tenant_id: str | None = Depends(_tenant), _=Depends(_auth)):
        await gateway.manager.get_bot(bot_id, tenant_id)
        ack = await gateway.router.send(bot_id, OutboundMessage(
            chat_id=req.channel_id, content=req.content, type=req.message_type, options=req.options,
        ))
        return {"success": True, "ack": ack.model_dump(mode="json")}

    @app.get("/platforms/select")
    async def select_platform(preferred: str | None = None, priority: str = "normal", _=Depends(_auth)):
        return {"success": True, "platform": gateway.router.select_optimal_platform(preferred, priority)}

    # ------------------------------------------------------------------
    # platform webhooks (authenticated by the adapters, not by API key)
    # ------------------------------------------------------------------

    def _raw_event(request: Request, body: bytes) -> RawEvent:
        return RawEvent(body=body, headers=dict(request.headers), query=dict(request.query_params),
                        method=request.method)

    def _render(status_code: int, body, media_type: str) -> Response:
        if media_type == "application/json":
            return JSONResponse(status_code=status_code, content=body)
        return PlainTextResponse(str(body), status_code=status_code, media_type=media_type)

    @app.post("/webhook/{platform}/{bot_id}")
    async def webhook(platform: str, bot_id: str, request: Request):
        event = _raw_event(request, await request.body())
        try:
            result = await gateway.dispatcher.dispatch(platform, bot_id, event)
        except NotRunningError as e:
            return _error_response(e, status_code=404)
        return _render(result.status_code, result.body, result.media_type)

    @app.get("/webhook/{platform}/{bot_id}")
    async def webhook_handshake(platform: str, bot_id: str, request: Request):
        event = _raw_event(request, b"")
        try:
            reply = gateway.dispatcher.handshake(platform, bot_id, event)
        except NotRunningError as e:
            return _error_response(e, status_code=404)
        if reply is None:
            return JSONResponse(status_code=405, content={"success": False, "error": {
                "code": "handshake_not_supported", "message": f"{platform} has no GET handshake",
            }})
        return _render(reply.status_code, reply.body, reply.media_type)

    return app
