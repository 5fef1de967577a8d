from __future__ import annotations
import json
import typer
import httpx
from rich import print
from rich.table import Table

app = typer.Typer(help="Bot Gateway CLI - operator client for the bot lifecycle and messaging gateway.")

def _http_url(host: str, port: int, path: str) -> str:
    return f"http://{host}:{port}{path}"

def _headers(api_key: str, tenant_id: str | None = None) -> dict[str, str]:
    headers = {"x-api-key": api_key} if api_key else {}
    if tenant_id:
        headers["x-tenant-id"] = tenant_id
    return headers

def _call(method: str, host: str, port: int, path: str, api_key: str, tenant_id: str | None = None, **kwargs) -> dict:
    try:
        resp = httpx.request(method, _http_url(host, port, path), headers=_headers(api_key, tenant_id), timeout=30.0, **kwargs)
    except httpx.HTTPError as e:
        print(f"[red]request failed:[/red] {e}")
        raise typer.Exit(code=2)
    data = resp.json()
    if not data.get("success", resp.is_success):
        err = data.get("error", {})
        print(f"[red]{err.get('code', resp.status_code)}[/red]: {err.get('message', resp.text)}")
        raise typer.Exit(code=1)
    return data

@app.command()
def health(host: str = "127.0.0.1", port: int = 8790):
    """Liveness and gateway health."""
    resp = httpx.get(_http_url(host, port, "/healthz"), timeout=10.0)
    print(resp.json())

@app.command()
def status(host: str = "127.0.0.1", port: int = 8790, api_key: str = typer.Option("", envvar="BGW_CLIENT_KEY")):
    """Bot totals and per-platform runtime statistics."""
    data = _call("GET", host, port, "/status", api_key)
    bots = data.get("bots", {})
    print(f"[bold]{data.get('instance_id')}[/bold] healthy={data.get('is_healthy')} "
          f"bots={bots.get('total', 0)} running={bots.get('running', 0)}")
    t = Table(title="Platforms")
    for col in ("platform", "status", "active", "sent", "received", "errors", "avg ms"):
        t.add_column(col)
    for name, p in data.get("platforms", {}).get("platforms", {}).items():
        t.add_row(name, p["status"], str(p["active_connections"]), str(p["messages_sent"]),
                  str(p["messages_received"]), str(p["errors"]), str(p["avg_response_ms"]))
    print(t)

@app.command()
def bots(
    tenant_id: str = None,
    host: str = "127.0.0.1",
    port: int = 8790,
    api_key: str = typer.Option("", envvar="BGW_CLIENT_KEY"),
):
    """List bots, optionally for one tenant."""
    data = _call("GET", host, port, "/bots", api_key, tenant_id)
    t = Table(title="Bots")
    t.add_column("id"); t.add_column("tenant"); t.add_column("platform"); t.add_column("name"); t.add_column("status"); t.add_column("running")
    for b in data.get("bots", []):
        t.add_row(b["id"], b["tenant_id"], b["platform"], b["name"], b["status"], "yes" if b.get("is_running") else "no")
    print(t)

@app.command()
def create(
    tenant_id: str,
    name: str,
    platform: str,
    credentials: str = typer.Option(..., envvar="BGW_BOT_CREDENTIALS"),
    webhook_url: str = None,
    settings_json: str = "{}",
    auto_start: bool = False,
    host: str = "127.0.0.1",
    port: int = 8790,
    api_key: str = typer.Option("", envvar="BGW_CLIENT_KEY"),
):
    """Register a new bot."""
    body = {
        "tenantId": tenant_id, "name": name, "platform": platform, "credentials": credentials,
        "webhookUrl": webhook_url, "settings": json.loads(settings_json), "autoStart": auto_start,
    }
    data = _call("POST", host, port, "/bots", api_key, tenant_id, json=body)
    print(data["bot"])

@app.command()
def start(bot_id: str, host: str = "127.0.0.1", port: int = 8790, api_key: str = typer.Option("", envvar="BGW_CLIENT_KEY")):
    """Start a bot."""
    print(_call("POST", host, port, f"/bots/{bot_id}/start", api_key)["result"])

@app.command()
def stop(bot_id: str, host: str = "127.0.0.1", port: int = 8790, api_key: str = typer.Option("", envvar="BGW_CLIENT_KEY")):
    """Stop a bot."""
    print(_call("POST", host, port, f"/bots/{bot_id}/stop", api_key)["result"])

@app.command()
def send(
    bot_id: str,
    channel_id: str,
    content: str,
    message_type: str = "text",
    options_json: str = "{}",
    host: str = "127.0.0.1",
    port: int = 8790,
    api_key: str = typer.Option("", envvar="BGW_CLIENT_KEY"),
):
    """Send a message through a running bot."""
    body = {"channelId": channel_id, "content": content, "messageType": message_type, "options": json.loads(options_json)}
    print(_call("POST", host, port, f"/bots/{bot_id}/send", api_key, json=body)["ack"])

def main():
    """Entry point for the CLI."""
    app()
