from __future__ import annotations
import uvicorn
from botgateway.config import load_settings
from botgateway.server.app import create_app

def main():
    settings = load_settings()
    app = create_app(settings)
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        access_log=settings.access_log,
        proxy_headers=settings.proxy_headers,
    )

if __name__ == "__main__":
    main()
