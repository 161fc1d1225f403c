"""Fleetlink hub — FastAPI application."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from hub.config import Settings, settings as default_settings
from hub.presence import PresenceTracker
from hub.registry import TelemetryHub
from hub.routers.devices import router as devices_router
from hub.routers.offline_queue import router as offline_queue_router
from hub.routers.sse import router as sse_router
from hub.routers.ws import router as ws_router

log = logging.getLogger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        hub: TelemetryHub = app.state.hub
        sweeper = asyncio.create_task(
            hub.run_sweeper(settings.ping_interval_s), name="hub-sweeper"
        )
        log.info(
            "hub up: ping every %.0fs, evict after %.0fs silent",
            settings.ping_interval_s,
            settings.pong_timeout_s,
        )

        yield

        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
        await hub.close_all()

    app = FastAPI(title="Fleetlink Hub", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.hub = TelemetryHub(
        presence=PresenceTracker(fallback_s=settings.presence_fallback_s),
        pong_timeout_s=settings.pong_timeout_s,
        send_timeout_s=settings.send_timeout_s,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(ws_router)
    app.include_router(sse_router)
    app.include_router(offline_queue_router)
    app.include_router(devices_router)

    @app.exception_handler(Exception)
    async def unhandled(request: Request, exc: Exception):
        log.error("unhandled error on %s: %s", request.url.path, exc, exc_info=exc)
        return JSONResponse(
            {"success": False, "message": "internal error", "error": str(exc)},
            status_code=500,
        )

    @app.get("/health")
    async def health():
        """Liveness check."""
        hub: TelemetryHub = app.state.hub
        snap = hub.snapshot()
        return JSONResponse(
            {
                "status": "ok",
                "live_connections": snap["live"],
                "by_role": snap["by_role"],
                "presence": snap["presence"],
            }
        )

    return app


app = create_app()


def main() -> None:
    p = argparse.ArgumentParser(description="Fleetlink telemetry hub")
    p.add_argument("--host", default=default_settings.host, help="Bind address")
    p.add_argument("--port", type=int, default=default_settings.port, help="Bind port")
    p.add_argument("--log-level", default=default_settings.log_level, help="Log level")
    args = p.parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s  %(message)s",
    )
    uvicorn.run(
        "hub.main:app",
        host=args.host,
        port=args.port,
        log_level=args.log_level.lower(),
    )


if __name__ == "__main__":
    main()
