import asyncio
import hmac
import json
import logging
from typing import Any, Mapping, Optional

import uvicorn
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import docker_service as ds
from config_service import Settings, configure_logging, get_settings
from dispatch_service import register_routes
from http_errors import Unauthorized, from_code, unclassified_envelope
from log_service import LogRelay, LogStore
from route_service import build_route_table
from routes import MANIFEST

logger = logging.getLogger("glide")


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def create_app(
    settings: Optional[Settings] = None,
    manifest: Optional[Mapping[str, Any]] = None,
    log_store: Optional[LogStore] = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)
    ds.configure(settings)

    # a bad definition aborts startup here, before anything is served
    table = build_route_table(MANIFEST if manifest is None else manifest)

    app = FastAPI(title="Glide Daemon API", docs_url=None, redoc_url=None, openapi_url=None)
    store = log_store or LogStore(limit=settings.log_limit, host=settings.redis_host, port=settings.redis_port)
    app.state.settings = settings
    app.state.route_table = table
    app.state.log_store = store
    app.state.log_relay = LogRelay(store)

    if not settings.api_token:
        logger.warning("no api_token configured, every route outside %s is refused", settings.public_paths)

    @app.exception_handler(StarletteHTTPException)
    async def framework_error(request: Request, exc: StarletteHTTPException):
        err = from_code(exc.status_code, str(exc.detail))
        return JSONResponse(err.to_envelope(), status_code=err.status, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.exception("unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(unclassified_envelope(exc, not settings.is_production), status_code=500)

    @app.middleware("http")
    async def api_token_auth(request: Request, call_next):
        if request.url.path not in settings.public_paths:
            incoming = _bearer_token(request)
            # without a configured token nothing but the public paths is served
            if not settings.api_token or incoming is None or not hmac.compare_digest(
                incoming.encode(), settings.api_token.encode()
            ):
                err = Unauthorized("Invalid or missing bearer token")
                return JSONResponse(err.to_envelope(), status_code=err.status)
        return await call_next(request)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logger.info("[HTTP] %s %s", request.method, request.url.path)
        response = await call_next(request)
        logger.info("[HTTP] %s %s %s", response.status_code, request.method, request.url.path)
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.origins(),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_routes(app, table, settings)

    @app.websocket("/logs")
    async def logs_channel(websocket: WebSocket):
        await websocket.accept()
        relay: LogRelay = app.state.log_relay
        tasks = []

        async def emit(line: str) -> None:
            await websocket.send_json({"event": "log", "data": line})

        try:
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    break
                message = None
                text = frame.get("text")
                if text is not None:
                    try:
                        message = json.loads(text)
                    except ValueError:
                        pass
                container_id = message.get("containerId") if isinstance(message, dict) else None
                if not container_id or message.get("event") != "subscribe-logs":
                    await websocket.send_json({"event": "error", "data": "expected {\"event\": \"subscribe-logs\", \"containerId\": ...}"})
                    continue
                tasks.append(asyncio.create_task(relay.follow(str(container_id), emit)))
        except WebSocketDisconnect:
            pass
        finally:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    return app


def main() -> None:
    settings = get_settings()
    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
