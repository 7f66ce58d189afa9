from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, WebSocket
from fastapi.responses import JSONResponse

from ..domain.identity import JwtIdentityResolver
from ..domain.kanban import KanbanHandler
from ..domain.messenger import MessengerHandler
from ..domain.repos import IdentityError, IdentityResolver
from ..realtime.backflow import BackFlowRegistry
from ..realtime.routing import IntentRouter
from .connection import ProjectConnection
from .settings import SettingsStore
from .store import ProjectStore

log = logging.getLogger("projectflow")

JWT_SECRET_ENV = "PROJECTFLOW_JWT_SECRET"


def create_app(
    store: ProjectStore | None = None,
    settings_store: SettingsStore | None = None,
    identity: IdentityResolver | None = None,
    registry: BackFlowRegistry | None = None,
    jwt_secret: str | None = None,
    keepalive_interval: float | None = None,
    send_timeout: float | None = None,
) -> FastAPI:
    store = store or ProjectStore()
    settings = settings_store or SettingsStore(store.db_path)
    config = settings.realtime_config(cli_overrides={
        "realtime.keepalive_interval": keepalive_interval,
        "realtime.send_timeout": send_timeout,
    })
    if identity is None:
        identity = JwtIdentityResolver(
            jwt_secret or os.environ.get(JWT_SECRET_ENV, ""),
            algorithms=list(config.jwt_algorithms),
        )
    registry = registry or BackFlowRegistry(queue_size=config.queue_size)
    router = IntentRouter(KanbanHandler(store), MessengerHandler(store))
    connections: set[ProjectConnection] = set()

    async def _store_call(fn, *args, **kwargs):
        return await asyncio.to_thread(fn, *args, **kwargs)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if connections:
            log.info("shutting down, closing %d connections", len(connections))
            await asyncio.gather(*(conn.close() for conn in list(connections)), return_exceptions=True)

    app = FastAPI(title="Projectflow", lifespan=lifespan)
    app.state.registry = registry
    app.state.connections = connections

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "connections": len(connections),
            "backflows": registry.stats(),
        }

    # --- Kanban REST API ---

    @app.get("/api/projects/{project_id}/kards")
    async def list_kards(project_id: str, authorization: str | None = Header(default=None)):
        scheme, _, token = (authorization or "").partition(" ")
        if scheme.lower() != "bearer" or not token:
            return JSONResponse(status_code=401, content={"detail": "Missing bearer token"})
        try:
            user = await asyncio.to_thread(identity.resolve, token.strip())
        except IdentityError as exc:
            log.info("kards request rejected: %s", exc)
            return JSONResponse(status_code=401, content={"detail": "Invalid token"})
        try:
            pid = int(project_id)
        except ValueError:
            return JSONResponse(status_code=404, content={"detail": "Project not found"})
        if not await _store_call(store.is_member, user.id, pid):
            return JSONResponse(status_code=404, content={"detail": "Project not found"})
        board = await _store_call(store.get_board, pid)
        return [kard.to_dict() for kard in board.kards()]

    # --- Settings REST API (read-only; written with `projectflow config set`, applied on start) ---

    @app.get("/api/settings")
    def get_settings():
        return settings.get_all()

    @app.get("/api/settings/{key:path}")
    def get_setting(key: str):
        return {"key": key, "value": settings.get(key)}

    @app.websocket("/project")
    async def project_endpoint(ws: WebSocket) -> None:
        await ws.accept()
        conn = ProjectConnection(
            ws,
            registry=registry,
            identity=identity,
            router=router,
            keepalive_interval=config.keepalive_interval,
            send_timeout=config.send_timeout,
            max_message_size=config.max_message_size,
        )
        connections.add(conn)
        log.info("ws connected connection=%s", conn.id)
        try:
            await conn.run()
        finally:
            connections.discard(conn)

    return app
