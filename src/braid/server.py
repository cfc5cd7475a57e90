"""HTTP surface: the webhook receiver and a small status API.

Routes:

- ``POST /webhooks/github/{installation_id}``: verify, normalize and apply
  one delivery.
- ``GET /api/installations/{installation_id}/sync-state``: the SyncState row.
- ``GET /api/health``: liveness.

Every handler is ``async`` so database access stays on the event loop
thread and never races on the shared SQLite connection.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from braid.core import DB_FILENAME, DEFAULT_CONFIG, DEFAULT_PORT, BraidDB, find_braid_root, read_config
from braid.engine import SyncEngine
from braid.errors import WebhookError
from braid.remote import GitHubClient
from braid.retry import RetryPolicy

if TYPE_CHECKING:
    from fastapi.responses import JSONResponse

    from braid.core import Installation
    from braid.remote import RemoteTracker
    from braid.types.core import ProjectConfig

logger = logging.getLogger(__name__)

RemoteFactory = Callable[["Installation"], "RemoteTracker"]


def _default_remote_factory(installation: Installation) -> RemoteTracker:
    return GitHubClient(installation.api_token)


def _error_response(message: str, status_code: int, *, installation_id: str = "", delivery_id: str = "") -> JSONResponse:
    """Return ``{"error": message}`` and log it (never with request secrets)."""
    from fastapi.responses import JSONResponse

    extra: dict[str, Any] = {}
    if installation_id:
        extra["installation"] = installation_id
    if delivery_id:
        extra["delivery_id"] = delivery_id
    logger.warning("API error [%s]: %s", status_code, message, extra=extra)
    return JSONResponse({"error": message}, status_code=status_code)


class SyncService:
    """Owns one ``SyncEngine`` (and remote client) per installation."""

    def __init__(
        self,
        db: BraidDB,
        *,
        config: ProjectConfig | None = None,
        remote_factory: RemoteFactory | None = None,
    ) -> None:
        self.db = db
        self.config = config or DEFAULT_CONFIG
        self._remote_factory = remote_factory or _default_remote_factory
        self._engines: dict[str, SyncEngine] = {}

    def engine_for(self, installation: Installation) -> SyncEngine:
        engine = self._engines.get(installation.id)
        if engine is None:
            engine = SyncEngine(
                self.db,
                self._remote_factory(installation),
                retry=RetryPolicy.from_config(self.config.get("retry")),
                error_budget=self.config.get("error_budget", 5),
                debounce_seconds=self.config.get("debounce_seconds", 0.5),
                delivery_retention_days=self.config.get("delivery_retention_days", 30),
            )
            self._engines[installation.id] = engine
        return engine

    async def aclose(self) -> None:
        for engine in self._engines.values():
            await engine.aclose()
            aclose = getattr(engine.remote, "aclose", None)
            if aclose is not None:
                await aclose()
        self._engines.clear()


def create_app(service: SyncService) -> Any:
    """Create the FastAPI application serving *service*."""
    import contextlib
    from collections.abc import AsyncIterator

    from fastapi import FastAPI
    from fastapi.responses import JSONResponse
    from starlette.requests import Request

    # Expose Request and JSONResponse in module globals so PEP 563 deferred annotations resolve
    globals()["Request"] = Request
    globals()["JSONResponse"] = JSONResponse

    @contextlib.asynccontextmanager
    async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await service.aclose()

    app = FastAPI(title="Braid", docs_url=None, redoc_url=None, lifespan=_lifespan)
    app.state.service = service

    @app.post("/webhooks/github/{installation_id}")
    async def receive_webhook(installation_id: str, request: Request) -> JSONResponse:
        try:
            installation = service.db.get_installation(installation_id)
        except KeyError:
            return _error_response(f"Unknown installation: {installation_id}", 404)

        from braid.webhook import normalize_webhook

        raw_body = await request.body()
        delivery_id = request.headers.get("x-github-delivery", "")
        try:
            event = normalize_webhook(raw_body, request.headers, installation.webhook_secret)
            await service.engine_for(installation).process_webhook_event(installation, event)
        except WebhookError as exc:
            return _error_response(exc.message, exc.status_code, installation_id=installation_id, delivery_id=delivery_id)
        except Exception:
            logger.exception(
                "Webhook handler failed",
                extra={"installation": installation_id, "delivery_id": delivery_id},
            )
            return JSONResponse({"error": "Internal server error"}, status_code=500)
        return JSONResponse({"success": True})

    @app.get("/api/installations/{installation_id}/sync-state")
    async def get_sync_state(installation_id: str) -> JSONResponse:
        try:
            state = service.db.get_sync_state(installation_id)
        except KeyError:
            return _error_response(f"Unknown installation: {installation_id}", 404)
        return JSONResponse(state.to_dict())

    @app.get("/api/health")
    async def health() -> JSONResponse:
        return JSONResponse({"status": "ok", "installations": len(service.db.list_installations())})

    return app


def main(port: int | None = None, *, host: str = "127.0.0.1") -> None:
    """Serve the webhook receiver for the project found from the working directory."""
    import uvicorn

    from braid.logging import setup_logging

    braid_dir = find_braid_root()
    setup_logging(braid_dir)
    config = read_config(braid_dir)
    db = BraidDB(braid_dir / DB_FILENAME, prefix=config.get("prefix", "braid"), check_same_thread=False)
    db.initialize()
    port = port or config.get("port", DEFAULT_PORT)

    app = create_app(SyncService(db, config=config))
    logger.info("Serving webhooks on %s:%d", host, port)
    try:
        uvicorn.run(app, host=host, port=port, log_level="warning")
    finally:
        db.close()
