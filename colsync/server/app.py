"""FastAPI sync server application."""

import logging
from datetime import datetime
from typing import Any

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import Config
from ..errors import InvalidInput
from ..records import RecordStore
from ..sync import ChangeLog
from ..sync.service import SyncService

logger = logging.getLogger(__name__)


def create_app(
    config: Config,
    change_log: ChangeLog,
    records: RecordStore,
) -> FastAPI:
    """Create the FastAPI sync application.

    Args:
        config: Application configuration.
        change_log: Shared change log.
        records: Record store that pushed changes are applied to.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="colsync",
        description="Column-level last-write-wins sync server",
        version=__version__,
    )

    service = SyncService(change_log, records)

    # Store references for route handlers
    app.state.config = config
    app.state.change_log = change_log
    app.state.records = records
    app.state.service = service

    @app.exception_handler(InvalidInput)
    async def invalid_input_handler(request: Request, exc: InvalidInput):
        logger.info(f"Rejected {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=400, content={"message": str(exc)})

    # ==================== Sync ====================

    @app.post("/api/sync")
    async def api_push(request: Request, compress: bool = False) -> dict[str, Any]:
        """Apply a batch of changes pushed by a client."""
        try:
            body = await request.json()
        except ValueError:
            body = None

        await run_in_threadpool(service.push, body, compress)
        return {"message": "success"}

    @app.get("/api/sync")
    def api_pull(
        user: str | None = None,
        timestamp: str = "",
        limit: int | None = None,
        page: int = 0,
        compress: bool = False,
    ) -> dict[str, Any]:
        """Return changes visible to a user since a timestamp."""
        result = service.pull(
            user,
            since=timestamp or None,
            limit=limit if limit is not None else config.server.default_page_size,
            page=page,
            compress=compress,
        )
        return result.to_dict()

    # ==================== Monitoring ====================

    @app.get("/api/stats")
    def api_stats() -> dict[str, Any]:
        """Get change log and record statistics."""
        stats = {
            "node_name": config.node.name,
            "timestamp": datetime.now().isoformat(),
        }
        stats.update(change_log.get_stats())
        stats.update(records.get_stats())
        return stats

    @app.get("/api/health")
    def api_health() -> dict[str, Any]:
        """Health check endpoint for monitoring and load balancers.

        Always returns 200 OK; component failures are reported in the body.
        """
        health: dict[str, Any] = {
            "status": "ok",
            "timestamp": datetime.now().isoformat(),
            "node_name": config.node.name,
            "components": {},
        }

        try:
            health["components"]["change_log_entries"] = change_log.get_stats()[
                "total_entries"
            ]
        except Exception as e:
            health["status"] = "degraded"
            health["components"]["change_log_error"] = str(e)

        try:
            records.get_stats()
            health["components"]["records"] = True
        except Exception as e:
            health["status"] = "degraded"
            health["components"]["records_error"] = str(e)

        return health

    return app
