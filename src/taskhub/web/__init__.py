"""taskhub HTTP interface: FastAPI app factory."""

from __future__ import annotations

import logging
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .. import __version__
from ..errors import InvalidOperationError, NotFoundError, PersistenceError
from ..hub import TaskHub

logger = logging.getLogger(__name__)


def _error(status_code: int, kind: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"type": kind, "message": message}},
    )


def create_app(state_dir: Path | None = None, *, hub: TaskHub | None = None) -> FastAPI:
    app = FastAPI(title="taskhub", version=__version__)
    app.state.hub = hub if hub is not None else TaskHub.from_workdir(state_dir=state_dir)

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return _error(404, "not_found", str(exc))

    @app.exception_handler(InvalidOperationError)
    async def _invalid(request: Request, exc: InvalidOperationError) -> JSONResponse:
        return _error(409, "invalid_operation", str(exc))

    @app.exception_handler(ValidationError)
    async def _validation(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={
                "error": {
                    "type": "validation_failed",
                    "message": f"{exc.error_count()} invalid parameter(s)",
                    "details": exc.errors(include_url=False, include_context=False),
                }
            },
        )

    @app.exception_handler(PersistenceError)
    async def _persistence(request: Request, exc: PersistenceError) -> JSONResponse:
        logger.error("persistence failure: %s", exc)
        return _error(500, "persistence", str(exc))

    from .routes import router

    app.include_router(router)

    return app
