"""API routes for the taskhub web interface."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Request

from .. import __version__
from ..hub import TaskHub
from ..schemas import OPERATIONS, parse_params

router = APIRouter(prefix="/api")


def _hub(req: Request) -> TaskHub:
    return req.app.state.hub


@router.get("/health")
def api_health(request: Request) -> dict[str, Any]:
    return {"ok": True, "version": __version__}


@router.get("/operations")
def api_operations() -> dict[str, Any]:
    return {
        "operations": [
            {"name": name, "params": schema.model_json_schema(by_alias=True)}
            for name, schema in OPERATIONS.items()
        ]
    }


@router.post("/ops/{operation}")
def api_call(
    request: Request,
    operation: str,
    payload: dict[str, Any] | None = Body(default=None),
) -> dict[str, Any]:
    params = parse_params(operation, payload)
    return _hub(request).dispatch(operation, params)


@router.get("/requests")
def api_requests(request: Request) -> dict[str, Any]:
    return _hub(request).list_requests()


@router.get("/requests/{request_id}")
def api_request(request: Request, request_id: str) -> dict[str, Any]:
    return _hub(request).get_request(request_id)


@router.get("/tasks/{task_id}")
def api_task(request: Request, task_id: str) -> dict[str, Any]:
    return _hub(request).open_task_details(task_id)
