"""Read-only JSON routes for the rigwatch dashboard."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..models import AggregationFailure, Snapshot
from ..monitor import ActivityMonitor, Aggregator
from ..util import utc_now_iso

router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _aggregator(req: Request) -> Aggregator:
    return req.app.state.aggregator


def _activity(req: Request) -> ActivityMonitor:
    return req.app.state.activity


def _failure(result: AggregationFailure) -> JSONResponse:
    return JSONResponse(result.to_dict(), status_code=500)


async def _snapshot(req: Request) -> Snapshot | AggregationFailure:
    return await _aggregator(req).snapshot()


class Health(BaseModel):
    ok: bool
    time: str


class SourceHealth(BaseModel):
    ok: bool
    error: str | None = None
    elapsed_ms: int = 0
    fallback: bool = False


class AgentActivity(BaseModel):
    session: str
    name: str
    role: str
    activity: str
    activities: list[str]
    duration: str | None = None
    tool: str | None = None


class ActivityReport(BaseModel):
    activities: list[AgentActivity]
    tmux_available: bool
    error: str | None = None


# ---------------------------------------------------------------------------
# Data API
# ---------------------------------------------------------------------------


@router.get("/healthz", response_model=Health)
async def healthz() -> Health:
    return Health(ok=True, time=utc_now_iso())


@router.get("/api/snapshot")
async def api_snapshot(request: Request):
    result = await _snapshot(request)
    if isinstance(result, AggregationFailure):
        return _failure(result)
    return result.to_dict()


@router.get("/api/issues")
async def api_issues(
    request: Request,
    status: str | None = None,
    rig: str | None = None,
    limit: int = 0,
):
    result = await _snapshot(request)
    if isinstance(result, AggregationFailure):
        return _failure(result)
    issues = list(result.issues)
    if status:
        issues = [i for i in issues if i.status == status]
    if rig:
        issues = [i for i in issues if i.rig == rig]
    if limit > 0:
        issues = issues[:limit]
    return [issue.to_dict() for issue in issues]


def _slice(kind: str):
    async def endpoint(request: Request):
        result = await _snapshot(request)
        if isinstance(result, AggregationFailure):
            return _failure(result)
        return [item.to_dict() for item in getattr(result, kind)]

    endpoint.__name__ = f"api_{kind}"
    return endpoint


for _kind in ("rigs", "polecats", "witnesses", "refineries", "convoys"):
    router.add_api_route(f"/api/{_kind}", _slice(_kind), methods=["GET"])


@router.get("/api/convoys/{convoy_id}")
async def api_convoy(request: Request, convoy_id: str):
    result = await _snapshot(request)
    if isinstance(result, AggregationFailure):
        return _failure(result)
    for convoy in result.convoys:
        if convoy.id == convoy_id:
            return convoy.to_dict()
    return JSONResponse({"error": "not found", "id": convoy_id}, status_code=404)


@router.get("/api/sources", response_model=dict[str, SourceHealth])
async def api_sources(request: Request) -> dict[str, Any]:
    aggregator = _aggregator(request)
    snapshot = aggregator.last_snapshot
    if snapshot is None:
        result = await aggregator.snapshot()
        if isinstance(result, AggregationFailure):
            return {result.source: {"ok": False, "error": result.detail}}
        snapshot = result
    return snapshot.sources


@router.get("/api/agents/activity", response_model=ActivityReport)
async def api_agent_activity(request: Request) -> dict[str, Any]:
    return await _activity(request).collect()
