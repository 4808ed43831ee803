"""
HTTP surface for the orchestration core.

Run:
    uvicorn --factory ghost_core.api:create_app --host 0.0.0.0 --port 8090

All /api routes need the GHOST_API_TOKEN (X-Ghost-Token header or ?token=)
when one is configured. With GHOST_API_STRICT=true and no token configured
every request is refused.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager, suppress
from typing import Any, Dict, Optional

import uvicorn
from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from ghost_core.dispatcher import Dispatcher
from ghost_core.errors import (
    AlreadyResolved, ApprovalExpired, ApprovalNotFound, BudgetExhausted, ClassificationAmbiguous,
    EscalationReasonRequired, GhostError, QueueFull, RateLimitExceeded, Unauthorized,
)
from ghost_core.models import Event, Role

logger = logging.getLogger("api")

router = APIRouter()

_STATUS_FOR_ERROR = (
    (Unauthorized, 403),
    (ApprovalNotFound, 404),
    (AlreadyResolved, 409),
    (ApprovalExpired, 409),
    (RateLimitExceeded, 429),
    (QueueFull, 503),
    (BudgetExhausted, 402),
    (ClassificationAmbiguous, 422),
    (EscalationReasonRequired, 422),
)


def _require_auth(request: Request, token: str = Query(None, alias="token")):
    configured_token = (os.getenv("GHOST_API_TOKEN") or "").strip()
    strict_raw = (os.getenv("GHOST_API_STRICT") or "").strip().lower()
    strict_mode = strict_raw in {"1", "true", "yes", "on"}

    supplied_token = token or request.headers.get("X-Ghost-Token")

    if not configured_token:
        if strict_mode:
            raise HTTPException(status_code=401, detail="Unauthorized")
        return True

    if not supplied_token or supplied_token != configured_token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return True


def _dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


def _event_from(data: Dict[str, Any]) -> Event:
    try:
        return Event.create(
            text=str(data.get("text") or ""),
            actor_id=str(data["actor_id"]),
            actor_role=data.get("actor_role", Role.MEMBER.value),
            source=str(data.get("source") or "api"),
            event_id=data.get("id"),
        )
    except KeyError:
        raise HTTPException(status_code=422, detail="actor_id is required")
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.post("/api/route")
async def route_event(
    data: Dict[str, Any] = Body(...),
    dispatcher: Dispatcher = Depends(_dispatcher),
    auth: bool = Depends(_require_auth),
):
    """Classify only; nothing is executed or queued."""
    event = _event_from(data)
    intent = await dispatcher.switchboard.classify(event)
    return {"event_id": event.id, "intent": intent.to_dict(), "config_version": dispatcher.config.version}


@router.post("/api/events")
async def handle_event(
    data: Dict[str, Any] = Body(...),
    dispatcher: Dispatcher = Depends(_dispatcher),
    auth: bool = Depends(_require_auth),
):
    outcome = await dispatcher.handle_event(_event_from(data))
    return outcome.to_dict()


@router.get("/api/warden/pending")
async def list_pending(dispatcher: Dispatcher = Depends(_dispatcher), auth: bool = Depends(_require_auth)):
    pending = dispatcher.warden.pending()
    return {"count": len(pending), "requests": [r.to_dict() for r in pending]}


@router.get("/api/warden/queue/{request_id}")
async def get_request(
    request_id: str,
    dispatcher: Dispatcher = Depends(_dispatcher),
    auth: bool = Depends(_require_auth),
):
    return dispatcher.warden.get(request_id).to_dict()


@router.post("/api/warden/resolve/{request_id}")
async def resolve_request(
    request_id: str,
    data: Dict[str, Any] = Body(...),
    dispatcher: Dispatcher = Depends(_dispatcher),
    auth: bool = Depends(_require_auth),
):
    for key in ("decision", "approver_role", "approver_id"):
        if not data.get(key):
            raise HTTPException(status_code=422, detail=f"{key} is required")
    try:
        outcome = await dispatcher.resolve(
            request_id,
            data["decision"],
            data["approver_role"],
            str(data["approver_id"]),
            str(data.get("note") or ""),
        )
    except ValueError as e:
        if isinstance(e, GhostError):
            raise
        raise HTTPException(status_code=422, detail=str(e))
    return outcome.to_dict()


@router.post("/api/warden/cancel/{request_id}")
async def cancel_request(
    request_id: str,
    data: Dict[str, Any] = Body(...),
    dispatcher: Dispatcher = Depends(_dispatcher),
    auth: bool = Depends(_require_auth),
):
    if not data.get("actor_id"):
        raise HTTPException(status_code=422, detail="actor_id is required")
    outcome = await dispatcher.cancel(
        request_id,
        str(data["actor_id"]),
        data.get("actor_role", Role.MEMBER.value),
        str(data.get("reason") or ""),
    )
    return outcome.to_dict()


@router.post("/api/warden/sweep")
async def sweep(dispatcher: Dispatcher = Depends(_dispatcher), auth: bool = Depends(_require_auth)):
    expired = await dispatcher.sweep()
    return {"expired": [r.id for r in expired]}


@router.get("/api/audit")
async def audit_tail(
    limit: int = Query(50, ge=1, le=1000),
    dispatcher: Dispatcher = Depends(_dispatcher),
    auth: bool = Depends(_require_auth),
):
    entries = dispatcher.audit.tail(limit)
    return {"count": len(entries), "entries": [e.to_dict() for e in entries]}


@router.get("/api/budget")
async def budget_status(dispatcher: Dispatcher = Depends(_dispatcher), auth: bool = Depends(_require_auth)):
    if dispatcher.ledger is None:
        raise HTTPException(status_code=503, detail="Budget ledger not configured")
    rows = await dispatcher.ledger.status()
    return {"month": dispatcher.ledger.month_key(), "tiers": [row.to_dict() for row in rows]}


async def _ghost_error_handler(request: Request, exc: GhostError):
    status = 500
    for error_type, code in _STATUS_FOR_ERROR:
        if isinstance(exc, error_type):
            status = code
            break
    body = {"error": type(exc).__name__, "detail": str(exc)}
    headers = None
    if isinstance(exc, RateLimitExceeded) and exc.retry_after:
        body["retry_after"] = exc.retry_after
        headers = {"Retry-After": str(int(exc.retry_after) + 1)}
    if status >= 500:
        logger.error(f"{request.url.path}: {exc}")
    return JSONResponse(status_code=status, content=body, headers=headers)


def create_app(dispatcher: Optional[Dispatcher] = None, run_sweeper: bool = True) -> FastAPI:
    """Build the app. Without a dispatcher one is assembled from config."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if run_sweeper:
            app.state.dispatcher.start()
        try:
            yield
        finally:
            with suppress(asyncio.CancelledError):
                await app.state.dispatcher.stop()

    app = FastAPI(
        title="Ghost Orchestration Core",
        description="Routing, approval gating and tier escalation",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.dispatcher = dispatcher or Dispatcher.build()
    app.include_router(router)
    app.add_exception_handler(GhostError, _ghost_error_handler)

    @app.get("/health")
    async def health():
        return {"status": "ok", "config_version": app.state.dispatcher.config.version}

    return app


if __name__ == "__main__":
    uvicorn.run(
        "ghost_core.api:create_app",
        factory=True,
        host="0.0.0.0",
        port=int(os.getenv("GHOST_API_PORT", "8090")),
    )
