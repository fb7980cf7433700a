"""
api/routes/v1/waitlist.py -- Waitlist signup and approval endpoints.

Routes:
  POST /api/v1/waitlist                  -- join the waitlist (public, rate-limited)
  GET  /api/v1/waitlist                  -- list entries, newest first (admin)
  GET  /api/v1/waitlist/stream           -- live NDJSON snapshots (admin)
  POST /api/v1/waitlist/{id}/approve     -- pending -> approved (admin)
  POST /api/v1/waitlist/{id}/account     -- approved -> registered (admin)

Approval responses may carry a freshly generated secret exactly once and
report reauthenticate_required when secret verification replaced the
identity provider session.

Streaming: each line of /waitlist/stream is one JSON object
{"entries": [...]} holding the full ordered collection. The subscription is
released when the client disconnects (Starlette cancels the generator) or
after ?limit snapshots.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from api.limiter import limiter
from api.models import (
    CreateAccountRequest,
    ProvisioningResponse,
    WaitlistEntryResponse,
    WaitlistJoinRequest,
    WaitlistJoinResponse,
)
from auth.dependencies import require_admin
from core.config import get_settings
from core.documents import sort_documents, waitlist_entry_from_doc
from core.models import WAITLIST_STATUSES, Collection, ProvisioningOutcome, UserRecord

# Auth policy:
# - POST /api/v1/waitlist:   public, rate-limited -- landing page signup
# - everything else:         requires admin (require_admin)
router = APIRouter()

_settings = get_settings()


def _provisioning_response(request: Request, outcome: ProvisioningOutcome) -> JSONResponse:
    permissions = request.app.state.resolver.resolve(outcome.user) if outcome.user else None
    resp = JSONResponse(content=ProvisioningResponse.from_outcome(outcome, permissions).model_dump())
    resp.headers["Cache-Control"] = "no-store"  # [M5] may carry a plaintext secret
    return resp


def _entry_dicts(docs: list[dict]) -> list[dict]:
    return [WaitlistEntryResponse.from_entry(waitlist_entry_from_doc(d)).model_dump() for d in docs]


# ---------------------------------------------------------------------------
# Public signup
# ---------------------------------------------------------------------------


@limiter.limit(_settings.signup_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/waitlist", response_model=WaitlistJoinResponse, status_code=201)
async def join_waitlist(request: Request, body: WaitlistJoinRequest) -> JSONResponse:
    """Add an email to the waitlist. Repeat signups return the existing entry with 200."""
    try:
        outcome = await request.app.state.provisioning.join_waitlist(body.email, body.name)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail={"code": "invalid_email", "message": str(exc)}) from exc
    entry = outcome.entry
    return JSONResponse(
        status_code=201 if outcome.created else 200,
        content=WaitlistJoinResponse(id=entry.id, status=entry.status, created=outcome.created).model_dump(),
    )


# ---------------------------------------------------------------------------
# Admin views
# ---------------------------------------------------------------------------


@router.get("/waitlist", response_model=list[WaitlistEntryResponse])
async def list_waitlist(
    request: Request,
    status: Optional[str] = Query(default=None, description="Filter by pending, approved or registered."),
    current_user: UserRecord = Depends(require_admin),
) -> list[WaitlistEntryResponse]:
    """List waitlist entries, newest signup first."""
    if status is not None and status not in WAITLIST_STATUSES:
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_status", "message": f"status must be one of {', '.join(WAITLIST_STATUSES)}"},
        )
    docs = sort_documents(await request.app.state.records.list(Collection.WAITLIST), "timestamp", descending=True)
    entries = [waitlist_entry_from_doc(d) for d in docs]
    if status is not None:
        entries = [e for e in entries if e.status == status]
    return [WaitlistEntryResponse.from_entry(e) for e in entries]


@router.get("/waitlist/stream")
async def stream_waitlist(
    request: Request,
    limit: Optional[int] = Query(default=None, ge=1, description="Stop after this many snapshots."),
    current_user: UserRecord = Depends(require_admin),
) -> StreamingResponse:
    """Stream waitlist snapshots as NDJSON, starting with the current state."""
    records = request.app.state.records

    async def snapshots() -> AsyncIterator[str]:
        sent = 0
        async with records.subscribe(Collection.WAITLIST, order_by="timestamp", descending=True) as subscription:
            async for docs in subscription:
                yield json.dumps({"entries": _entry_dicts(docs)}) + "\n"
                sent += 1
                if limit is not None and sent >= limit:
                    return

    return StreamingResponse(snapshots(), media_type="application/x-ndjson")


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


@router.post("/waitlist/{entry_id}/approve", response_model=ProvisioningResponse)
async def approve_entry(
    request: Request,
    entry_id: str,
    current_user: UserRecord = Depends(require_admin),
) -> JSONResponse:
    """Approve a pending entry, creating its provider account when none exists."""
    outcome = await request.app.state.provisioning.approve(entry_id)
    return _provisioning_response(request, outcome)


@router.post("/waitlist/{entry_id}/account", response_model=ProvisioningResponse)
async def create_entry_account(
    request: Request,
    entry_id: str,
    body: CreateAccountRequest,
    current_user: UserRecord = Depends(require_admin),
) -> JSONResponse:
    """Create the deferred provider account for an approved entry."""
    outcome = await request.app.state.provisioning.create_account(entry_id, body.secret)
    return _provisioning_response(request, outcome)
