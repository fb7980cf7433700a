"""
api/routes/v1/admin.py -- Operator endpoints.

Routes:
  POST /api/v1/admin/reconcile -- run the reconciliation sweep and report (admin)
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.models import SweepResponse, UserResponse
from auth.dependencies import require_admin
from core.models import UserRecord

router = APIRouter()


@router.post("/admin/reconcile", response_model=SweepResponse)
async def reconcile(request: Request, current_user: UserRecord = Depends(require_admin)) -> JSONResponse:
    """Repair users/approved_users drift and return what changed."""
    report = await request.app.state.sweep.run()
    resolver = request.app.state.resolver
    users = [UserResponse.from_user(u, resolver.resolve(u)) for u in report.users]
    resp = JSONResponse(content=SweepResponse.from_report(report, users).model_dump())
    resp.headers["Cache-Control"] = "no-store"
    return resp
