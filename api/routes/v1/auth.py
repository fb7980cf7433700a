"""
api/routes/v1/auth.py -- Sessions, self registration and user management.

Routes:
  POST /api/v1/auth/register                   -- self registration (public)
  POST /api/v1/auth/login                      -- provider sign-in; sets JWT cookie
  POST /api/v1/auth/logout                     -- clears cookie; 200
  GET  /api/v1/auth/me                         -- current user + effective permissions
  GET  /api/v1/auth/permissions                -- permission catalogue
  GET  /api/v1/auth/users                      -- reconcile, then list users (admin)
  POST /api/v1/auth/users                      -- create an approved account (admin)
  POST /api/v1/auth/users/{id}/reset-secret    -- issue a new temporary secret (admin)
  GET  /api/v1/auth/users/{id}/permissions     -- effective permissions (admin or self)
  PUT  /api/v1/auth/users/{id}/permissions     -- replace stored permissions (admin)

Security:
  [H2] POST /login and POST /register are rate-limited per IP.
  [M5] Cache-Control: no-store on login and on every response that can carry
       a plaintext secret.
  Login returns the same generic error for unknown email and wrong secret.

Domain errors (ProviderConflict, RegistrationClosed, UserNotFound, ...)
propagate to the handlers in api/main.py; routes only translate ValueError
from input validation into 400.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    LoginRequest,
    LoginResponse,
    MeResponse,
    PermissionInfo,
    PermissionsResponse,
    PermissionsUpdate,
    ProvisioningResponse,
    RegisterRequest,
    UserCreate,
    UserResponse,
)
from auth.dependencies import get_current_user, is_admin, require_admin, try_get_current_user
from auth.tokens import COOKIE_NAME, create_access_token, set_auth_cookie
from core.config import get_settings
from core.documents import user_from_doc
from core.errors import InvalidCredential
from core.models import Collection, UserRecord
from core.permissions import resolve_user_permissions, update_user_permissions

# Auth policy:
# - POST /api/v1/auth/register:                  public, rate-limited
# - POST /api/v1/auth/login:                     public, rate-limited
# - POST /api/v1/auth/logout:                    public -- clearing a cookie needs no prior auth
# - GET  /api/v1/auth/me:                        requires auth (get_current_user)
# - GET  /api/v1/auth/permissions:               requires auth (get_current_user)
# - GET  /api/v1/auth/users/{id}/permissions:    requires auth; admin or the user themselves
# - everything else under /auth/users:           requires admin (require_admin)
router = APIRouter()

_settings = get_settings()


def _bad_request(exc: ValueError) -> HTTPException:
    return HTTPException(status_code=400, detail={"code": "invalid_request", "message": str(exc)})


def _no_store(content: dict, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=content)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _user_response(request: Request, user: UserRecord) -> UserResponse:
    return UserResponse.from_user(user, request.app.state.resolver.resolve(user))


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_settings.signup_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=ProvisioningResponse, status_code=201)
async def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an account for a visitor.

    Emails previously approved on the waitlist (or in approved_users) are
    auto-approved; everyone else starts unapproved until an admin acts.
    """
    try:
        outcome = await request.app.state.provisioning.self_register(body.email, body.password, body.name)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    permissions = request.app.state.resolver.resolve(outcome.user) if outcome.user else None
    return _no_store(ProvisioningResponse.from_outcome(outcome, permissions).model_dump(), status_code=201)


@limiter.limit(_settings.login_rate_limit)  # [H2] brute-force mitigation
@router.post("/auth/login", response_model=LoginResponse)
async def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Sign in against the identity provider; issue a JWT for the matching users record.

    The bootstrap admin gets its users record created on first login if the
    startup sweep has not already done so.
    """
    try:
        account = await request.app.state.identity.sign_in(body.email.strip().lower(), body.password)
    except InvalidCredential:
        return _no_store(
            {"error": {"code": "bad_credentials", "message": "Invalid email or password."}},
            status_code=401,
        )

    records = request.app.state.records
    doc = await records.get_or_none(Collection.USERS, account.uid)
    if doc is None and account.uid == _settings.bootstrap_admin_uid:
        await request.app.state.sweep.run()
        doc = await records.get_or_none(Collection.USERS, account.uid)
    if doc is None:
        return _no_store(
            {"error": {"code": "not_provisioned", "message": "This account has no user record."}},
            status_code=403,
        )

    user = user_from_doc(doc)
    token = create_access_token(user.id, user.email, user.role)
    resp = _no_store(
        LoginResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=_settings.token_expire_seconds,
            uid=user.id,
            email=user.email,
            role=user.role,
        ).model_dump()
    )
    set_auth_cookie(resp, token)
    return resp


@router.post("/auth/logout")
async def logout(request: Request) -> JSONResponse:
    """Clear the JWT cookie; end the provider session if it belongs to the caller."""
    user = await try_get_current_user(request)
    identity = request.app.state.identity
    if user is not None and identity.current_uid == user.id:
        await identity.sign_out()
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie(COOKIE_NAME)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
async def me(request: Request, current_user: UserRecord = Depends(get_current_user)) -> MeResponse:
    """Return identity and effective permissions for the caller."""
    return MeResponse(
        uid=current_user.id,
        email=current_user.email,
        name=current_user.name,
        role=current_user.role,
        is_approved=current_user.is_approved,
        permissions=request.app.state.resolver.resolve(current_user),
    )


@router.get("/auth/permissions", response_model=list[PermissionInfo])
async def permission_catalogue(current_user: UserRecord = Depends(get_current_user)) -> list[PermissionInfo]:
    """Return every configured permission key with its display label."""
    return [PermissionInfo(key=key, label=label) for key, label in _settings.permission_labels().items()]


@router.get("/auth/users/{user_id}/permissions", response_model=PermissionsResponse)
async def get_user_permissions(
    request: Request,
    user_id: str,
    current_user: UserRecord = Depends(get_current_user),
) -> PermissionsResponse:
    """Effective permissions for a user. Admins may read anyone; others only themselves."""
    if current_user.id != user_id and not is_admin(current_user):
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "You may only read your own permissions."},
        )
    state = request.app.state
    permissions = await resolve_user_permissions(state.records, state.resolver, user_id)
    doc = await state.records.get(Collection.USERS, user_id)
    return PermissionsResponse(user_id=user_id, role=user_from_doc(doc).role, permissions=permissions)


# ---------------------------------------------------------------------------
# User management (admin only)
# ---------------------------------------------------------------------------


@router.get("/auth/users", response_model=list[UserResponse])
async def list_users(request: Request, current_user: UserRecord = Depends(require_admin)) -> JSONResponse:
    """Run the reconciliation sweep, then list every user, newest first."""
    report = await request.app.state.sweep.run()
    return _no_store([_user_response(request, u).model_dump() for u in report.users])


@router.post("/auth/users", response_model=ProvisioningResponse, status_code=201)
async def create_user(
    request: Request,
    body: UserCreate,
    current_user: UserRecord = Depends(require_admin),
) -> JSONResponse:
    """Create an approved account directly. The generated secret is shown once."""
    try:
        outcome = await request.app.state.provisioning.admin_create_user(
            body.email, role=body.role.value, name=body.name, secret=body.password
        )
    except ValueError as exc:
        raise _bad_request(exc) from exc
    permissions = request.app.state.resolver.resolve(outcome.user) if outcome.user else None
    return _no_store(ProvisioningResponse.from_outcome(outcome, permissions).model_dump(), status_code=201)


@router.post("/auth/users/{user_id}/reset-secret", response_model=ProvisioningResponse)
async def reset_secret(
    request: Request,
    user_id: str,
    current_user: UserRecord = Depends(require_admin),
) -> JSONResponse:
    """Issue a new temporary secret and ask the provider to send a reset email."""
    outcome = await request.app.state.provisioning.reset_secret(user_id)
    permissions = request.app.state.resolver.resolve(outcome.user) if outcome.user else None
    return _no_store(ProvisioningResponse.from_outcome(outcome, permissions).model_dump())


@router.put("/auth/users/{user_id}/permissions", response_model=PermissionsResponse)
async def put_user_permissions(
    request: Request,
    user_id: str,
    body: PermissionsUpdate,
    current_user: UserRecord = Depends(require_admin),
) -> PermissionsResponse:
    """Replace a regular user's stored permissions. Admin records are rejected (400)."""
    state = request.app.state
    try:
        user = await update_user_permissions(state.records, state.resolver, user_id, body.permissions)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return PermissionsResponse(user_id=user.id, role=user.role, permissions=state.resolver.resolve(user))
