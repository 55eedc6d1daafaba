"""
api/routes/v1/auth.py -- Account creation, login and identity endpoints.

Routes:
  POST /api/v1/auth/signup       -- create a user account
  POST /api/v1/auth/login        -- email/password login; returns a bearer token
  POST /api/v1/auth/admin-login  -- same, but only admins receive a token
  GET  /api/v1/auth/me           -- current principal (requires auth)

Security:
  [H2] signup and login are rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] authenticate_user() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on responses that carry a token.

Login and signup authenticate inside the handler, so there is no principal on
request.state for an observer to see; they record their audit entries
manually with record_activity().
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.exc import IntegrityError
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter
from api.models import Envelope, LoginData, LoginRequest, PrincipalOut, SignupRequest, UserOut, success
from audit.hooks import ObservedRoute, record_activity
from audit.models import USER_LOGIN, USER_SIGNUP
from auth.dependencies import require_user
from auth.models import Principal, Role, User, role_satisfies
from auth.store import UserStore
from auth.tokens import authenticate_user, create_access_token, hash_password
from core.config import get_settings
from core.errors import BadCredentials, Conflict, InsufficientRole

_settings = get_settings()

router = APIRouter(route_class=ObservedRoute)


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/signup", response_model=Envelope, status_code=201)
async def signup(request: Request, body: SignupRequest) -> Envelope:
    user_store: UserStore = request.app.state.user_store
    hashed = await run_in_threadpool(hash_password, body.password)
    try:
        user_id = await run_in_threadpool(
            user_store.create_user,
            User(
                email=body.email.lower(),
                hashed_password=hashed,
                first_name=body.first_name,
                last_name=body.last_name,
                role=Role.user,
            ),
        )
    except IntegrityError as exc:
        raise Conflict("Email already exists.") from exc

    created = await run_in_threadpool(user_store.get_by_id, user_id)
    record_activity(request, created.to_principal(), USER_SIGNUP)
    return success(UserOut.from_user(created), message="Signup successful")


async def _login(request: Request, response: Response, body: LoginRequest, required_role: Role) -> Envelope:
    user_store: UserStore = request.app.state.user_store
    user = await run_in_threadpool(authenticate_user, user_store, body.email, body.password)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    if user is None:
        raise BadCredentials()
    if not role_satisfies(user.role, required_role):
        raise InsufficientRole()

    principal = user.to_principal()
    token = create_access_token(principal.id, principal.role)
    record_activity(request, principal, USER_LOGIN, {"role": principal.role.value})
    return success(
        LoginData(
            access_token=token,
            expires_in=_settings.token_expire_seconds,
            user=PrincipalOut.from_principal(principal),
        ),
        message="Login successful",
    )


@limiter.limit(_settings.login_rate_limit)  # [H2]
@router.post("/auth/login", response_model=Envelope)
async def login(request: Request, response: Response, body: LoginRequest) -> Envelope:
    """Authenticate with email and password.

    Unknown email and wrong password return the same bad_credentials error so
    the endpoint cannot be used to enumerate accounts.
    """
    return await _login(request, response, body, Role.user)


@limiter.limit(_settings.login_rate_limit)  # [H2]
@router.post("/auth/admin-login", response_model=Envelope)
async def admin_login(request: Request, response: Response, body: LoginRequest) -> Envelope:
    """Login for the admin console. Valid non-admin credentials get insufficient_role."""
    return await _login(request, response, body, Role.admin)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=Envelope)
async def me(principal: Principal = Depends(require_user)) -> Envelope:
    """Return identity information for the currently authenticated principal."""
    return success(PrincipalOut.from_principal(principal))
