from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import (
    APIRouter,
    Cookie,
    Depends,
    Header,
    HTTPException,
    Path,
    Query,
    Request,
    Response,
)

from lostfound.api.schemas import (
    ActivityListResponse,
    ActivityResponse,
    AdminCreateUserRequest,
    AdminCreateUserResponse,
    AuditClearRequest,
    AuthResponse,
    ClaimDecisionResponse,
    ClaimListResponse,
    ClaimLookupResponse,
    ClaimResponse,
    CountResponse,
    DecisionRequest,
    EmailVerificationRequest,
    Envelope,
    FailedClaimAttemptRequest,
    ItemListResponse,
    ItemResponse,
    NotificationCountResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    ReportItemRequest,
    ResendVerificationRequest,
    SessionResponse,
    SigninRequest,
    SignupRequest,
    SubmitClaimRequest,
    UserListResponse,
    UserResponse,
    UserStatusRequest,
)
from lostfound.logging import get_logger
from lostfound.service.auth import AuthContext
from lostfound.service.errors import ValidationError
from lostfound.service.navigation import default_page_for
from lostfound.service.runtime import check_rate_limit, get_runtime
from lostfound.storage.models import (
    ITEM_CLAIMED,
    ITEM_VERIFIED,
    ROLE_ADMIN,
    SecurityQuestion,
    Session,
    User,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

# Statuses a non-staff visitor may browse on the board
PUBLIC_ITEM_STATUSES = (ITEM_VERIFIED, ITEM_CLAIMED)


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Raise 429 once the token bucket for ``key`` is empty."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retry_after_seconds": reset_seconds},
        )
    return info


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def get_user(
    authorization: Optional[str] = Header(None),
    session_id: Optional[str] = Header(None, convert_underscores=False),
    session_cookie: Optional[str] = Cookie(None, alias="session_id"),
) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization, session_id or session_cookie)
    if not ctx:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    return ctx


async def get_admin_user(
    authorization: Optional[str] = Header(None),
    session_id: Optional[str] = Header(None, convert_underscores=False),
    session_cookie: Optional[str] = Cookie(None, alias="session_id"),
) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(
        authorization, session_id or session_cookie, required_role=ROLE_ADMIN
    )
    if not ctx:
        raise _http_error("forbidden", "admin access required", status_code=403)
    return ctx


def _principal_user(principal: AuthContext) -> User:
    return get_runtime().auth.get_profile(principal.user_id)


def _apply_session_cookie(response: Response, session: Session) -> None:
    expires_at = session.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    response.set_cookie(
        "session_id",
        session.id,
        httponly=True,
        secure=True,
        samesite="lax",
        expires=expires_at,
        path="/",
    )


# auth
@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request):
    """Register a finder account and send the verification email.

    No session is issued; the account cannot sign in until the address is
    verified.
    """
    runtime = get_runtime()
    if not runtime.settings.allow_signup:
        raise _http_error("forbidden", "signup disabled", status_code=403)
    await _enforce_rate_limit(
        runtime,
        f"signup:{_client_ip(request)}",
        runtime.settings.signup_rate_limit_per_minute,
        60,
    )
    user = await runtime.auth.sign_up(
        body.email,
        body.password,
        full_name=body.full_name,
        student_id=body.student_id,
        contact_number=body.contact_number,
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/auth/signin", response_model=Envelope, tags=["auth"])
async def signin(body: SigninRequest, request: Request, response: Response):
    """Authenticate by email or student ID.

    Raises:
        401: invalid credentials, with the remaining attempt count
        403: unverified email or deactivated account
        429: identity locked out or request rate exceeded
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.identity.strip().lower()}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    user, session = await runtime.auth.sign_in(
        body.identity,
        body.password,
        user_agent=request.headers.get("user-agent"),
        ip_addr=_client_ip(request),
    )
    _apply_session_cookie(response, session)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=UserResponse.from_user(user),
            session_id=session.id,
            session_expires_at=session.expires_at,
            default_page=default_page_for(user.role).value,
        ),
    )


@router.post("/auth/signout", response_model=Envelope, tags=["auth"])
async def signout(response: Response, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    if principal.session_id:
        await runtime.auth.sign_out(principal.session_id)
    response.delete_cookie("session_id", path="/", secure=True, samesite="lax")
    return Envelope(status="ok", data={"message": "signed out"})


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def current_session(principal: AuthContext = Depends(get_user)):
    user = _principal_user(principal)
    return Envelope(
        status="ok",
        data=SessionResponse(
            user=UserResponse.from_user(user), session_id=principal.session_id or ""
        ),
    )


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    await runtime.auth.initiate_password_reset(body.email)
    return Envelope(
        status="ok",
        data={"message": "Password reset link sent. Please check your email."},
    )


@router.post("/auth/password/session", response_model=Envelope, tags=["auth"])
async def open_recovery_session(body: EmailVerificationRequest, response: Response):
    """Exchange a recovery link token for a short-lived recovery session."""
    runtime = get_runtime()
    user, session = await runtime.auth.open_recovery_session(body.token)
    _apply_session_cookie(response, session)
    return Envelope(
        status="ok",
        data=SessionResponse(user=UserResponse.from_user(user), session_id=session.id),
    )


@router.post("/auth/password/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(body: PasswordResetConfirm):
    runtime = get_runtime()
    if not await runtime.auth.complete_password_reset(body.token, body.new_password):
        raise ValidationError("This reset link is invalid or has expired.")
    return Envelope(
        status="ok",
        data={"message": "Password updated. Please sign in with your new password."},
    )


@router.post("/auth/email/verify", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest):
    runtime = get_runtime()
    if not await runtime.auth.complete_email_verification(body.token):
        raise ValidationError("This verification link is invalid or has expired.")
    return Envelope(
        status="ok", data={"message": "Email verified. You can now sign in."}
    )


@router.post("/auth/email/resend", response_model=Envelope, tags=["auth"])
async def resend_verification(body: ResendVerificationRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    await runtime.auth.resend_verification(body.email)
    return Envelope(
        status="ok",
        data={"message": "If the account exists and is unverified, a new link was sent."},
    )


# items
@router.post("/items", response_model=Envelope, status_code=201, tags=["items"])
async def report_item(body: ReportItemRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    reporter = _principal_user(principal)
    item = await runtime.claims.report_item(
        reporter,
        item_type=body.item_type,
        location=body.location,
        found_at=body.found_at,
        security_questions=[
            SecurityQuestion(question=q.question, answer=q.answer)
            for q in body.security_questions
        ],
        photo_ref=body.photo_ref,
        description=body.description,
    )
    return Envelope(status="ok", data=ItemResponse.from_item(item))


@router.get("/items", response_model=Envelope, tags=["items"])
async def list_items(
    status: Optional[str] = Query(None),
    item_type: Optional[str] = Query(None, max_length=64),
    location: Optional[str] = Query(None, max_length=128),
    search: Optional[str] = Query(None, max_length=128),
    principal: AuthContext = Depends(get_user),
):
    """Board listing. Finders see verified and claimed items only."""
    runtime = get_runtime()
    if not principal.is_admin:
        if status and status not in PUBLIC_ITEM_STATUSES:
            raise _http_error("forbidden", "admin access required", status_code=403)
        status = status or ITEM_VERIFIED
    items = runtime.claims.list_items(
        status=status,
        item_type=item_type,
        location=location,
        search=search,
        include_answers=principal.is_admin,
    )
    return Envelope(
        status="ok",
        data=ItemListResponse(
            items=[
                ItemResponse.from_item(i, include_answers=principal.is_admin) for i in items
            ]
        ),
    )


@router.get("/items/{item_id}", response_model=Envelope, tags=["items"])
async def get_item(
    item_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    item = runtime.claims.get_item(item_id, include_answers=principal.is_admin)
    if not principal.is_admin and item.status not in PUBLIC_ITEM_STATUSES:
        if item.reporter_id != principal.user_id:
            raise _http_error("not_found", "item not found", status_code=404)
    return Envelope(
        status="ok",
        data=ItemResponse.from_item(item, include_answers=principal.is_admin),
    )


@router.post("/items/{item_id}/verify", response_model=Envelope, tags=["items"])
async def verify_item(
    body: DecisionRequest,
    item_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    item = await runtime.claims.verify_item(
        _principal_user(principal), item_id, body.approve
    )
    return Envelope(
        status="ok", data=ItemResponse.from_item(item, include_answers=True)
    )


@router.post(
    "/items/{item_id}/claims", response_model=Envelope, status_code=201, tags=["claims"]
)
async def submit_claim(
    body: SubmitClaimRequest,
    item_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    claim = await runtime.claims.submit_claim(
        item_id, _principal_user(principal), body.answers, body.proof_photo_ref
    )
    return Envelope(status="ok", data=ClaimResponse.from_claim(claim))


# claims
@router.get("/claims", response_model=Envelope, tags=["claims"])
async def list_claims(
    status: Optional[str] = Query(None),
    item_id: Optional[str] = Query(None, max_length=128),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    claims = runtime.claims.list_claims(status=status, item_id=item_id)
    return Envelope(
        status="ok",
        data=ClaimListResponse(items=[ClaimResponse.from_claim(c) for c in claims]),
    )


@router.post("/claims/{claim_id}/decision", response_model=Envelope, tags=["claims"])
async def decide_claim(
    body: DecisionRequest,
    claim_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    claim, item = await runtime.claims.decide_claim(
        _principal_user(principal), claim_id, body.approve
    )
    return Envelope(
        status="ok",
        data=ClaimDecisionResponse(
            claim=ClaimResponse.from_claim(claim),
            item=ItemResponse.from_item(item, include_answers=True),
        ),
    )


@router.post("/claims/{claim_id}/failed-attempt", response_model=Envelope, tags=["claims"])
async def record_failed_claim_attempt(
    body: FailedClaimAttemptRequest,
    claim_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    record = await runtime.claims.record_failed_claim_attempt(
        _principal_user(principal), claim_id, body.reason
    )
    return Envelope(status="ok", data=ActivityResponse.from_record(record))


@router.get("/claims/code/{code}", response_model=Envelope, tags=["claims"])
async def lookup_claim_code(
    code: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    claim, item = runtime.claims.lookup_by_code(code)
    return Envelope(
        status="ok",
        data=ClaimLookupResponse(
            claim=ClaimResponse.from_claim(claim), item=ItemResponse.from_item(item)
        ),
    )


# profile
@router.get("/me/items", response_model=Envelope, tags=["profile"])
async def my_items(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    items = runtime.claims.list_user_items(principal.user_id)
    return Envelope(
        status="ok",
        data=ItemListResponse(
            items=[ItemResponse.from_item(i, include_answers=True) for i in items]
        ),
    )


@router.get("/me/claims", response_model=Envelope, tags=["profile"])
async def my_claims(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    claims = runtime.claims.list_user_claims(principal.user_id)
    return Envelope(
        status="ok",
        data=ClaimListResponse(items=[ClaimResponse.from_claim(c) for c in claims]),
    )


@router.get("/me/activity", response_model=Envelope, tags=["profile"])
async def my_activity(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    records = runtime.activity.get_user_activity(principal.user_id)
    return Envelope(
        status="ok",
        data=ActivityListResponse(items=[ActivityResponse.from_record(r) for r in records]),
    )


# notifications
@router.get("/notifications", response_model=Envelope, tags=["notifications"])
async def list_notifications(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    records = runtime.activity.get_notifications(principal.user_id)
    return Envelope(
        status="ok",
        data=ActivityListResponse(items=[ActivityResponse.from_record(r) for r in records]),
    )


@router.get("/notifications/count", response_model=Envelope, tags=["notifications"])
async def notification_count(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data=NotificationCountResponse(
            unviewed=runtime.activity.unviewed_count(principal.user_id)
        ),
    )


@router.post("/notifications/ack", response_model=Envelope, tags=["notifications"])
async def ack_notifications(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    updated = runtime.activity.ack_notifications(principal.user_id)
    return Envelope(status="ok", data=CountResponse(count=updated))


# audit
@router.get("/audit", response_model=Envelope, tags=["audit"])
async def audit_log(
    action: Optional[str] = Query(None, max_length=64),
    actor_id: Optional[str] = Query(None, max_length=128),
    item_id: Optional[str] = Query(None, max_length=128),
    since: Optional[datetime] = Query(None),
    limit: int = Query(500, ge=1, le=1000),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    if since is not None and since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    records = runtime.activity.get_audit_log(
        action=action, actor_id=actor_id, item_id=item_id, since=since, limit=limit
    )
    return Envelope(
        status="ok",
        data=ActivityListResponse(items=[ActivityResponse.from_record(r) for r in records]),
    )


@router.post("/audit/clear", response_model=Envelope, tags=["audit"])
async def clear_audit_log(
    body: AuditClearRequest, principal: AuthContext = Depends(get_user)
):
    """``admin`` hides everything from the staff view; ``user`` clears the
    caller's own history and notifications."""
    runtime = get_runtime()
    if body.scope == "admin" and not principal.is_admin:
        raise _http_error("forbidden", "admin access required", status_code=403)
    cleared = runtime.activity.clear_audit_log(body.scope, principal.user_id)
    return Envelope(status="ok", data=CountResponse(count=cleared))


# admin
@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    role: Optional[str] = Query(None, max_length=16),
    limit: int = Query(100, ge=1, le=500),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    users = runtime.auth.list_users(role=role, limit=limit)
    return Envelope(
        status="ok",
        data=UserListResponse(items=[UserResponse.from_user(u) for u in users]),
    )


@router.post("/admin/users", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_user(
    body: AdminCreateUserRequest, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    user, password = await runtime.auth.admin_create_user(
        email=body.email,
        full_name=body.full_name,
        created_by=principal.user_id,
        password=body.password,
        contact_number=body.contact_number,
    )
    return Envelope(
        status="ok",
        data=AdminCreateUserResponse(
            **UserResponse.from_user(user).model_dump(), password=password
        ),
    )


@router.patch("/admin/users/{user_id}/status", response_model=Envelope, tags=["admin"])
async def admin_set_user_status(
    body: UserStatusRequest,
    user_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = await runtime.auth.set_user_status(
        user_id, body.status, actor_id=principal.user_id
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.delete("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_user(
    user_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    if not await runtime.auth.delete_user(user_id, actor_id=principal.user_id):
        raise _http_error("not_found", "user not found", status_code=404)
    return Envelope(status="ok", data={"deleted": True})
