from __future__ import annotations

from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Header, Path, Request, Response
from fastapi.responses import RedirectResponse

from authgate.api.schemas import (
    AvailabilityResponse,
    ChangeEmailRequest,
    EmailChangeResponse,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    ProviderLoginRequest,
    RegisterRequest,
    RegisterResponse,
    RevokedResponse,
    SessionInfoResponse,
    SessionResponse,
    UserResponse,
)
from authgate.logging import get_correlation_id, get_logger
from authgate.service.errors import AuthFailedError, ServiceError
from authgate.service.gateway import AuthContext, AuthGateway
from authgate.service.runtime import Runtime
from authgate.service.sessions import ClientMeta
from authgate.storage.models import Session, User

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

FORGOT_PASSWORD_MESSAGE = "If the account exists, a password reset link has been sent."


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_gateway(runtime: Runtime = Depends(get_runtime)) -> AuthGateway:
    return runtime.gateway


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


async def bearer_token(authorization: Optional[str] = Header(None)) -> str:
    token = _extract_bearer(authorization)
    if not token:
        raise AuthFailedError("missing bearer token")
    return token


def client_meta(request: Request, user_agent: Optional[str] = Header(None)) -> ClientMeta:
    host = request.client.host if request.client else None
    return ClientMeta.from_request_values(host, user_agent)


def _ok(data) -> Envelope:
    envelope = Envelope(status="ok", data=data)
    cid = get_correlation_id()
    if cid:
        envelope.request_id = cid
    return envelope


def _user_payload(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        username=user.username,
        email_confirmed=user.email_confirmed,
        login_methods=sorted(user.login_methods()),
    )


def _session_payload(user: User, session: Session) -> SessionResponse:
    return SessionResponse(
        token=session.token,
        user=_user_payload(user),
        method=session.method,
        expires_at=session.expires_at,
    )


def _auth_payload(ctx: AuthContext) -> SessionResponse:
    return _session_payload(ctx.user, ctx.session)


@router.post("/login", response_model=Envelope)
async def login(
    body: LoginRequest,
    meta: ClientMeta = Depends(client_meta),
    gateway: AuthGateway = Depends(get_gateway),
):
    """Authenticate with a username or email and a password.

    Raises:
        401: If the identifier is unknown or the password is wrong (indistinguishable)
    """
    ctx = await gateway.login(body.identifier, body.password, meta)
    return _ok(_auth_payload(ctx))


@router.post("/login/{provider}", response_model=Envelope)
async def login_provider(
    body: ProviderLoginRequest,
    provider: str = Path(..., max_length=32, description="Identity provider (google, github, ...)"),
    meta: ClientMeta = Depends(client_meta),
    gateway: AuthGateway = Depends(get_gateway),
):
    ctx = await gateway.login_provider(provider, body.assertion, meta)
    return _ok(_auth_payload(ctx))


@router.post("/refresh", response_model=Envelope)
async def refresh(
    token: str = Depends(bearer_token), gateway: AuthGateway = Depends(get_gateway)
):
    ctx = await gateway.refresh(token)
    return _ok(_auth_payload(ctx))


@router.post("/logout", response_model=Envelope)
async def logout(
    token: str = Depends(bearer_token), gateway: AuthGateway = Depends(get_gateway)
):
    """Revoke the presented session. Repeating the call is not an error."""
    revoked = await gateway.logout(token)
    return _ok(RevokedResponse(revoked=int(revoked)))


@router.post("/logout-others", response_model=Envelope)
async def logout_others(
    token: str = Depends(bearer_token), gateway: AuthGateway = Depends(get_gateway)
):
    revoked = await gateway.logout_others(token)
    return _ok(RevokedResponse(revoked=revoked))


@router.post("/logout-all", response_model=Envelope)
async def logout_all(
    token: str = Depends(bearer_token), gateway: AuthGateway = Depends(get_gateway)
):
    revoked = await gateway.logout_all(token)
    return _ok(RevokedResponse(revoked=revoked))


@router.post("/register", response_model=Envelope, status_code=201)
async def register(
    body: RegisterRequest,
    response: Response,
    meta: ClientMeta = Depends(client_meta),
    gateway: AuthGateway = Depends(get_gateway),
):
    """Create a local account.

    Returns 201 with the new user, or 200 with a session when registration
    logs the user in.

    Raises:
        409: If the email or username is already taken
    """
    result = await gateway.register(
        body.email, body.password, body.confirm_password, body.username, meta
    )
    payload = RegisterResponse(
        user=_user_payload(result.user), confirmation_sent=result.confirmation_sent
    )
    if result.session is not None:
        payload.session = _session_payload(result.user, result.session)
        response.status_code = 200
    return _ok(payload)


@router.post("/forgot-password", response_model=Envelope)
async def forgot_password(body: ForgotPasswordRequest, gateway: AuthGateway = Depends(get_gateway)):
    await gateway.forgot_password(body.identifier)
    return _ok({"message": FORGOT_PASSWORD_MESSAGE})


@router.post("/password-reset", response_model=Envelope)
async def password_reset(
    body: PasswordResetConfirm,
    meta: ClientMeta = Depends(client_meta),
    gateway: AuthGateway = Depends(get_gateway),
):
    ctx = await gateway.reset_password(body.token, body.new_password, body.confirm_password, meta)
    data = {"user": _user_payload(ctx.user), "session": None}
    if ctx.session is not None:
        data["session"] = _auth_payload(ctx)
    return _ok(data)


@router.post("/password-change", response_model=Envelope)
async def password_change(
    body: PasswordChangeRequest,
    token: str = Depends(bearer_token),
    gateway: AuthGateway = Depends(get_gateway),
):
    revoked = await gateway.change_password(
        token, body.new_password, body.current_password, body.confirm_password
    )
    return _ok(RevokedResponse(revoked=revoked))


@router.post("/unlink/{provider}", response_model=Envelope)
async def unlink(
    provider: str = Path(..., max_length=32),
    token: str = Depends(bearer_token),
    gateway: AuthGateway = Depends(get_gateway),
):
    user = await gateway.unlink(token, provider)
    return _ok(_user_payload(user))


def _redirect_with(base_url: str, **params: str) -> RedirectResponse:
    separator = "&" if "?" in base_url else "?"
    return RedirectResponse(f"{base_url}{separator}{urlencode(params)}", status_code=302)


@router.get("/confirm-email/{token}", response_model=None)
async def confirm_email(
    token: str = Path(..., max_length=1024),
    runtime: Runtime = Depends(get_runtime),
):
    """Redeem an email confirmation link.

    With a configured redirect URL the browser is sent there with
    ``success=true`` or ``error=<code>`` and ``message``; otherwise the result is JSON.
    """
    redirect_url = runtime.settings.confirm_email_redirect_url
    if not redirect_url:
        user = await runtime.gateway.confirm_email(token)
        return _ok(_user_payload(user))
    try:
        await runtime.gateway.confirm_email(token)
    except ServiceError as exc:
        logger.info("confirm_email_redirect_error", error_code=exc.error_code)
        return _redirect_with(redirect_url, error=exc.error_code, message=exc.message)
    return _redirect_with(redirect_url, success="true")


@router.get("/validate-username/{username}", response_model=Envelope)
async def validate_username(
    username: str = Path(..., max_length=64), gateway: AuthGateway = Depends(get_gateway)
):
    """Report whether a username is free.

    Raises:
        409: If a user already has this username
    """
    await gateway.validate_username(username)
    return _ok(AvailabilityResponse())


@router.get("/validate-email/{email}", response_model=Envelope)
async def validate_email(
    email: str = Path(..., max_length=254), gateway: AuthGateway = Depends(get_gateway)
):
    await gateway.validate_email(email)
    return _ok(AvailabilityResponse())


@router.post("/change-email", response_model=Envelope)
async def change_email(
    body: ChangeEmailRequest,
    token: str = Depends(bearer_token),
    gateway: AuthGateway = Depends(get_gateway),
):
    outcome = await gateway.change_email(token, body.email, body.password)
    return _ok(EmailChangeResponse(outcome=outcome.value, email=body.email))


@router.get("/session", response_model=Envelope)
async def session_info(
    token: str = Depends(bearer_token), gateway: AuthGateway = Depends(get_gateway)
):
    info = await gateway.session_info(token)
    return _ok(SessionInfoResponse(**vars(info)))
