"""HTTP route definitions for the account service."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from ..domain.account import AccountProfile
from ..domain.errors import (
    AccountError,
    EmailTaken,
    InternalError,
    InvalidCredentials,
    InvalidEmail,
    InvalidFormat,
    InvalidMailbox,
    InvalidToken,
    MailError,
    NotFound,
    RateLimited,
    UsernameTaken,
    WeakPassword,
)
from ..domain.service import AccountService
from ..security.rate_limiter import RequestRateLimiter

router = APIRouter(prefix="/v1")

_STATUS_BY_ERROR: dict[type[AccountError], int] = {
    RateLimited: status.HTTP_429_TOO_MANY_REQUESTS,
    InvalidCredentials: status.HTTP_401_UNAUTHORIZED,
    InvalidEmail: status.HTTP_400_BAD_REQUEST,
    EmailTaken: status.HTTP_409_CONFLICT,
    InvalidMailbox: status.HTTP_400_BAD_REQUEST,
    MailError: status.HTTP_400_BAD_REQUEST,
    InternalError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    NotFound: status.HTTP_404_NOT_FOUND,
    WeakPassword: status.HTTP_400_BAD_REQUEST,
    InvalidFormat: status.HTTP_400_BAD_REQUEST,
    UsernameTaken: status.HTTP_409_CONFLICT,
    InvalidToken: status.HTTP_400_BAD_REQUEST,
}


class ProfileResponse(BaseModel):
    """Serialised representation of an `AccountProfile`."""

    account_id: int
    email: str
    username: str
    avatar: str
    is_verified: bool

    @classmethod
    def from_domain(cls, profile: AccountProfile) -> "ProfileResponse":
        return cls(
            account_id=profile.account_id,
            email=profile.email,
            username=profile.username,
            avatar=profile.avatar,
            is_verified=profile.is_verified,
        )


class LoginRequest(BaseModel):
    """Credentials; ``identifier`` is an e-mail address or a username."""

    identifier: str = Field(..., min_length=1)
    password: str


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1)


class SessionResponse(BaseModel):
    """Bearer token plus the public profile of the session's account."""

    token: str
    token_type: str = "bearer"
    account: ProfileResponse


class ForgotPasswordRequest(BaseModel):
    email: str


class MessageResponse(BaseModel):
    message: str


class ResetPasswordRequest(BaseModel):
    token: str
    new_password: str


class UpdateUsernameRequest(BaseModel):
    username: str


def get_service(request: Request) -> AccountService:
    """Resolve the `AccountService` stored on the FastAPI application state."""
    service: AccountService = request.app.state.account_service
    return service


def get_rate_limiter(request: Request) -> RequestRateLimiter:
    limiter: RequestRateLimiter = request.app.state.rate_limiter
    return limiter


def client_key(request: Request) -> str:
    """Identify the caller by remote address."""
    return request.client.host if request.client else "unknown"


def _http_error(exc: AccountError) -> HTTPException:
    status_code = _STATUS_BY_ERROR.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    return HTTPException(status_code=status_code, detail={"code": exc.code, "message": exc.message})


def _enforce_rate_limit(limiter: RequestRateLimiter, key: str) -> None:
    if not limiter.allow(key):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"code": RateLimited.code, "message": "rate limited"},
        )


def current_account(
    authorization: str | None = Header(default=None),
    service: AccountService = Depends(get_service),
) -> AccountProfile:
    """Resolve the ``Authorization: Bearer`` header to an account profile."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": InvalidToken.code, "message": "Missing or invalid token"},
        )
    try:
        return service.authenticate(authorization.removeprefix("Bearer ").strip())
    except InvalidToken as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": exc.code, "message": exc.message},
        ) from exc
    except AccountError as exc:
        raise _http_error(exc) from exc


@router.post("/login", response_model=SessionResponse)
def login(
    payload: LoginRequest,
    request: Request,
    service: AccountService = Depends(get_service),
) -> SessionResponse:
    """Exchange credentials for a session token."""
    try:
        result = service.login(payload.identifier, payload.password, client_key(request))
    except AccountError as exc:
        raise _http_error(exc) from exc
    return SessionResponse(token=result.token, account=ProfileResponse.from_domain(result.profile))


@router.post("/register", response_model=SessionResponse)
def register(
    payload: RegisterRequest,
    request: Request,
    service: AccountService = Depends(get_service),
    limiter: RequestRateLimiter = Depends(get_rate_limiter),
) -> SessionResponse:
    """Create a pending account and send its confirmation e-mail."""
    _enforce_rate_limit(limiter, f"register:{client_key(request)}")
    try:
        result = service.register(payload.email, payload.password)
    except AccountError as exc:
        raise _http_error(exc) from exc
    return SessionResponse(token=result.token, account=ProfileResponse.from_domain(result.profile))


@router.get("/verify", response_model=ProfileResponse)
def verify(
    code: str = Query(..., min_length=1),
    service: AccountService = Depends(get_service),
) -> ProfileResponse:
    """Confirm an e-mail address with the code sent at registration."""
    try:
        profile = service.verify(code)
    except AccountError as exc:
        raise _http_error(exc) from exc
    return ProfileResponse.from_domain(profile)


@router.post("/forgot-password", response_model=MessageResponse)
def forgot_password(
    payload: ForgotPasswordRequest,
    request: Request,
    service: AccountService = Depends(get_service),
    limiter: RequestRateLimiter = Depends(get_rate_limiter),
) -> MessageResponse:
    _enforce_rate_limit(limiter, f"forgot:{client_key(request)}")
    try:
        message = service.forgot_password(payload.email)
    except AccountError as exc:
        raise _http_error(exc) from exc
    return MessageResponse(message=message)


@router.post("/reset-password", response_model=ProfileResponse)
def reset_password(
    payload: ResetPasswordRequest,
    service: AccountService = Depends(get_service),
) -> ProfileResponse:
    """Set a new password using a token from the reset e-mail."""
    try:
        profile = service.reset_password(payload.token, payload.new_password)
    except AccountError as exc:
        raise _http_error(exc) from exc
    return ProfileResponse.from_domain(profile)


@router.get("/profile", response_model=ProfileResponse)
def get_profile(account: AccountProfile = Depends(current_account)) -> ProfileResponse:
    return ProfileResponse.from_domain(account)


@router.patch("/profile/username", response_model=ProfileResponse)
def update_username(
    payload: UpdateUsernameRequest,
    account: AccountProfile = Depends(current_account),
    service: AccountService = Depends(get_service),
) -> ProfileResponse:
    try:
        profile = service.update_username(account.account_id, payload.username)
    except AccountError as exc:
        raise _http_error(exc) from exc
    return ProfileResponse.from_domain(profile)
