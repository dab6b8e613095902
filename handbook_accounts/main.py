"""FastAPI application wiring for the handbook account service."""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from psycopg_pool import ConnectionPool

from .api.routes import router as v1_router
from .config import Settings, get_settings
from .domain.service import AccountService
from .domain.validation import MailExchangerCheck
from .mail import SmtpMailTransport
from .repository import AccountRepository
from .security.login_throttle import LoginThrottle
from .security.passwords import PasswordHasher
from .security.rate_limiter import build_rate_limiter
from .security.tokens import TokenIssuer

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


def build_account_service(repository: AccountRepository, settings: Settings) -> AccountService:
    """Assemble the account service and its collaborators from configuration."""
    return AccountService(
        repository,
        hasher=PasswordHasher(rounds=settings.bcrypt_rounds),
        tokens=TokenIssuer(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            default_audience=settings.jwt_audience,
            ttl_seconds=settings.jwt_ttl_seconds,
        ),
        throttle=LoginThrottle(
            max_failures=settings.login_max_failures,
            window_seconds=settings.login_window_seconds,
        ),
        mailer=SmtpMailTransport(
            host=settings.smtp_host,
            port=settings.smtp_port,
            sender=settings.smtp_sender,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_ssl=settings.smtp_use_ssl,
            timeout=settings.smtp_timeout_seconds,
        ),
        public_base_url=settings.public_base_url,
        password_reset_url=settings.password_reset_url,
        mx_check=(
            MailExchangerCheck(timeout=settings.mx_lookup_timeout_seconds)
            if settings.mx_check_enabled
            else None
        ),
        username_max_attempts=settings.username_max_attempts,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise shared resources (Postgres pool, services) for the app lifecycle."""
    pool = ConnectionPool(settings.database_url, open=False, timeout=settings.database_pool_timeout)
    pool.open()
    repository = AccountRepository(pool)
    repository.ensure_schema()
    app.state.pool = pool
    app.state.account_service = build_account_service(repository, settings)
    app.state.rate_limiter = build_rate_limiter(settings)
    logger.info("%s %s started", settings.app_name, settings.version)
    try:
        yield
    finally:
        pool.close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


@app.get("/metrics", tags=["health"])
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(v1_router)
