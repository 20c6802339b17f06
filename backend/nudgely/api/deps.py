"""API dependencies."""
import hmac

from fastapi import Depends, HTTPException, Request, status

from nudgely.config import Settings, get_settings
from nudgely.database import SessionLocal
from nudgely.services.notifications import Notifier, SmtpNotifier
from nudgely.services.store import NudgeStore


def get_store() -> NudgeStore:
    """Store bound to the application's session factory."""
    return NudgeStore(SessionLocal)


def get_notifier(settings: Settings = Depends(get_settings)) -> Notifier:
    return SmtpNotifier(settings)


def extract_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def require_cron_secret(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> None:
    """Reject trigger calls that do not carry the shared cron secret."""
    token = extract_bearer_token(request)
    if token and hmac.compare_digest(token.encode(), settings.cron_secret.encode()):
        return

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_request_ip(request: Request) -> str | None:
    """Extract best-effort client IP for completion metadata."""
    xff = request.headers.get("x-forwarded-for")
    if xff:
        return xff.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None
