"""
Authentication & Authorization: tenant JWTs and service credentials.

- Tenant callers: JWT issued by the dashboard's auth service, signed with SECRET_KEY,
  carrying `sub` and `tenant_ids`. Include: Authorization: Bearer <jwt>
- Programmatic/scheduler: API_KEY. Include: Authorization: Bearer <API_KEY>
- Cron: X-Cron-Secret: <CRON_SECRET> (see routers/cron.py)

In development with no API_KEY set, auth is skipped and the service context is used.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from autopilot.config import get_settings
from autopilot.context import ExecutionContext

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24  # 24 hours

_bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(subject: str, tenant_ids: list[str]) -> str:
    """Issue a tenant-scoped token. Used by scripts and tests; the dashboard issues its own."""
    settings = get_settings()
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "tenant_ids": [str(t) for t in tenant_ids],
        "exp": now + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES),
        "iat": now,
    }
    return jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)


def decode_access_token(token: str) -> Optional[dict]:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError:
        return None


async def require_context(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> ExecutionContext:
    """
    Accept either a tenant JWT or API_KEY.
    Returns the ExecutionContext the request acts under.
    """
    settings = get_settings()
    api_key = settings.api_key

    # Dev convenience: skip auth when no key is configured
    if not api_key:
        if settings.is_production:
            raise HTTPException(
                status_code=500,
                detail="Server misconfiguration: API_KEY must be set in production.",
            )
        return ExecutionContext.service("dev-no-auth")

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Missing authorization. Include header: Authorization: Bearer <token>",
        )

    token = credentials.credentials

    if token == api_key:
        return ExecutionContext.service("api-key")

    payload = decode_access_token(token)
    if payload and payload.get("sub"):
        try:
            return ExecutionContext.for_tenants(f"user:{payload['sub']}", payload.get("tenant_ids") or [])
        except ValueError:
            logger.warning(f"Token for {payload['sub']} carries malformed tenant ids")

    raise HTTPException(
        status_code=401,
        detail="Invalid or expired token.",
    )
