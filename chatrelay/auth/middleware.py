"""API key and shared-secret authentication."""

import hashlib
import hmac
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.config import settings
from chatrelay.database import get_db
from chatrelay.models.tenant import Tenant
from chatrelay.relay.service import Relay
from chatrelay.storage.repositories import get_tenant_by_api_key_hash

API_KEY_HEADER = APIKeyHeader(name="Authorization", auto_error=False)


def hash_api_key(api_key: str) -> str:
    """Hash API key with salt for storage/lookup."""
    return hashlib.sha256(
        f"{settings.api_key_hash_salt}:{api_key}".encode()
    ).hexdigest()


def _bearer(auth_header: str | None) -> str | None:
    """Token from an `Authorization: Bearer ...` header, or None."""
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header[7:].strip() or None


def get_relay(request: Request) -> Relay:
    """Relay services built at startup and kept on app state."""
    return request.app.state.relay


async def get_tenant_from_bearer(
    db: Annotated[AsyncSession, Depends(get_db)],
    auth_header: str | None = Depends(API_KEY_HEADER),
) -> Tenant:
    """Extract tenant from Bearer token (API key)."""
    api_key = _bearer(auth_header)
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid Authorization header",
        )
    tenant = await get_tenant_by_api_key_hash(db, hash_api_key(api_key))
    if not tenant:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )
    return tenant


def require_worker_secret(
    relay: Annotated[Relay, Depends(get_relay)],
    auth_header: str | None = Depends(API_KEY_HEADER),
) -> None:
    """Service-to-service auth for callbacks from the agent runtime worker."""
    secret = relay.settings.worker_api_secret
    if not secret:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Not configured",
        )
    presented = _bearer(auth_header) or ""
    if not hmac.compare_digest(presented.encode(), secret.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )


# Type aliases for dependency injection
TenantDep = Annotated[Tenant, Depends(get_tenant_from_bearer)]
RelayDep = Annotated[Relay, Depends(get_relay)]
WorkerAuthDep = Depends(require_worker_secret)
