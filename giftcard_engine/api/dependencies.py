"""
FastAPI Dependencies - Bearer token authorization and service wiring.

NO DICTIONARIES - All dependencies return typed objects.

Tokens are issued by the identity provider; this service only verifies
them. Claims: sub (actor id), email, role.
"""

from typing import Annotated

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from giftcard_engine.config import settings
from giftcard_engine.db.session import get_write_db
from giftcard_engine.exceptions import AuthenticationError
from giftcard_engine.models.domain import AdminActor
from giftcard_engine.services.provisioning import ProvisioningWaterfall
from giftcard_engine.services.tillo_provider import TilloProvider

logger = get_logger(__name__)

ADMIN_ROLE = "admin"
SERVICE_ROLE = "service"

# Bearer token scheme
bearer_scheme = HTTPBearer(auto_error=False)

_provider: TilloProvider | None = None


def decode_actor_token(token: str, secret: str, algorithm: str = "HS256") -> AdminActor:
    """
    Verify a bearer token and extract the actor.

    Raises:
        AuthenticationError: If the token is expired, malformed or missing claims
    """
    if not secret:
        raise AuthenticationError("token verification is not configured")
    try:
        payload = jwt.decode(token, secret, algorithms=[algorithm])
    except jwt.ExpiredSignatureError as e:
        raise AuthenticationError("token expired") from e
    except jwt.InvalidTokenError as e:
        raise AuthenticationError(f"invalid token: {e}") from e

    actor_id = payload.get("sub")
    role = payload.get("role")
    if not actor_id or not role:
        raise AuthenticationError("token missing sub or role claim")

    email = payload.get("email")
    return AdminActor(actor_id=str(actor_id), email=str(email) if email else None, role=str(role))


async def get_current_actor(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> AdminActor:
    """
    Authenticated caller from the Authorization header.

    Raises:
        HTTPException(401): If no token is provided or it fails verification
    """
    if credentials is None:
        logger.warning("auth_no_token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        actor = decode_actor_token(
            credentials.credentials, settings.admin_jwt_secret, settings.admin_jwt_algorithm
        )
    except AuthenticationError as e:
        logger.warning("auth_invalid_token", error=e.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e

    logger.debug("auth_success", actor_id=actor.actor_id, role=actor.role)
    return actor


async def require_admin_role(
    actor: AdminActor = Depends(get_current_actor),
) -> AdminActor:
    """
    Require the admin role.

    Raises:
        HTTPException(403): If the actor is not an admin
    """
    if actor.role != ADMIN_ROLE:
        logger.warning("auth_insufficient_role", actor_id=actor.actor_id, role=actor.role)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Admin role required. Your role: {actor.role}",
        )
    return actor


async def require_service_or_admin(
    actor: AdminActor = Depends(get_current_actor),
) -> AdminActor:
    """
    Require a service or admin role (provisioning callers).

    Raises:
        HTTPException(403): For any other role
    """
    if actor.role not in (ADMIN_ROLE, SERVICE_ROLE):
        logger.warning("auth_insufficient_role", actor_id=actor.actor_id, role=actor.role)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Service or admin role required",
        )
    return actor


def get_purchase_provider() -> TilloProvider:
    """Shared external purchase provider built from settings."""
    global _provider
    if _provider is None:
        _provider = TilloProvider(
            api_key=settings.external_purchase_api_key,
            secret_key=settings.external_purchase_secret_key,
            base_url=settings.external_purchase_base_url,
            timeout_seconds=settings.external_purchase_timeout_seconds,
        )
    return _provider


async def close_purchase_provider() -> None:
    """Close the shared provider's HTTP client (for graceful shutdown)."""
    global _provider
    if _provider is not None:
        await _provider.close()
        _provider = None


async def get_waterfall(
    db: Annotated[AsyncSession, Depends(get_write_db)],
    provider: Annotated[TilloProvider, Depends(get_purchase_provider)],
) -> ProvisioningWaterfall:
    """Provisioning waterfall bound to the request's write session."""
    return ProvisioningWaterfall(
        db,
        provider,
        currency=settings.external_purchase_currency,
        timeout_seconds=settings.external_purchase_timeout_seconds,
    )
