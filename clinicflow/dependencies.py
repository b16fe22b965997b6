"""FastAPI dependencies."""

from typing import Annotated
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from clinicflow.core.cache import PricingCache, redis_connection
from clinicflow.core.security import decode_access_token
from clinicflow.database import AsyncSessionLocal, get_db
from clinicflow.schemas.appointments import Actor, ActorRole
from clinicflow.services.notification_service import Notifier, PushNotifier

# Security
security = HTTPBearer()

# Roles a bearer token may carry; "system" is reserved for internal jobs
TOKEN_ROLES = (ActorRole.PATIENT, ActorRole.DOCTOR, ActorRole.ADMIN)


def _credentials_error(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> Actor:
    """
    Extract the caller's identity and role from the JWT.

    Args:
        credentials: Bearer token credentials

    Returns:
        Actor with the patient, doctor or admin id

    Raises:
        HTTPException: If the token is invalid, expired or lacks a usable role
    """
    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise _credentials_error()

    subject = payload.get("sub")
    if subject is None or not isinstance(subject, str):
        raise _credentials_error()

    try:
        actor_id = UUID(subject)
    except ValueError:
        raise _credentials_error("Invalid user ID format")

    try:
        role = ActorRole(payload.get("role"))
    except ValueError:
        raise _credentials_error("Invalid role")
    if role not in TOKEN_ROLES:
        raise _credentials_error("Invalid role")

    return Actor(id=actor_id, role=role)


def require_role(*roles: ActorRole):
    """Dependency factory restricting an endpoint to some roles."""

    async def checker(actor: Annotated[Actor, Depends(get_current_actor)]) -> Actor:
        if actor.role not in roles and actor.role is not ActorRole.ADMIN:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires role: {', '.join(role.value for role in roles)}",
            )
        return actor

    return checker


def get_notifier() -> Notifier:
    """Notifier used after each committed transition; overridden in tests."""
    return PushNotifier(AsyncSessionLocal)


def get_cache() -> PricingCache:
    """Redis-backed cache for pricing lookups."""
    return PricingCache(redis_connection())


# Type aliases for dependency injection
DatabaseSession = Annotated[AsyncSession, Depends(get_db)]
CurrentActor = Annotated[Actor, Depends(get_current_actor)]
PatientActor = Annotated[Actor, Depends(require_role(ActorRole.PATIENT))]
DoctorActor = Annotated[Actor, Depends(require_role(ActorRole.DOCTOR))]
AppNotifier = Annotated[Notifier, Depends(get_notifier)]
Cache = Annotated[PricingCache, Depends(get_cache)]
