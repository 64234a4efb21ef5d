from typing import Annotated
import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.core.security import verify_access_token
from app.core.permissions import Actor, ActorRole


logger = logging.getLogger(__name__)

# HTTP Bearer security scheme
security = HTTPBearer()


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> Actor:
    """
    Dependency to get the current authenticated actor.
    Validates the JWT token and builds the actor from its ``sub`` and ``role`` claims.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    claims = verify_access_token(credentials.credentials)
    if claims is None:
        logger.warning("Token verification failed - invalid or expired token")
        raise credentials_exception

    try:
        role = ActorRole(claims.get("role"))
    except ValueError:
        logger.warning(f"Unknown role in token for actor {claims['sub']}: {claims.get('role')!r}")
        raise credentials_exception

    return Actor(actor_id=str(claims["sub"]), role=role, name=claims.get("name"))


async def require_staff(
    actor: Annotated[Actor, Depends(get_current_actor)],
) -> Actor:
    """Dependency that only lets staff roles through."""
    if not actor.is_staff:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Permission denied. Staff role required"
        )
    return actor


# Type aliases for cleaner endpoint signatures
CurrentActor = Annotated[Actor, Depends(get_current_actor)]
StaffActor = Annotated[Actor, Depends(require_staff)]
DB = Annotated[AsyncSession, Depends(get_db)]
