"""FastAPI auth dependencies: get_current_user, require_role.

User registration and sign-in live in a separate identity service; this API
only verifies the HS256 bearer token it issues (claims: ``sub`` = user UUID,
``role`` = admin | investor).
"""

import uuid

import sentry_sdk
import structlog
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from tokenshare.core.config import settings
from tokenshare.models.enums import UserRole
from tokenshare.schemas.auth import CurrentUser

logger = structlog.get_logger()

bearer_scheme = HTTPBearer(auto_error=True)

JWT_ALGORITHM = "HS256"


def create_access_token(user_id: uuid.UUID, role: UserRole) -> str:
    """Issue a token in the identity service's format (used by tooling and tests)."""
    return jwt.encode(
        {"sub": str(user_id), "role": role.value},
        settings.SECRET_KEY,
        algorithm=JWT_ALGORITHM,
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> CurrentUser:
    """Verify the bearer JWT and build the caller's identity."""
    try:
        payload = jwt.decode(credentials.credentials, settings.SECRET_KEY, algorithms=[JWT_ALGORITHM])
        current_user = CurrentUser(user_id=uuid.UUID(payload["sub"]), role=UserRole(payload["role"]))
    except (JWTError, KeyError, ValueError) as e:
        logger.warning("jwt_verification_failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e

    sentry_sdk.set_user({"id": str(current_user.user_id)})
    sentry_sdk.set_tag("user_role", current_user.role.value)
    return current_user


def require_role(allowed_roles: list[UserRole]):
    """
    Dependency factory: checks if current user has one of the allowed roles.

    Usage:
        @router.post("/distribute", dependencies=[Depends(require_role([UserRole.ADMIN]))])
    """

    async def _check_role(
        current_user: CurrentUser = Depends(get_current_user),
    ) -> CurrentUser:
        if current_user.role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{current_user.role.value}' not authorized. Required: {[r.value for r in allowed_roles]}",
            )
        return current_user

    return _check_role
