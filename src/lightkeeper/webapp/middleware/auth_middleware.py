"""Authentication dependencies for FastAPI routes."""

import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request, status

from ..auth import AuthService
from ...context import AppContext
from ...models import User


logger = logging.getLogger(__name__)


def get_context(request: Request) -> AppContext:
    """The AppContext installed by the application lifespan."""
    return request.app.state.context


def get_auth_service(context: AppContext = Depends(get_context)) -> AuthService:
    return context.auth_service


async def get_current_user(request: Request,
                           auth_service: AuthService = Depends(get_auth_service)) -> Optional[User]:
    """Get current authenticated user from the Authorization header.

    Returns:
        User instance or None if not authenticated
    """
    auth_header = request.headers.get("authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    return await auth_service.get_current_user(auth_header[7:])


async def require_auth(user: Optional[User] = Depends(get_current_user)) -> User:
    """Require authentication for a route.

    Raises:
        HTTPException: If not authenticated or the account is disabled
    """
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"}
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is disabled"
        )

    return user
