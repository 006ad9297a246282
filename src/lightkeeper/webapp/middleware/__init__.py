"""Middleware package."""

from .auth_middleware import (
    get_auth_service,
    get_context,
    get_current_user,
    require_auth,
)

__all__ = [
    'get_auth_service',
    'get_context',
    'get_current_user',
    'require_auth',
]
