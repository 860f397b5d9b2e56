"""Auth package: bearer JWT dependencies."""

from tokenshare.auth.dependencies import create_access_token, get_current_user, require_role

__all__ = [
    "create_access_token",
    "get_current_user",
    "require_role",
]
