"""Authentication context helpers."""

from dataclasses import dataclass
from typing import Any

import structlog

logger = structlog.get_logger()


@dataclass
class AuthContext:
    """Authentication context extracted from API Gateway event.

    Identifies the staff member performing an action (created_by,
    contacted_by, registered_by).
    """

    user_id: str
    email: str | None = None
    is_admin: bool = False


def get_auth_context(event: dict[str, Any]) -> AuthContext:
    """Extract authentication context from API Gateway event.

    Args:
        event: API Gateway event dict.

    Returns:
        AuthContext with user information.

    Raises:
        UnauthorizedError: If no user can be identified.
    """
    from congrega.utils.exceptions import UnauthorizedError

    request_context = event.get("requestContext", {}) or {}
    authorizer = request_context.get("authorizer", {}) or {}

    # Lambda authorizer payload v2 nests the context
    context = authorizer
    if "lambda" in authorizer:
        context = authorizer["lambda"]

    user_id = context.get("userId") or context.get("user_id") or context.get("sub")

    if not user_id:
        logger.warning("No user ID in auth context", authorizer=authorizer)
        raise UnauthorizedError("No user ID in authentication context")

    is_admin = context.get("isAdmin", False) or context.get("is_admin", False)
    if isinstance(is_admin, str):
        is_admin = is_admin.lower() == "true"

    return AuthContext(
        user_id=user_id,
        email=context.get("email"),
        is_admin=is_admin,
    )


def require_admin(auth: AuthContext, action: str) -> None:
    """Ensure the user is an administrator.

    Raises:
        ForbiddenError: If the user is not an administrator.
    """
    from congrega.utils.exceptions import ForbiddenError

    if not auth.is_admin:
        logger.warning("Admin action denied", user_id=auth.user_id, action=action)
        raise ForbiddenError(action, auth.user_id)
