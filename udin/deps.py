"""Shared FastAPI dependencies."""

from beanie import PydanticObjectId
from fastapi import Request

from udin.core.exceptions import ForbiddenError, UnauthorizedError
from udin.core.logging import bind_user_id
from udin.core.security import load_access_token
from udin.models.user import User


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_current_user(request: Request) -> User:
    """Dependency: resolve the Bearer token to an active User."""
    token = _bearer_token(request)
    if not token:
        raise UnauthorizedError("Not authenticated")
    payload = load_access_token(token)
    if not payload:
        raise UnauthorizedError("Invalid or expired token")
    user_id = payload.get("user_id")
    if not user_id or not PydanticObjectId.is_valid(user_id):
        raise UnauthorizedError("Invalid token")
    user = await User.get(PydanticObjectId(user_id))
    if not user:
        raise UnauthorizedError("User not found")
    if not user.is_active:
        raise UnauthorizedError("Account is deactivated")
    if payload.get("session_version") != user.session_version:
        raise UnauthorizedError("Session invalidated")
    bind_user_id(str(user.id))
    return user


async def require_admin(request: Request) -> User:
    """Dependency: require current user to have role admin."""
    user = await get_current_user(request)
    if getattr(user, "role", "user") != "admin":
        raise ForbiddenError("Admin only")
    return user
