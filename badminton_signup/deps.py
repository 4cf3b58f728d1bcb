"""Shared FastAPI dependencies."""

from fastapi import Depends, Request

from badminton_signup.core.exceptions import ForbiddenError
from badminton_signup.core.logging import bind_actor
from badminton_signup.models.user import Role, User
from badminton_signup.services.container import Services, get_services

SESSION_COOKIE_NAME = "badminton_session"


async def get_current_user(request: Request, services: Services = Depends(get_services)) -> User:
    """Dependency: verify the session cookie and return the User."""
    user_id = await services.auth.verify(request.cookies.get(SESSION_COOKIE_NAME, ""))
    bind_actor(user_id)
    return await services.users.get(user_id)


async def require_staff(user: User = Depends(get_current_user)) -> User:
    """Dependency: moderators and admins (roster administration)."""
    if not user.is_staff:
        raise ForbiddenError("Moderator or admin only")
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    """Dependency: admins only (balances, users)."""
    if user.role is not Role.ADMIN:
        raise ForbiddenError("Admin only")
    return user
