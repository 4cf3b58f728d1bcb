from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field

from badminton_signup.core.config import get_settings
from badminton_signup.core.security import SESSION_MAX_AGE, create_session_cookie
from badminton_signup.deps import SESSION_COOKIE_NAME, get_current_user
from badminton_signup.models.user import User
from badminton_signup.services.container import Services, get_services
from badminton_signup.services.users import session_payload_for_user

router = APIRouter()


class LoginRequest(BaseModel):
    display_name: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=1, max_length=72)


class PasswordChangeRequest(BaseModel):
    password: str = Field(min_length=4, max_length=72)


def user_out(user: User) -> dict:
    return {
        "id": user.id,
        "display_name": user.display_name,
        "role": user.role.value,
        "balance": user.balance,
        "active": user.active,
    }


@router.post("/login")
async def auth_login(body: LoginRequest, response: Response, services: Services = Depends(get_services)):
    """Check name and password; set httpOnly session cookie."""
    user = await services.users.authenticate(body.display_name, body.password)
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=create_session_cookie(session_payload_for_user(user)),
        max_age=SESSION_MAX_AGE,
        httponly=True,
        secure=get_settings().cookie_secure,
        samesite="lax",
        path="/",
    )
    return {"user": user_out(user)}


@router.post("/logout")
async def auth_logout(response: Response):
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return {"ok": True}


@router.get("/me")
async def auth_me(user: User = Depends(get_current_user)):
    """Return current user. Requires session cookie."""
    return user_out(user)


@router.post("/password")
async def auth_change_password(
    body: PasswordChangeRequest,
    response: Response,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Change own password; other sessions are signed out, this one gets a fresh cookie."""
    updated = await services.users.set_password(user.id, body.password)
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=create_session_cookie(session_payload_for_user(updated)),
        max_age=SESSION_MAX_AGE,
        httponly=True,
        secure=get_settings().cookie_secure,
        samesite="lax",
        path="/",
    )
    return {"ok": True}
