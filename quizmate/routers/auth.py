import re
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import BaseModel
from sqlmodel import Session

from ..config import SESSION_COOKIE_NAME, SESSION_EXPIRE_DAYS
from ..database import get_session
from ..dependencies import get_controllers, require_user
from ..controller.reconciler import ControllerRegistry
from ..errors import AuthenticationError, ValidationError
from ..models import User
from ..services.auth import authenticate_user, create_session, create_user, delete_session, get_user_by_email

router = APIRouter(prefix="/auth")

EMAIL_PATTERN = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'


class RegisterRequest(BaseModel):
    """Schema for registering a new user."""
    email: str
    password: str
    full_name: str = ""


class LoginRequest(BaseModel):
    email: str
    password: str


class UserResponse(BaseModel):
    id: int
    email: str
    full_name: str
    avatar_url: Optional[str] = None


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        full_name=user.full_name,
        avatar_url=user.avatar_url
    )


def _set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        max_age=SESSION_EXPIRE_DAYS * 24 * 60 * 60,
        samesite="lax"
    )


@router.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def register(
    body: RegisterRequest,
    response: Response,
    db: Session = Depends(get_session)
):
    """Create an account and sign it in."""
    email = body.email.strip().lower()

    if not re.match(EMAIL_PATTERN, email):
        raise ValidationError("Invalid email format")

    # Validate password length
    if len(body.password) < 6:
        raise ValidationError("Password must be at least 6 characters")

    if len(body.password) > 72:
        raise ValidationError("Password must be 72 characters or less")

    if get_user_by_email(db, email):
        raise ValidationError("Email already exists")

    user = create_user(db, email, body.password, body.full_name.strip())
    _set_session_cookie(response, create_session(db, user.id))
    return _user_response(user)


@router.post("/login", response_model=UserResponse)
async def login(
    body: LoginRequest,
    response: Response,
    db: Session = Depends(get_session)
):
    user = authenticate_user(db, body.email.strip().lower(), body.password)

    if not user:
        raise AuthenticationError("Incorrect email or password")

    _set_session_cookie(response, create_session(db, user.id))
    return _user_response(user)


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    db: Session = Depends(get_session),
    controllers: ControllerRegistry = Depends(get_controllers)
):
    """End the session and drop the user's step controller."""
    session_token = request.cookies.get(SESSION_COOKIE_NAME)
    if session_token:
        user_id = delete_session(db, session_token)
        if user_id is not None:
            controllers.remove(user_id)

    response.delete_cookie(key=SESSION_COOKIE_NAME)
    return {"status": "success"}


@router.get("/me", response_model=UserResponse)
async def me(current_user: User = Depends(require_user)):
    return _user_response(current_user)
