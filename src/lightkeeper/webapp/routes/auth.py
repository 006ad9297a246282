"""Authentication API routes."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, EmailStr, Field

from ..auth import AuthService, AuthenticationError
from ..middleware import get_auth_service, require_auth
from ...models import User, UserRole, USER_NAME_MAX_LENGTH


logger = logging.getLogger(__name__)


# Request/Response models
class RegisterRequest(BaseModel):
    """User registration request."""
    email: EmailStr
    name: str = Field(..., min_length=1, max_length=USER_NAME_MAX_LENGTH)
    password: str = Field(..., min_length=8, max_length=128)
    role: UserRole = UserRole.MEMBER


class LoginRequest(BaseModel):
    """User login request."""
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=128)


class UserResponse(BaseModel):
    """User information response."""
    id: int
    email: str
    name: str
    role: str
    created_at: str
    is_active: bool


class TokenResponse(BaseModel):
    """Token response."""
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    user: UserResponse


def user_response(user: User) -> UserResponse:
    return UserResponse(**user.to_dict())


def token_response(auth_service: AuthService, user: User) -> TokenResponse:
    return TokenResponse(
        access_token=auth_service.create_access_token(user),
        expires_in=auth_service.access_token_expire_minutes * 60,
        user=user_response(user),
    )


# Router
router = APIRouter(prefix="/api/auth", tags=["authentication"])


@router.post("/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
async def register(body: RegisterRequest,
                   auth_service: AuthService = Depends(get_auth_service)):
    """Register a new user and return an access token.

    Raises:
        HTTPException: 400 if the email is taken or the input is invalid
    """
    try:
        user = await auth_service.register_user(
            email=body.email,
            name=body.name,
            password=body.password,
            role=body.role,
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )

    logger.info(f"User registered: {user.email}")
    return token_response(auth_service, user)


@router.post("/login", response_model=TokenResponse)
async def login(body: LoginRequest,
                auth_service: AuthService = Depends(get_auth_service)):
    """Authenticate user and return an access token."""
    try:
        user = await auth_service.authenticate_user(email=body.email, password=body.password)
    except AuthenticationError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"}
        )

    return token_response(auth_service, user)


@router.get("/me", response_model=UserResponse)
async def get_current_user_info(user: User = Depends(require_auth)):
    """Get current user information."""
    return user_response(user)
