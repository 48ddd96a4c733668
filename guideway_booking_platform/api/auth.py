"""
Authentication API endpoints.
"""

from datetime import timedelta
from typing import Any

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..database import get_db
from ..models.user import User
from ..schemas.auth import TokenResponse, UserLogin, UserProfile, UserRegistration
from ..schemas.common import ApiResponse, ok
from ..services.user_service import UserService
from ..utils.auth import create_access_token
from ..utils.dependencies import get_current_user
from ..utils.exceptions import AuthenticationError
from ..utils.logging_config import log_security_event


router = APIRouter(prefix="/auth", tags=["authentication"])


def _token_for(user: User) -> TokenResponse:
    settings = get_settings()
    access_token = create_access_token(
        data={"sub": str(user.id), "email": user.email, "role": user.role.value},
        expires_delta=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    return TokenResponse(
        access_token=access_token,
        token_type="bearer",
        expires_in=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=UserProfile.model_validate(user)
    )


@router.post("/register", response_model=ApiResponse[TokenResponse], status_code=status.HTTP_201_CREATED)
async def register_user(
    user_data: UserRegistration,
    db: AsyncSession = Depends(get_db)
) -> Any:
    """Register a tourist or guide and return an access token."""
    user = await UserService(db).create_user(user_data)
    return ok(_token_for(user), "Registration successful")


@router.post("/login", response_model=ApiResponse[TokenResponse])
async def login_user(
    login_data: UserLogin,
    db: AsyncSession = Depends(get_db)
) -> Any:
    """
    Authenticate user and return access token.

    Raises:
        AuthenticationError: If credentials are invalid or the account is deactivated
    """
    user = await UserService(db).authenticate_user(login_data.email, login_data.password)
    if not user:
        log_security_event("login_failed", {"email": login_data.email})
        raise AuthenticationError("Incorrect email or password")

    return ok(_token_for(user), "Login successful")


@router.get("/me", response_model=ApiResponse[UserProfile])
async def get_current_user_profile(
    current_user: User = Depends(get_current_user)
) -> Any:
    """Get current user's profile."""
    return ok(UserProfile.model_validate(current_user))
