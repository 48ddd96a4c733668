"""
FastAPI dependencies for authentication, authorization and the collaborators
attached to the application at startup.
"""

from typing import Callable, Optional
from uuid import UUID

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from ..cache import RedisCache
from ..database import get_db
from ..models.user import Actor, User, UserRole
from ..services.payment_gateway import PaymentGateway
from ..services.user_service import UserService
from ..utils.auth import verify_token
from ..utils.exceptions import AuthenticationError, AuthorizationError


# HTTP Bearer token scheme; missing credentials are reported through our envelope
security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> User:
    """
    Get the current authenticated user from JWT token.

    Raises:
        AuthenticationError: If the token is missing or invalid, or the user is unknown or inactive
    """
    if credentials is None:
        raise AuthenticationError("Authentication required")

    token_data = verify_token(credentials.credentials)
    if token_data is None or token_data.user_id is None:
        raise AuthenticationError("Could not validate credentials")

    try:
        user_id = UUID(token_data.user_id)
    except ValueError as e:
        raise AuthenticationError("Could not validate credentials") from e

    user = await UserService(db).get_user_by_id(user_id)
    if user is None:
        raise AuthenticationError("Could not validate credentials")
    if not user.is_active:
        raise AuthenticationError("Inactive user")

    return user


async def get_current_actor(current_user: User = Depends(get_current_user)) -> Actor:
    """The authenticated principal handed to services."""
    return Actor.from_user(current_user)


def require_roles(*roles: UserRole) -> Callable:
    """
    Dependency factory restricting a route to the given roles.

    Usage:
        actor: Actor = Depends(require_roles(UserRole.GUIDE, UserRole.ADMIN))
    """

    async def dependency(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role not in roles:
            raise AuthorizationError(
                "Not enough permissions",
                required_permission=" or ".join(role.value for role in roles)
            )
        return actor

    return dependency


def require_admin() -> Callable:
    return require_roles(UserRole.ADMIN)


def get_gateway(request: Request) -> PaymentGateway:
    """Payment gateway constructed at startup."""
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise RuntimeError("Payment gateway is not attached to the application")
    return gateway


def get_cache(request: Request) -> Optional[RedisCache]:
    """Read-model cache, or None when the application runs without Redis."""
    return getattr(request.app.state, "cache", None)
