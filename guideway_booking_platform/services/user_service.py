"""
User service for registration and credential checks.
"""

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError

from ..models.user import User, UserRole
from ..schemas.auth import UserRegistration
from ..utils.auth import get_password_hash
from ..utils.exceptions import ConflictError, InvalidInputError

logger = logging.getLogger(__name__)


class UserService:
    """Service class for user operations."""

    def __init__(self, db: AsyncSession):
        """
        Initialize the user service.

        Args:
            db: Database session
        """
        self.db = db

    async def create_user(self, user_data: UserRegistration) -> User:
        """
        Register a tourist or guide account.

        Raises:
            InvalidInputError: If an admin role is requested
            ConflictError: If the email is already registered
        """
        if user_data.role == UserRole.ADMIN:
            raise InvalidInputError("Admin accounts cannot be self-registered", field="role")

        existing_user = await self.get_user_by_email(user_data.email)
        if existing_user:
            raise ConflictError("Email already registered")

        user = User(
            email=user_data.email.lower(),
            first_name=user_data.first_name,
            last_name=user_data.last_name,
            role=user_data.role,
            password_hash=get_password_hash(user_data.password)
        )

        try:
            self.db.add(user)
            await self.db.commit()
            await self.db.refresh(user)
        except IntegrityError as e:
            await self.db.rollback()
            raise ConflictError("Email already registered") from e

        logger.info(f"Registered {user.role.value} {user.id}")
        return user

    async def get_user_by_id(self, user_id: UUID) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(User.id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_user_by_email(self, email: str) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(User.email == email.lower())
        )
        return result.scalar_one_or_none()

    async def authenticate_user(self, email: str, password: str) -> Optional[User]:
        """
        Authenticate a user with email and password.

        Returns:
            The user if authentication successful, None otherwise
        """
        user = await self.get_user_by_email(email)
        if not user or not user.is_active:
            return None

        if not user.verify_password(password):
            return None

        return user
