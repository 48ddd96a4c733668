"""
User model for authentication and marketplace roles.
"""

import enum
import uuid
from dataclasses import dataclass
from typing import List, TYPE_CHECKING

from sqlalchemy import Boolean, Enum, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, enum_values
from ..utils.auth import get_password_hash, verify_password

if TYPE_CHECKING:
    from .listing import Listing


class UserRole(enum.Enum):
    """Marketplace roles."""
    TOURIST = "tourist"
    GUIDE = "guide"
    ADMIN = "admin"


@dataclass(frozen=True)
class Actor:
    """Authenticated principal, detached from any session.

    Services receive an ``Actor`` rather than a ``User`` row so a rollback
    inside a service never expires the caller's identity.
    """
    id: uuid.UUID
    role: UserRole

    @classmethod
    def from_user(cls, user: "User") -> "Actor":
        return cls(id=user.id, role=user.role)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class User(Base):
    """User model for authentication and profile management."""

    __tablename__ = "users"

    # User identification and authentication
    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True
    )
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)

    # User profile information
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)

    # User permissions
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole, name="user_role", values_callable=enum_values),
        default=UserRole.TOURIST,
        nullable=False,
        index=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Relationships
    listings: Mapped[List["Listing"]] = relationship(
        "Listing",
        back_populates="guide",
        lazy="noload"
    )

    # Constraints
    __table_args__ = (
        UniqueConstraint("email", name="uq_users_email"),
    )

    @property
    def full_name(self) -> str:
        """Get the user's full name."""
        return f"{self.first_name} {self.last_name}"

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def set_password(self, password: str) -> None:
        """Hash and set the user's password."""
        self.password_hash = get_password_hash(password)

    def verify_password(self, password: str) -> bool:
        """Verify the user's password against the stored hash."""
        return verify_password(password, self.password_hash)

    def __repr__(self) -> str:
        """String representation of the user."""
        return f"<User(id={self.id}, email='{self.email}', role={self.role.value})>"
