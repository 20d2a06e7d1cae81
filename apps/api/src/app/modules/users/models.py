"""
User Models

Database models for portal users. Only the identity and two-factor columns
the telephony subsystem reads and writes are modelled here.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from app.modules.shared import BaseModel


class UserRole(str, Enum):
    """User roles in the system."""

    SUPER_ADMIN = "super_admin"
    SCHOOL_ADMIN = "school_admin"
    PRINCIPAL = "principal"
    OFFICE_STAFF = "office_staff"
    TEACHER = "teacher"
    PARENT = "parent"


class TwoFactorMethod(str, Enum):
    """How one-time codes are delivered."""

    SMS = "sms"
    PHONE_CALL = "phone_call"


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class User(BaseModel):
    """
    User model for authentication and authorization.

    Two-factor state lives on the user row so every API instance sees the
    same challenge:
    - two_factor_code_hash / two_factor_code_expires_at: the outstanding
      challenge (NULL when none). Codes are stored SHA-256 hashed.
    - two_factor_failed_attempts: wrong guesses against the current
      challenge; reset whenever a new code is issued.
    - two_factor_phone / two_factor_method: where codes are delivered.
      Set during setup, before 2FA is enabled.
    """

    __tablename__ = "users"

    # Authentication fields
    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        index=True,
        nullable=False,
    )
    phone: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
    )
    password_hash: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )

    # Profile fields
    first_name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    last_name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    # Role and permissions
    role: Mapped[UserRole] = mapped_column(
        SAEnum(UserRole, name="user_role", values_callable=_enum_values),
        nullable=False,
        default=UserRole.TEACHER,
    )

    # Account status
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    # Two-factor authentication
    is_two_factor_enabled: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    two_factor_phone: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
    )
    two_factor_method: Mapped[TwoFactorMethod | None] = mapped_column(
        SAEnum(TwoFactorMethod, name="two_factor_method", values_callable=_enum_values),
        nullable=True,
    )
    two_factor_code_hash: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )
    two_factor_code_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    two_factor_failed_attempts: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email}, role={self.role.value})>"

    @property
    def full_name(self) -> str:
        """Return user's full name."""
        return f"{self.first_name} {self.last_name}"
