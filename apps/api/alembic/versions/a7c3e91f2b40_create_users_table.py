"""create users table

Revision ID: a7c3e91f2b40
Revises:
Create Date: 2026-09-28 10:00:00.000000

This migration:
1. Creates the user_role and two_factor_method enum types
2. Creates the users table, including the two-factor columns
   (destination, method, hashed challenge, expiry, failed attempt counter)
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "a7c3e91f2b40"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

USER_ROLES = (
    "super_admin",
    "school_admin",
    "principal",
    "office_staff",
    "teacher",
    "parent",
)


def upgrade() -> None:
    """Create the users table."""
    user_role_enum = postgresql.ENUM(*USER_ROLES, name="user_role", create_type=False)
    user_role_enum.create(op.get_bind(), checkfirst=True)

    two_factor_method_enum = postgresql.ENUM(
        "sms", "phone_call", name="two_factor_method", create_type=False
    )
    two_factor_method_enum.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "users",
        # Primary key and timestamps (from BaseModel)
        sa.Column("id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        # Authentication
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=20), nullable=True),
        sa.Column("password_hash", sa.Text(), nullable=False),
        # Profile
        sa.Column("first_name", sa.String(length=100), nullable=False),
        sa.Column("last_name", sa.String(length=100), nullable=False),
        sa.Column("role", user_role_enum, nullable=False, server_default="teacher"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        # Two-factor authentication
        sa.Column(
            "is_two_factor_enabled", sa.Boolean(), nullable=False, server_default="false"
        ),
        sa.Column("two_factor_phone", sa.String(length=20), nullable=True),
        sa.Column("two_factor_method", two_factor_method_enum, nullable=True),
        sa.Column("two_factor_code_hash", sa.String(length=64), nullable=True),
        sa.Column("two_factor_code_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "two_factor_failed_attempts", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)


def downgrade() -> None:
    """Drop the users table and its enum types."""
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
    op.execute("DROP TYPE IF EXISTS two_factor_method")
    op.execute("DROP TYPE IF EXISTS user_role")
