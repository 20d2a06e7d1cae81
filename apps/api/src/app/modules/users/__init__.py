"""
Users module - User records and two-factor challenge state.
"""

from app.modules.users.models import TwoFactorMethod, User, UserRole
from app.modules.users.repository import UserRepository

__all__ = ["TwoFactorMethod", "User", "UserRole", "UserRepository"]
