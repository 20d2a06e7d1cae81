"""
Two-Factor Authentication Module

One-time codes by SMS or voice call, with hashed storage, a 10-minute
validity window, single use, a 5-attempt limit and a per-user send limit.
"""

from .router import router

__all__ = ["router"]
