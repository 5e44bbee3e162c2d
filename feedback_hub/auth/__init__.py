"""
Authentication for the admin REST surface.
"""

from .middleware import get_admin_token
from .token_blacklist import TokenBlacklist

__all__ = ["TokenBlacklist", "get_admin_token"]
