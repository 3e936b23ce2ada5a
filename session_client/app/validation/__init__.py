"""
Token validation package: structural JWT checks and expiry windows.
"""

from .token_validator import TokenValidator

__all__ = ["TokenValidator"]
