"""
Housekeeping package: periodic cleanup and pre-emptive refresh.
"""

from .housekeeper import Housekeeper

__all__ = ["Housekeeper"]
