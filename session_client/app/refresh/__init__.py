"""
Refresh package: single-flight coordinator and the optional cross-process lock.
"""

from .coordinator import RefreshCoordinator
from .locks import RedisRefreshLock

__all__ = ["RefreshCoordinator", "RedisRefreshLock"]
