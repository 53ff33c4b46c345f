from .guards import AccountGuard, InProcessAccountGuard, RebalanceInProgressError, RedisAccountGuard
from .redis_ops import RedisStateStore

__all__ = [
    "AccountGuard",
    "InProcessAccountGuard",
    "RebalanceInProgressError",
    "RedisAccountGuard",
    "RedisStateStore",
]
