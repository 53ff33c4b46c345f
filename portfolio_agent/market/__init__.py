from .cache import CacheEntry, TtlCache
from .snapshot import SnapshotBuilder, holdings_from_records
from .sources import (
    BalanceSource,
    CachedPriceSource,
    JupiterPriceSource,
    PriceSource,
    SolanaBalanceSource,
    StaticPriceSource,
)

__all__ = [
    "BalanceSource",
    "CacheEntry",
    "CachedPriceSource",
    "JupiterPriceSource",
    "PriceSource",
    "SnapshotBuilder",
    "SolanaBalanceSource",
    "StaticPriceSource",
    "TtlCache",
    "holdings_from_records",
]
