from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Mapping

PERCENT_TOLERANCE = 1e-6


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class AssetCategory(str, Enum):
    STABLECOIN = "stablecoin"
    BASE_ASSET = "base_asset"
    OTHER_TOKEN = "other_token"
    STOCK = "stock"

    @classmethod
    def parse(cls, value: Any) -> "AssetCategory":
        if isinstance(value, cls):
            return value
        normalized = str(value or "").strip().lower()
        aliases = {
            "stablecoins": cls.STABLECOIN,
            "stable": cls.STABLECOIN,
            "sol": cls.BASE_ASSET,
            "base": cls.BASE_ASSET,
            "othertokens": cls.OTHER_TOKEN,
            "other_tokens": cls.OTHER_TOKEN,
            "other": cls.OTHER_TOKEN,
            "stocks": cls.STOCK,
        }
        if normalized in aliases:
            return aliases[normalized]
        try:
            return cls(normalized)
        except ValueError as error:
            raise ValueError(f"Unknown asset category: {value!r}") from error


CANONICAL_CATEGORY_ORDER: tuple[AssetCategory, ...] = (
    AssetCategory.STABLECOIN,
    AssetCategory.BASE_ASSET,
    AssetCategory.OTHER_TOKEN,
    AssetCategory.STOCK,
)


def canonical_categories(categories: Iterable[AssetCategory]) -> list[AssetCategory]:
    present = set(categories)
    return [category for category in CANONICAL_CATEGORY_ORDER if category in present]


@dataclass(slots=True, frozen=True)
class Holding:
    asset_id: str
    symbol: str
    category: AssetCategory
    quantity: float
    unit_price_usd: float
    value_usd: float

    def __post_init__(self) -> None:
        if not self.asset_id:
            raise ValueError("Holding asset_id is required.")
        if self.quantity < 0:
            raise ValueError(f"Holding quantity must be non-negative: {self.symbol}={self.quantity}")
        if self.unit_price_usd < 0:
            raise ValueError(f"Holding unit price must be non-negative: {self.symbol}={self.unit_price_usd}")
        expected = self.quantity * self.unit_price_usd
        if not math.isclose(self.value_usd, expected, rel_tol=1e-9, abs_tol=1e-6):
            raise ValueError(
                f"Holding value mismatch for {self.symbol}: "
                f"value_usd={self.value_usd} quantity*unit_price={expected}"
            )

    @classmethod
    def from_quantity(
        cls,
        *,
        asset_id: str,
        symbol: str,
        category: AssetCategory | str,
        quantity: float,
        unit_price_usd: float,
    ) -> "Holding":
        return cls(
            asset_id=asset_id,
            symbol=symbol,
            category=AssetCategory.parse(category),
            quantity=float(quantity),
            unit_price_usd=float(unit_price_usd),
            value_usd=float(quantity) * float(unit_price_usd),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class HoldingSnapshot:
    holdings: tuple[Holding, ...]
    total_value_usd: float
    captured_at: str

    def __post_init__(self) -> None:
        expected = math.fsum(holding.value_usd for holding in self.holdings)
        if not math.isclose(self.total_value_usd, expected, rel_tol=1e-9, abs_tol=1e-6):
            raise ValueError(
                f"Snapshot total mismatch: total_value_usd={self.total_value_usd} sum={expected}"
            )

    @classmethod
    def build(
        cls,
        holdings: Iterable[Holding],
        *,
        captured_at: str | None = None,
    ) -> "HoldingSnapshot":
        items = tuple(holdings)
        return cls(
            holdings=items,
            total_value_usd=math.fsum(holding.value_usd for holding in items),
            captured_at=captured_at or now_iso(),
        )

    def value_by_category(self) -> dict[AssetCategory, float]:
        totals: dict[AssetCategory, float] = {}
        for holding in self.holdings:
            totals[holding.category] = totals.get(holding.category, 0.0) + holding.value_usd
        return totals

    def holdings_in(self, category: AssetCategory) -> list[Holding]:
        return [holding for holding in self.holdings if holding.category == category]

    def find(self, asset_id: str) -> Holding | None:
        for holding in self.holdings:
            if holding.asset_id == asset_id or holding.symbol == asset_id:
                return holding
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "holdings": [holding.to_dict() for holding in self.holdings],
            "total_value_usd": self.total_value_usd,
            "captured_at": self.captured_at,
            "value_by_category": {
                category.value: value for category, value in self.value_by_category().items()
            },
        }


@dataclass(slots=True, frozen=True)
class AllocationTarget:
    name: str
    percentages_by_category: Mapping[AssetCategory, float]

    def __post_init__(self) -> None:
        parsed = {
            AssetCategory.parse(category): float(pct)
            for category, pct in self.percentages_by_category.items()
        }
        negative = [category.value for category, pct in parsed.items() if pct < 0]
        if negative:
            raise ValueError(f"Allocation target {self.name} has negative percentages: {negative}")
        total = math.fsum(parsed.values())
        if abs(total - 100.0) > PERCENT_TOLERANCE:
            raise ValueError(f"Allocation target {self.name} must sum to 100, got {total}")
        ordered = {category: parsed[category] for category in canonical_categories(parsed)}
        object.__setattr__(self, "percentages_by_category", ordered)

    @classmethod
    def normalized(cls, name: str, raw_percentages: Mapping[AssetCategory | str, float]) -> "AllocationTarget":
        clamped = {
            AssetCategory.parse(category): max(0.0, float(pct))
            for category, pct in raw_percentages.items()
        }
        total = math.fsum(clamped.values())
        if total <= 0:
            raise ValueError(f"Allocation target {name} has no positive percentages to normalize.")
        scaled = {category: pct / total * 100.0 for category, pct in clamped.items()}
        return cls(name=name, percentages_by_category=scaled)

    def pct(self, category: AssetCategory) -> float:
        return self.percentages_by_category.get(category, 0.0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "percentages_by_category": {
                category.value: pct for category, pct in self.percentages_by_category.items()
            },
        }


@dataclass(slots=True, frozen=True)
class Drift:
    category: AssetCategory
    current_pct: float
    target_pct: float
    deviation_pct: float

    @property
    def action(self) -> str:
        if self.deviation_pct > 0:
            return "sell"
        if self.deviation_pct < 0:
            return "buy"
        return "hold"

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["action"] = self.action
        return payload


@dataclass(slots=True, frozen=True)
class PlannerConfig:
    min_trade_size_usd: float = 10.0
    rebalance_threshold_pct: float = 5.0
    include_stocks: bool = False
    materiality_floor_usd: float = 100.0
    estimated_fee_per_trade_usd: float = 0.5


@dataclass(slots=True, frozen=True)
class PlannedTrade:
    from_category: AssetCategory
    to_category: AssetCategory
    from_asset: str
    to_asset: str
    amount_usd: float
    priority: int
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class TradePlan:
    target: AllocationTarget
    trades: tuple[PlannedTrade, ...]
    warnings: tuple[str, ...] = ()
    estimated_fees_usd: float = 0.0
    drifts: tuple[Drift, ...] = field(default_factory=tuple)

    @property
    def total_trade_value_usd(self) -> float:
        return math.fsum(trade.amount_usd for trade in self.trades)

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target.to_dict(),
            "trades": [trade.to_dict() for trade in self.trades],
            "warnings": list(self.warnings),
            "total_trade_value_usd": self.total_trade_value_usd,
            "estimated_fees_usd": self.estimated_fees_usd,
            "drifts": [drift.to_dict() for drift in self.drifts],
        }
