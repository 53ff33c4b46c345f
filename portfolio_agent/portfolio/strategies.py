from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from .types import AllocationTarget, AssetCategory

STABLE = AssetCategory.STABLECOIN
BASE = AssetCategory.BASE_ASSET
OTHER = AssetCategory.OTHER_TOKEN
STOCK = AssetCategory.STOCK

RISK_LEVELS = ("conservative", "moderate", "aggressive")
TIME_HORIZONS = ("short", "medium", "long")


@dataclass(slots=True, frozen=True)
class StrategyDefinition:
    name: str
    risk_level: str
    description: str
    allocations: dict[AssetCategory, float]

    def target(self) -> AllocationTarget:
        return AllocationTarget(name=self.risk_level, percentages_by_category=dict(self.allocations))


CONSERVATIVE = StrategyDefinition(
    name="Conservative",
    risk_level="conservative",
    description="Capital preservation with stable yield and limited volatility exposure",
    allocations={STABLE: 50.0, BASE: 15.0, OTHER: 5.0, STOCK: 30.0},
)
MODERATE = StrategyDefinition(
    name="Moderate",
    risk_level="moderate",
    description="Balanced mix of growth and stability for medium-term holders",
    allocations={STABLE: 25.0, BASE: 30.0, OTHER: 15.0, STOCK: 30.0},
)
AGGRESSIVE = StrategyDefinition(
    name="Aggressive",
    risk_level="aggressive",
    description="Growth oriented with high exposure to volatile assets",
    allocations={STABLE: 10.0, BASE: 40.0, OTHER: 30.0, STOCK: 20.0},
)

STRATEGIES: dict[str, StrategyDefinition] = {
    strategy.risk_level: strategy for strategy in (CONSERVATIVE, MODERATE, AGGRESSIVE)
}


def get_strategy(risk_level: str) -> StrategyDefinition:
    return STRATEGIES.get((risk_level or "").strip().lower(), MODERATE)


@dataclass(slots=True, frozen=True)
class UserProfile:
    risk_tolerance: str = "moderate"
    time_horizon: str = "medium"
    investment_goals: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if self.risk_tolerance not in RISK_LEVELS:
            raise ValueError(f"Unknown risk tolerance: {self.risk_tolerance}")
        if self.time_horizon not in TIME_HORIZONS:
            raise ValueError(f"Unknown time horizon: {self.time_horizon}")

    @classmethod
    def parse(cls, risk_tolerance: str, time_horizon: str = "medium", goals: Iterable[str] = ()) -> "UserProfile":
        return cls(
            risk_tolerance=(risk_tolerance or "moderate").strip().lower(),
            time_horizon=(time_horizon or "medium").strip().lower(),
            investment_goals=tuple(
                goal.strip().lower() for goal in goals if goal and goal.strip()
            ),
        )


def target_for_profile(profile: UserProfile) -> AllocationTarget:
    strategy = get_strategy(profile.risk_tolerance)
    adjusted = dict(strategy.allocations)

    if profile.time_horizon == "short":
        adjusted[STABLE] += 10
        adjusted[BASE] -= 5
        adjusted[OTHER] -= 5
    elif profile.time_horizon == "long":
        adjusted[STABLE] -= 5
        adjusted[BASE] += 5

    if "income" in profile.investment_goals:
        adjusted[STABLE] += 5
        adjusted[OTHER] -= 5

    if "speculation" in profile.investment_goals:
        adjusted[OTHER] += 10
        adjusted[STABLE] -= 10

    return AllocationTarget.normalized(strategy.risk_level, adjusted)
