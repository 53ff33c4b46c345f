from .drift import DriftAnalyzer, PortfolioAnalysis, compute_drifts, health_score, needs_rebalancing
from .planner import TradePlanGenerator
from .strategies import StrategyDefinition, UserProfile, get_strategy, target_for_profile
from .tokens import DEFAULT_REPRESENTATIVES, KNOWN_TOKENS, TokenInfo, TokenRegistry
from .types import (
    CANONICAL_CATEGORY_ORDER,
    AllocationTarget,
    AssetCategory,
    Drift,
    Holding,
    HoldingSnapshot,
    PlannedTrade,
    PlannerConfig,
    TradePlan,
)

__all__ = [
    "AllocationTarget",
    "AssetCategory",
    "CANONICAL_CATEGORY_ORDER",
    "DEFAULT_REPRESENTATIVES",
    "Drift",
    "DriftAnalyzer",
    "Holding",
    "HoldingSnapshot",
    "KNOWN_TOKENS",
    "PlannedTrade",
    "PlannerConfig",
    "PortfolioAnalysis",
    "StrategyDefinition",
    "TokenInfo",
    "TokenRegistry",
    "TradePlan",
    "TradePlanGenerator",
    "UserProfile",
    "compute_drifts",
    "get_strategy",
    "health_score",
    "needs_rebalancing",
    "target_for_profile",
]
