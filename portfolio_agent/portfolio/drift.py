from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Sequence

from portfolio_agent.common import log_event

from .types import AllocationTarget, Drift, HoldingSnapshot, canonical_categories

DEFAULT_REBALANCE_THRESHOLD_PCT = 5.0
BALANCED_RECOMMENDATION = "Portfolio is well-balanced. No immediate action needed."


def compute_drifts(snapshot: HoldingSnapshot, target: AllocationTarget) -> list[Drift]:
    total = snapshot.total_value_usd
    values = snapshot.value_by_category()
    drifts: list[Drift] = []
    for category in canonical_categories(target.percentages_by_category):
        current_pct = values.get(category, 0.0) / total * 100.0 if total > 0 else 0.0
        target_pct = target.pct(category)
        drifts.append(
            Drift(
                category=category,
                current_pct=current_pct,
                target_pct=target_pct,
                deviation_pct=current_pct - target_pct,
            )
        )
    return drifts


def health_score(drifts: Sequence[Drift]) -> int:
    total_deviation = math.fsum(abs(drift.deviation_pct) for drift in drifts)
    score = max(0.0, 100.0 - total_deviation / 2.0)
    # half-up, so 72.5 scores 73
    return int(math.floor(score + 0.5))


def needs_rebalancing(
    drifts: Sequence[Drift],
    threshold_pct: float = DEFAULT_REBALANCE_THRESHOLD_PCT,
) -> bool:
    return any(abs(drift.deviation_pct) > threshold_pct for drift in drifts)


def recommendations(
    drifts: Sequence[Drift],
    threshold_pct: float = DEFAULT_REBALANCE_THRESHOLD_PCT,
) -> list[str]:
    lines: list[str] = []
    for drift in drifts:
        magnitude = abs(drift.deviation_pct)
        if magnitude <= threshold_pct:
            continue
        if drift.deviation_pct > 0:
            lines.append(
                f"Consider selling {magnitude:.1f}% of {drift.category.value} to reach target allocation"
            )
        else:
            lines.append(
                f"Consider buying {magnitude:.1f}% more {drift.category.value} to reach target allocation"
            )
    if not lines:
        lines.append(BALANCED_RECOMMENDATION)
    return lines


@dataclass(slots=True, frozen=True)
class PortfolioAnalysis:
    snapshot: HoldingSnapshot
    target: AllocationTarget
    drifts: tuple[Drift, ...]
    health_score: int
    rebalance_needed: bool
    recommendations: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "snapshot": self.snapshot.to_dict(),
            "target": self.target.to_dict(),
            "drifts": [drift.to_dict() for drift in self.drifts],
            "health_score": self.health_score,
            "rebalance_needed": self.rebalance_needed,
            "recommendations": list(self.recommendations),
        }


class DriftAnalyzer:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        threshold_pct: float = DEFAULT_REBALANCE_THRESHOLD_PCT,
    ) -> None:
        self._logger = logger
        self._threshold_pct = threshold_pct

    def analyze(self, snapshot: HoldingSnapshot, target: AllocationTarget) -> list[Drift]:
        return compute_drifts(snapshot, target)

    def evaluate(self, snapshot: HoldingSnapshot, target: AllocationTarget) -> PortfolioAnalysis:
        drifts = compute_drifts(snapshot, target)
        analysis = PortfolioAnalysis(
            snapshot=snapshot,
            target=target,
            drifts=tuple(drifts),
            health_score=health_score(drifts),
            rebalance_needed=needs_rebalancing(drifts, self._threshold_pct),
            recommendations=tuple(recommendations(drifts, self._threshold_pct)),
        )
        log_event(
            self._logger,
            level="info",
            event="drift_analyzed",
            message="Portfolio drift analyzed",
            target=target.name,
            total_value_usd=snapshot.total_value_usd,
            health_score=analysis.health_score,
            rebalance_needed=analysis.rebalance_needed,
            max_deviation_pct=max((abs(drift.deviation_pct) for drift in drifts), default=0.0),
        )
        return analysis
