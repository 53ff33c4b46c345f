from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping

from portfolio_agent.common import log_event

from .drift import compute_drifts
from .tokens import DEFAULT_REPRESENTATIVES
from .types import (
    AllocationTarget,
    AssetCategory,
    HoldingSnapshot,
    PlannedTrade,
    PlannerConfig,
    TradePlan,
    canonical_categories,
)

STOCKS_DISABLED_WARNING = "Stock trading is disabled. Stock allocation target will not be achieved."


@dataclass(slots=True)
class _Imbalance:
    category: AssetCategory
    deviation_pct: float
    remaining_usd: float


@dataclass(slots=True)
class _Funding:
    asset_id: str
    remaining_usd: float


def low_value_warning(total_value_usd: float) -> str:
    return (
        f"Portfolio value is very low (${total_value_usd:.2f}). "
        "Trading fees may significantly impact returns."
    )


class TradePlanGenerator:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        representatives: Mapping[AssetCategory, str] | None = None,
    ) -> None:
        self._logger = logger
        self._representatives = dict(representatives or DEFAULT_REPRESENTATIVES)

    def plan(
        self,
        snapshot: HoldingSnapshot,
        target: AllocationTarget,
        config: PlannerConfig,
    ) -> TradePlan:
        warnings: list[str] = []
        total = snapshot.total_value_usd
        values = snapshot.value_by_category()

        if not config.include_stocks and target.pct(AssetCategory.STOCK) > 0:
            warnings.append(STOCKS_DISABLED_WARNING)
        if total < config.materiality_floor_usd:
            warnings.append(low_value_warning(total))

        overweight: list[_Imbalance] = []
        underweight: list[_Imbalance] = []
        if total > 0:
            categories = canonical_categories({*target.percentages_by_category, *values})
            for category in categories:
                if category == AssetCategory.STOCK and not config.include_stocks:
                    continue
                current_value = values.get(category, 0.0)
                target_value = target.pct(category) / 100.0 * total
                delta = current_value - target_value
                deviation_pct = current_value / total * 100.0 - target.pct(category)
                if abs(deviation_pct) <= config.rebalance_threshold_pct:
                    continue
                if delta > config.min_trade_size_usd:
                    overweight.append(_Imbalance(category, deviation_pct, delta))
                elif -delta > config.min_trade_size_usd:
                    underweight.append(_Imbalance(category, deviation_pct, -delta))

        trades = self._match(snapshot, overweight, underweight, config)

        for warning in warnings:
            log_event(
                self._logger,
                level="warning",
                event="trade_plan_warning",
                message=warning,
                target=target.name,
            )

        plan = TradePlan(
            target=target,
            trades=tuple(trades),
            warnings=tuple(warnings),
            estimated_fees_usd=len(trades) * config.estimated_fee_per_trade_usd,
            drifts=tuple(compute_drifts(snapshot, target)),
        )
        log_event(
            self._logger,
            level="info",
            event="trade_plan_generated",
            message="Trade plan generated",
            target=target.name,
            trade_count=len(plan.trades),
            total_trade_value_usd=plan.total_trade_value_usd,
            overweight=[item.category.value for item in overweight],
            underweight=[item.category.value for item in underweight],
            warnings=len(warnings),
        )
        return plan

    def _match(
        self,
        snapshot: HoldingSnapshot,
        overweight: list[_Imbalance],
        underweight: list[_Imbalance],
        config: PlannerConfig,
    ) -> list[PlannedTrade]:
        trades: list[PlannedTrade] = []
        minimum = config.min_trade_size_usd
        funding: dict[AssetCategory, list[_Funding]] = {}
        sell_index = 0
        buy_index = 0
        while sell_index < len(overweight) and buy_index < len(underweight):
            source = overweight[sell_index]
            sink = underweight[buy_index]
            size = min(source.remaining_usd, sink.remaining_usd)
            if size >= minimum and size > 0:
                if source.category not in funding:
                    funding[source.category] = self._funding_for(snapshot, source.category)
                legs = self._draw(funding[source.category], size, minimum)
                for asset_id, amount in legs:
                    trades.append(
                        PlannedTrade(
                            from_category=source.category,
                            to_category=sink.category,
                            from_asset=asset_id,
                            to_asset=self._representatives[sink.category],
                            amount_usd=amount,
                            priority=len(trades),
                            reason=(
                                f"Move ${amount:.2f} from {source.category.value} "
                                f"({source.deviation_pct:+.1f}% vs target) to {sink.category.value} "
                                f"({sink.deviation_pct:+.1f}% vs target)"
                            ),
                        )
                    )
                # an unfunded remainder is dust spread over several holdings; it is given up
                source.remaining_usd -= size
                sink.remaining_usd -= sum(amount for _, amount in legs)
            # a side below the minimum cannot fund or absorb another trade
            if source.remaining_usd < minimum or source.remaining_usd <= 0:
                sell_index += 1
            if sink.remaining_usd < minimum or sink.remaining_usd <= 0:
                buy_index += 1
        return trades

    def _funding_for(self, snapshot: HoldingSnapshot, category: AssetCategory) -> list[_Funding]:
        holdings = [holding for holding in snapshot.holdings_in(category) if holding.value_usd > 0]
        if not holdings:
            return [_Funding(self._representatives[category], float("inf"))]
        return [_Funding(holding.asset_id, holding.value_usd) for holding in holdings]

    @staticmethod
    def _draw(funding: list[_Funding], size: float, minimum: float) -> list[tuple[str, float]]:
        """Split ``size`` across holdings, largest remaining value first, one leg per asset."""
        legs: list[tuple[str, float]] = []
        outstanding = size
        for entry in sorted(funding, key=lambda item: (-item.remaining_usd, item.asset_id)):
            if outstanding <= 0:
                break
            amount = min(entry.remaining_usd, outstanding)
            if amount < minimum or amount <= 0:
                continue
            legs.append((entry.asset_id, amount))
            entry.remaining_usd -= amount
            outstanding -= amount
        return legs
