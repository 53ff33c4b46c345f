from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from portfolio_agent.common import guarded_call, log_event
from portfolio_agent.execution import ExecutionAggregator, ExecutionResult, ExecutionStep
from portfolio_agent.market import SnapshotBuilder
from portfolio_agent.portfolio import (
    AllocationTarget,
    DriftAnalyzer,
    HoldingSnapshot,
    PlannerConfig,
    PortfolioAnalysis,
    TradePlan,
    TradePlanGenerator,
)
from portfolio_agent.storage import AccountGuard, InProcessAccountGuard, RedisStateStore


@dataclass(slots=True, frozen=True)
class RebalanceReport:
    account: str
    run_id: str
    analysis: PortfolioAnalysis
    plan: TradePlan
    execution: ExecutionResult

    def to_dict(self) -> dict[str, Any]:
        return {
            "account": self.account,
            "run_id": self.run_id,
            "analysis": self.analysis.to_dict(),
            "plan": self.plan.to_dict(),
            "execution": self.execution.to_dict(),
        }


class RebalanceService:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        analyzer: DriftAnalyzer,
        planner: TradePlanGenerator,
        planner_config: PlannerConfig,
        aggregator: ExecutionAggregator | None = None,
        snapshot_builder: SnapshotBuilder | None = None,
        guard: AccountGuard | None = None,
        store: RedisStateStore | None = None,
        dry_run: bool = True,
        auto_execute: bool = False,
        report_ttl_seconds: int = 604_800,
    ) -> None:
        self._logger = logger
        self._analyzer = analyzer
        self._planner = planner
        self._planner_config = planner_config
        self._aggregator = aggregator
        self._snapshot_builder = snapshot_builder
        self._guard = guard or InProcessAccountGuard()
        self._store = store
        self._dry_run = dry_run
        self._auto_execute = auto_execute
        self._report_ttl_seconds = report_ttl_seconds

    async def current_snapshot(self, account: str) -> HoldingSnapshot:
        if self._snapshot_builder is None:
            raise RuntimeError("No snapshot builder is configured.")
        return await self._snapshot_builder.build(account)

    def analyze(self, snapshot: HoldingSnapshot, target: AllocationTarget) -> PortfolioAnalysis:
        return self._analyzer.evaluate(snapshot, target)

    def plan(self, snapshot: HoldingSnapshot, target: AllocationTarget) -> TradePlan:
        return self._planner.plan(snapshot, target, self._planner_config)

    async def rebalance(
        self,
        account: str,
        snapshot: HoldingSnapshot,
        target: AllocationTarget,
        *,
        dry_run: bool | None = None,
    ) -> RebalanceReport:
        effective_dry_run = self._dry_run if dry_run is None else dry_run
        if not effective_dry_run and self._aggregator is None:
            raise ValueError("Live rebalancing requires an execution aggregator.")

        run_id = uuid.uuid4().hex
        async with self._guard.hold(account):
            analysis = self.analyze(snapshot, target)
            plan = self.plan(snapshot, target)

            if self._aggregator is not None:
                execution = await self._aggregator.execute(plan.trades, snapshot, dry_run=effective_dry_run)
            else:
                execution = ExecutionResult.from_steps(
                    (ExecutionStep(trade=trade) for trade in plan.trades),
                    dry_run=True,
                )

            if not effective_dry_run and execution.completed > 0 and self._snapshot_builder is not None:
                refreshed = await guarded_call(
                    lambda: self.current_snapshot(account),
                    logger=self._logger,
                    event="snapshot_refresh_failed",
                    message="Failed to refresh the snapshot after execution",
                    account=account,
                    run_id=run_id,
                )
                if refreshed is not None:
                    execution = execution.with_snapshot(refreshed)

        report = RebalanceReport(
            account=account,
            run_id=run_id,
            analysis=analysis,
            plan=plan,
            execution=execution,
        )
        log_event(
            self._logger,
            level="info",
            event="rebalance_finished",
            message="Rebalance run finished",
            account=account,
            run_id=run_id,
            dry_run=effective_dry_run,
            status=execution.status.value,
            trades=len(plan.trades),
            completed=execution.completed,
        )
        if self._store is not None:
            await guarded_call(
                lambda: self._store.record_execution_report(
                    account=account,
                    run_id=run_id,
                    report=report.to_dict(),
                    ttl_seconds=self._report_ttl_seconds,
                ),
                logger=self._logger,
                event="execution_report_record_failed",
                message="Failed to record the execution report",
                account=account,
                run_id=run_id,
            )
        return report

    async def rebalance_if_needed(
        self,
        account: str,
        snapshot: HoldingSnapshot,
        target: AllocationTarget,
    ) -> RebalanceReport | None:
        analysis = self.analyze(snapshot, target)
        if not analysis.rebalance_needed:
            log_event(
                self._logger,
                level="info",
                event="rebalance_skipped",
                message="Portfolio is within the rebalance threshold",
                account=account,
                health_score=analysis.health_score,
            )
            return None

        dry_run = self._dry_run or not self._auto_execute
        return await self.rebalance(account, snapshot, target, dry_run=dry_run)
