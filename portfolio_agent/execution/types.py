from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

from portfolio_agent.portfolio.types import HoldingSnapshot, PlannedTrade
from portfolio_agent.swap.types import SwapStage


class StepStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class ExecutionStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass(slots=True)
class ExecutionStep:
    trade: PlannedTrade
    status: StepStatus = StepStatus.PENDING
    stage: SwapStage = SwapStage.PENDING
    result_signature: str | None = None
    error: str | None = None
    error_type: str | None = None
    ambiguous: bool = False
    input_amount_raw: int | None = None
    output_amount_raw: int | None = None
    output_amount: float | None = None
    executed_value_usd: float | None = None

    @property
    def value_usd(self) -> float:
        if self.executed_value_usd is not None:
            return self.executed_value_usd
        return self.trade.amount_usd

    def to_dict(self) -> dict[str, Any]:
        return {
            "trade": self.trade.to_dict(),
            "status": self.status.value,
            "stage": self.stage.value,
            "result_signature": self.result_signature,
            "error": self.error,
            "error_type": self.error_type,
            "ambiguous": self.ambiguous,
            "input_amount_raw": self.input_amount_raw,
            "output_amount_raw": self.output_amount_raw,
            "output_amount": self.output_amount,
            "executed_value_usd": self.executed_value_usd,
        }


def derive_status(steps: Iterable[ExecutionStep]) -> ExecutionStatus:
    items = list(steps)
    attempted = sum(1 for step in items if step.status != StepStatus.PENDING)
    completed = sum(1 for step in items if step.status == StepStatus.COMPLETED)
    if attempted == 0 or completed == len(items):
        return ExecutionStatus.SUCCESS
    if completed == 0:
        return ExecutionStatus.FAILED
    return ExecutionStatus.PARTIAL


@dataclass(slots=True, frozen=True)
class ExecutionResult:
    status: ExecutionStatus
    steps: tuple[ExecutionStep, ...]
    attempted: int
    completed: int
    value_traded_usd: float
    errors: tuple[str, ...] = ()
    dry_run: bool = False
    snapshot_after: HoldingSnapshot | None = field(default=None, compare=False)

    @classmethod
    def from_steps(
        cls,
        steps: Iterable[ExecutionStep],
        *,
        dry_run: bool = False,
        snapshot_after: HoldingSnapshot | None = None,
    ) -> "ExecutionResult":
        items = tuple(steps)
        completed = [step for step in items if step.status == StepStatus.COMPLETED]
        return cls(
            status=derive_status(items),
            steps=items,
            attempted=sum(1 for step in items if step.status != StepStatus.PENDING),
            completed=len(completed),
            value_traded_usd=math.fsum(step.value_usd for step in completed),
            errors=tuple(step.error for step in items if step.error),
            dry_run=dry_run,
            snapshot_after=snapshot_after,
        )

    def with_snapshot(self, snapshot: HoldingSnapshot) -> "ExecutionResult":
        return ExecutionResult(
            status=self.status,
            steps=self.steps,
            attempted=self.attempted,
            completed=self.completed,
            value_traded_usd=self.value_traded_usd,
            errors=self.errors,
            dry_run=self.dry_run,
            snapshot_after=snapshot,
        )

    @property
    def totals(self) -> dict[str, float]:
        return {
            "attempted": self.attempted,
            "completed": self.completed,
            "value_traded": self.value_traded_usd,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "dry_run": self.dry_run,
            "totals": self.totals,
            "steps": [step.to_dict() for step in self.steps],
            "errors": list(self.errors),
            "snapshot_after": self.snapshot_after.to_dict() if self.snapshot_after else None,
        }
