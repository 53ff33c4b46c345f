from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Mapping

from portfolio_agent.common import log_event
from portfolio_agent.portfolio.tokens import TokenRegistry
from portfolio_agent.portfolio.types import HoldingSnapshot, PlannedTrade
from portfolio_agent.swap.errors import SwapPipelineError, TradePreparationError
from portfolio_agent.swap.pipeline import SwapPipeline
from portfolio_agent.swap.types import SwapRequest, SwapStage

from .types import ExecutionResult, ExecutionStep, StepStatus


@dataclass(slots=True, frozen=True)
class AggregatorConfig:
    inter_trade_delay_seconds: float = 1.5


def trade_label(trade: PlannedTrade) -> str:
    return f"#{trade.priority} {trade.from_category.value}->{trade.to_category.value}"


class ExecutionAggregator:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        pipeline: SwapPipeline,
        registry: TokenRegistry,
        payer: str,
        config: AggregatorConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._logger = logger
        self._pipeline = pipeline
        self._registry = registry
        self._payer = payer
        self._config = config or AggregatorConfig()
        self._sleep = sleep

    def prepare_request(
        self,
        trade: PlannedTrade,
        snapshot: HoldingSnapshot,
        *,
        spent_raw: Mapping[str, int] | None = None,
    ) -> SwapRequest:
        """Convert a planned trade into a swap request.

        The input amount is floored to base units and capped at the quantity
        still held, i.e. the snapshot quantity less whatever ``spent_raw``
        records as already committed from the same mint in this run.
        """
        input_token = self._registry.resolve(trade.from_asset)
        output_token = self._registry.resolve(trade.to_asset)
        if input_token is None:
            raise TradePreparationError(f"Unknown input asset {trade.from_asset}")
        if output_token is None:
            raise TradePreparationError(f"Unknown output asset {trade.to_asset}")

        holding = snapshot.find(input_token.mint)
        if holding is None or holding.unit_price_usd <= 0:
            raise TradePreparationError(f"No priced holding for {input_token.symbol}")

        scale = 10**input_token.decimals
        amount_raw = math.floor(trade.amount_usd / holding.unit_price_usd * scale)
        available_raw = math.floor(holding.quantity * scale)
        if spent_raw:
            available_raw = max(available_raw - spent_raw.get(input_token.mint, 0), 0)
        if amount_raw > available_raw:
            log_event(
                self._logger,
                level="info",
                event="trade_amount_capped",
                message="Trade amount capped at the held quantity",
                trade=trade_label(trade),
                requested_raw=amount_raw,
                available_raw=available_raw,
            )
            amount_raw = available_raw

        return SwapRequest(
            input_mint=input_token.mint,
            output_mint=output_token.mint,
            amount_raw=amount_raw,
            slippage_bps=self._pipeline.config.max_slippage_bps,
            payer=self._payer,
            output_decimals=output_token.decimals,
            label=trade_label(trade),
        )

    async def execute(
        self,
        trades: Iterable[PlannedTrade],
        snapshot: HoldingSnapshot,
        *,
        dry_run: bool = False,
    ) -> ExecutionResult:
        ordered = sorted(trades, key=lambda trade: trade.priority)
        steps = [ExecutionStep(trade=trade) for trade in ordered]

        if dry_run:
            log_event(
                self._logger,
                level="info",
                event="execution_dry_run",
                message="Dry run: trades were planned but not executed",
                trade_count=len(steps),
                total_value_usd=math.fsum(trade.amount_usd for trade in ordered),
            )
            return ExecutionResult.from_steps(steps, dry_run=True)

        spent_raw: dict[str, int] = {}
        for index, step in enumerate(steps):
            if index > 0 and self._config.inter_trade_delay_seconds > 0:
                await self._sleep(self._config.inter_trade_delay_seconds)
            await self._run_step(step, snapshot, spent_raw)

        result = ExecutionResult.from_steps(steps)
        log_event(
            self._logger,
            level="info" if result.completed == len(steps) else "warning",
            event="execution_completed",
            message="Trade execution finished",
            status=result.status.value,
            attempted=result.attempted,
            completed=result.completed,
            value_traded_usd=result.value_traded_usd,
            errors=list(result.errors),
        )
        return result

    async def _run_step(
        self,
        step: ExecutionStep,
        snapshot: HoldingSnapshot,
        spent_raw: dict[str, int],
    ) -> None:
        step.status = StepStatus.EXECUTING
        try:
            request = self.prepare_request(step.trade, snapshot, spent_raw=spent_raw)
        except SwapPipelineError as error:
            self._fail(step, error)
            return

        step.input_amount_raw = request.amount_raw
        step.executed_value_usd = self._input_value_usd(request, snapshot)
        outcome = await self._pipeline.run(request)
        # ambiguous failures may still have settled, so their input counts as spent
        if outcome.succeeded or (outcome.error is not None and outcome.error.ambiguous):
            spent_raw[request.input_mint] = spent_raw.get(request.input_mint, 0) + request.amount_raw
        step.stage = outcome.final_stage
        step.result_signature = outcome.signature
        step.output_amount_raw = outcome.out_amount_raw
        step.output_amount = outcome.output_amount
        if outcome.in_amount_raw is not None:
            step.input_amount_raw = outcome.in_amount_raw

        if outcome.succeeded:
            step.status = StepStatus.COMPLETED
            return
        if outcome.error is not None:
            self._fail(step, outcome.error)
        else:
            self._fail(step, SwapPipelineError("Swap ended without confirmation"))

    def _input_value_usd(self, request: SwapRequest, snapshot: HoldingSnapshot) -> float:
        token = self._registry.resolve(request.input_mint)
        holding = snapshot.find(request.input_mint)
        if token is None or holding is None:
            return 0.0
        return request.amount_raw / (10**token.decimals) * holding.unit_price_usd

    @staticmethod
    def _fail(step: ExecutionStep, error: SwapPipelineError) -> None:
        step.status = StepStatus.FAILED
        step.stage = SwapStage.FAILED
        step.error = error.describe()
        step.error_type = type(error).__name__
        step.ambiguous = error.ambiguous
