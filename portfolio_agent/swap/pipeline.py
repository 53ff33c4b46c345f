from __future__ import annotations

import asyncio
import base64
import logging
import time
from dataclasses import dataclass, replace
from typing import Awaitable, Callable

from solders.hash import Hash
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from portfolio_agent.chain import LatestBlockhash
from portfolio_agent.common import guarded_call, log_event

from .errors import (
    BroadcastError,
    ConfirmationTimeoutError,
    InstructionFetchError,
    NoRouteError,
    OnChainExecutionError,
    SigningError,
    StageTransitionError,
    SwapPipelineError,
)
from .signer import verify_payer_signature
from .types import (
    NEXT_STAGE,
    TERMINAL_STAGES,
    SettlementNetwork,
    StageResult,
    SwapOutcome,
    SwapRequest,
    SwapStage,
    SwapState,
    SwapVenue,
    TransactionSigner,
)

MAX_TRANSACTION_SIZE_BYTES = 1232

STAGE_ERRORS: dict[SwapStage, type[SwapPipelineError]] = {
    SwapStage.QUOTED: NoRouteError,
    SwapStage.INSTRUCTIONS_BUILT: InstructionFetchError,
    SwapStage.SIGNED: SigningError,
    SwapStage.SUBMITTED: BroadcastError,
    SwapStage.CONFIRMED: ConfirmationTimeoutError,
}


@dataclass(slots=True, frozen=True)
class PipelineConfig:
    max_slippage_bps: int = 300
    confirm_timeout_seconds: float = 60.0
    confirm_poll_interval_seconds: float = 1.0
    skip_preflight: bool = True


Transition = Callable[[SwapState], Awaitable[SwapState]]


class SwapPipeline:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        venue: SwapVenue,
        signer: TransactionSigner,
        network: SettlementNetwork,
        config: PipelineConfig,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._logger = logger
        self._venue = venue
        self._signer = signer
        self._network = network
        self._config = config
        self._sleep = sleep
        self._clock = clock
        self._transitions: dict[SwapStage, Transition] = {
            SwapStage.PENDING: self._request_quote,
            SwapStage.QUOTED: self._fetch_instructions,
            SwapStage.INSTRUCTIONS_BUILT: self._sign,
            SwapStage.SIGNED: self._submit,
            SwapStage.SUBMITTED: self._await_confirmation,
        }

    @property
    def config(self) -> PipelineConfig:
        return self._config

    async def advance(self, state: SwapState) -> StageResult:
        if state.stage in TERMINAL_STAGES:
            raise StageTransitionError(f"Swap is already terminal at {state.stage.value}.")

        expected = NEXT_STAGE[state.stage]
        transition = self._transitions[state.stage]
        try:
            next_state = await transition(state)
        except asyncio.CancelledError:
            raise
        except SwapPipelineError as error:
            return StageResult(error=error)
        except Exception as error:
            error_type = STAGE_ERRORS[expected]
            return StageResult(error=error_type(f"{type(error).__name__}: {error}"))

        if next_state.stage != expected:
            raise StageTransitionError(
                f"Transition from {state.stage.value} produced {next_state.stage.value}, "
                f"expected {expected.value}."
            )
        return StageResult(state=next_state)

    async def run(self, request: SwapRequest) -> SwapOutcome:
        state = SwapState(stage=SwapStage.PENDING, request=request)
        while state.stage not in TERMINAL_STAGES:
            result = await self.advance(state)
            if result.error is not None:
                log_event(
                    self._logger,
                    level="warning",
                    event="swap_stage_failed",
                    message="Swap stage failed; pipeline stopped",
                    trade=request.label,
                    stage=NEXT_STAGE[state.stage].value,
                    error=result.error.describe(),
                    ambiguous=result.error.ambiguous,
                    tx_signature=state.signature,
                )
                return self._outcome(state, final_stage=SwapStage.FAILED, error=result.error)

            if result.state is None:
                raise StageTransitionError("Stage result carried neither a state nor an error.")
            state = result.state
            log_event(
                self._logger,
                level="debug",
                event="swap_stage_completed",
                message="Swap stage completed",
                trade=request.label,
                stage=state.stage.value,
            )

        log_event(
            self._logger,
            level="info",
            event="swap_confirmed",
            message="Swap confirmed on chain",
            trade=request.label,
            tx_signature=state.signature,
            confirmation_status=state.confirmation_status,
            in_amount_raw=state.quote.in_amount_raw if state.quote else None,
            out_amount_raw=state.quote.out_amount_raw if state.quote else None,
        )
        return self._outcome(state, final_stage=SwapStage.CONFIRMED)

    @staticmethod
    def _outcome(
        state: SwapState,
        *,
        final_stage: SwapStage,
        error: SwapPipelineError | None = None,
    ) -> SwapOutcome:
        quote = state.quote
        output_amount = None
        if quote is not None:
            output_amount = quote.out_amount_raw / (10 ** state.request.output_decimals)
        return SwapOutcome(
            final_stage=final_stage,
            last_completed_stage=state.stage,
            signature=state.signature,
            in_amount_raw=quote.in_amount_raw if quote else None,
            out_amount_raw=quote.out_amount_raw if quote else None,
            output_amount=output_amount,
            error=error,
        )

    async def _request_quote(self, state: SwapState) -> SwapState:
        request = state.request
        if request.amount_raw <= 0:
            raise NoRouteError(f"Trade amount rounds to zero base units for {request.input_mint}.")

        quote = await self._venue.quote(
            input_mint=request.input_mint,
            output_mint=request.output_mint,
            amount_raw=request.amount_raw,
            slippage_bps=request.slippage_bps,
        )
        if quote.out_amount_raw <= 0:
            raise NoRouteError("Venue quoted a zero output amount.")
        return replace(state, stage=SwapStage.QUOTED, quote=quote)

    async def _fetch_instructions(self, state: SwapState) -> SwapState:
        if state.quote is None:
            raise RuntimeError("Cannot fetch instructions without an accepted quote.")
        instructions = await self._venue.swap_instructions(quote=state.quote, payer=state.request.payer)
        return replace(state, stage=SwapStage.INSTRUCTIONS_BUILT, instructions=instructions)

    async def _assemble(self, state: SwapState) -> tuple[str, LatestBlockhash]:
        if state.instructions is None:
            raise RuntimeError("Cannot assemble a transaction without swap instructions.")
        instructions = state.instructions

        lookup_tables = []
        if instructions.lookup_table_addresses:
            lookup_tables = await self._network.get_lookup_table_accounts(
                list(instructions.lookup_table_addresses)
            )
        latest = await self._network.get_latest_blockhash()

        message = MessageV0.try_compile(
            Pubkey.from_string(state.request.payer),
            instructions.instructions(),
            lookup_tables,
            Hash.from_string(latest.blockhash),
        )
        placeholders = [Signature.default()] * message.header.num_required_signatures
        raw = bytes(VersionedTransaction.populate(message, placeholders))
        if len(raw) > MAX_TRANSACTION_SIZE_BYTES:
            raise SigningError(f"Swap transaction exceeds the size limit: size={len(raw)} bytes")
        return base64.b64encode(raw).decode("ascii"), latest

    async def _sign(self, state: SwapState) -> SwapState:
        unsigned, latest = await self._assemble(state)
        signed = await self._signer.sign_transaction(unsigned)
        signature = verify_payer_signature(signed, state.request.payer)
        return replace(
            state,
            stage=SwapStage.SIGNED,
            blockhash=latest,
            unsigned_tx_base64=unsigned,
            signed_tx_base64=signed,
            signature=signature,
        )

    async def _submit(self, state: SwapState) -> SwapState:
        if state.signed_tx_base64 is None:
            raise RuntimeError("Signed transaction is missing.")
        returned = await self._network.send_transaction(
            state.signed_tx_base64,
            skip_preflight=self._config.skip_preflight,
        )
        if state.signature and returned != state.signature:
            log_event(
                self._logger,
                level="warning",
                event="broadcast_signature_mismatch",
                message="Network returned a different signature than the signed transaction",
                expected=state.signature,
                returned=returned,
            )
        return replace(state, stage=SwapStage.SUBMITTED, signature=returned)

    async def _await_confirmation(self, state: SwapState) -> SwapState:
        if state.signature is None:
            raise RuntimeError("Transaction signature is missing.")
        signature = state.signature
        last_valid_height = state.blockhash.last_valid_block_height if state.blockhash else None
        deadline = self._clock() + self._config.confirm_timeout_seconds

        while True:
            status = await guarded_call(
                lambda: self._network.get_signature_status(signature),
                logger=self._logger,
                event="signature_status_poll_failed",
                message="Signature status poll failed; will retry until timeout",
                level="debug",
                tx_signature=signature,
            )
            if status is not None and status.is_confirmed:
                return replace(
                    state,
                    stage=SwapStage.CONFIRMED,
                    confirmation_status=status.confirmation_status,
                )
            if status is not None and status.is_failed:
                raise OnChainExecutionError(
                    f"Transaction {signature} executed with error: {status.error_detail}",
                    detail=status.error_detail,
                )

            if last_valid_height is not None:
                height = await guarded_call(
                    self._network.get_block_height,
                    logger=self._logger,
                    event="block_height_poll_failed",
                    message="Block height poll failed",
                    level="debug",
                )
                if height is not None and height > last_valid_height:
                    raise ConfirmationTimeoutError(
                        f"Blockhash expired before {signature} confirmed "
                        f"(height={height} last_valid={last_valid_height})"
                    )

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise ConfirmationTimeoutError(
                    f"Transaction {signature} not confirmed within "
                    f"{self._config.confirm_timeout_seconds:.0f}s"
                )
            await self._sleep(min(self._config.confirm_poll_interval_seconds, remaining))
