from __future__ import annotations

from .types import SwapStage


class MalformedPayloadError(ValueError):
    def __init__(self, message: str, *, source: str) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source


class SwapPipelineError(RuntimeError):
    stage: SwapStage = SwapStage.PENDING
    # outcome unknown on chain; callers must reconcile out-of-band
    ambiguous: bool = False

    def __init__(self, message: str, *, detail: object | None = None) -> None:
        super().__init__(message)
        self.detail = detail

    def describe(self) -> str:
        return f"{type(self).__name__}: {self}"


class TradePreparationError(SwapPipelineError):
    stage = SwapStage.PENDING


class NoRouteError(SwapPipelineError):
    stage = SwapStage.QUOTED


class InstructionFetchError(SwapPipelineError):
    stage = SwapStage.INSTRUCTIONS_BUILT


class SigningError(SwapPipelineError):
    stage = SwapStage.SIGNED


class BroadcastError(SwapPipelineError):
    stage = SwapStage.SUBMITTED


class ConfirmationTimeoutError(SwapPipelineError):
    stage = SwapStage.CONFIRMED
    ambiguous = True


class OnChainExecutionError(SwapPipelineError):
    stage = SwapStage.CONFIRMED
    ambiguous = True


class StageTransitionError(RuntimeError):
    pass
