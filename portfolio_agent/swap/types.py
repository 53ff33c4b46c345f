from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from solders.address_lookup_table_account import AddressLookupTableAccount

if TYPE_CHECKING:
    from portfolio_agent.chain import LatestBlockhash, SignatureStatus

    from .errors import SwapPipelineError
    from .payloads import SwapInstructionSet, SwapQuote


class SwapStage(str, Enum):
    PENDING = "pending"
    QUOTED = "quoted"
    INSTRUCTIONS_BUILT = "instructions_built"
    SIGNED = "signed"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


NEXT_STAGE: dict[SwapStage, SwapStage] = {
    SwapStage.PENDING: SwapStage.QUOTED,
    SwapStage.QUOTED: SwapStage.INSTRUCTIONS_BUILT,
    SwapStage.INSTRUCTIONS_BUILT: SwapStage.SIGNED,
    SwapStage.SIGNED: SwapStage.SUBMITTED,
    SwapStage.SUBMITTED: SwapStage.CONFIRMED,
}
TERMINAL_STAGES = frozenset({SwapStage.CONFIRMED, SwapStage.FAILED})


@dataclass(slots=True, frozen=True)
class SwapRequest:
    input_mint: str
    output_mint: str
    amount_raw: int
    slippage_bps: int
    payer: str
    output_decimals: int
    label: str = ""


@dataclass(slots=True, frozen=True)
class SwapState:
    stage: SwapStage
    request: SwapRequest
    quote: SwapQuote | None = None
    instructions: SwapInstructionSet | None = None
    blockhash: LatestBlockhash | None = None
    unsigned_tx_base64: str | None = None
    signed_tx_base64: str | None = None
    signature: str | None = None
    confirmation_status: str | None = None


@dataclass(slots=True, frozen=True)
class StageResult:
    state: SwapState | None = None
    error: SwapPipelineError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.state is not None


@dataclass(slots=True, frozen=True)
class SwapOutcome:
    final_stage: SwapStage
    last_completed_stage: SwapStage
    signature: str | None = None
    in_amount_raw: int | None = None
    out_amount_raw: int | None = None
    output_amount: float | None = None
    error: SwapPipelineError | None = None

    @property
    def succeeded(self) -> bool:
        return self.final_stage == SwapStage.CONFIRMED

    def to_dict(self) -> dict[str, Any]:
        return {
            "final_stage": self.final_stage.value,
            "last_completed_stage": self.last_completed_stage.value,
            "signature": self.signature,
            "in_amount_raw": self.in_amount_raw,
            "out_amount_raw": self.out_amount_raw,
            "output_amount": self.output_amount,
            "error": self.error.describe() if self.error is not None else None,
        }


class SwapVenue(Protocol):
    async def quote(
        self,
        *,
        input_mint: str,
        output_mint: str,
        amount_raw: int,
        slippage_bps: int,
    ) -> SwapQuote:
        ...

    async def swap_instructions(self, *, quote: SwapQuote, payer: str) -> SwapInstructionSet:
        ...


class TransactionSigner(Protocol):
    async def sign_transaction(self, unsigned_tx_base64: str) -> str:
        ...


class SettlementNetwork(Protocol):
    async def get_latest_blockhash(self) -> LatestBlockhash:
        ...

    async def get_lookup_table_accounts(self, addresses: list[str]) -> list[AddressLookupTableAccount]:
        ...

    async def send_transaction(self, signed_tx_base64: str, *, skip_preflight: bool = True) -> str:
        ...

    async def get_signature_status(self, signature: str) -> SignatureStatus:
        ...

    async def get_block_height(self) -> int:
        ...
