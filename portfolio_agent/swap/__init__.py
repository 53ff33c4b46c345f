from .errors import (
    BroadcastError,
    ConfirmationTimeoutError,
    InstructionFetchError,
    MalformedPayloadError,
    NoRouteError,
    OnChainExecutionError,
    SigningError,
    StageTransitionError,
    SwapPipelineError,
    TradePreparationError,
)
from .payloads import AccountRef, SwapInstructionSet, SwapOperation, SwapQuote
from .pipeline import PipelineConfig, SwapPipeline
from .signer import KeypairSigner, PrivyRemoteSigner, parse_private_key
from .types import (
    NEXT_STAGE,
    SettlementNetwork,
    StageResult,
    SwapOutcome,
    SwapRequest,
    SwapStage,
    SwapState,
    SwapVenue,
    TransactionSigner,
)
from .venue import JupiterSwapClient

__all__ = [
    "AccountRef",
    "BroadcastError",
    "ConfirmationTimeoutError",
    "InstructionFetchError",
    "JupiterSwapClient",
    "KeypairSigner",
    "MalformedPayloadError",
    "NEXT_STAGE",
    "NoRouteError",
    "OnChainExecutionError",
    "PipelineConfig",
    "PrivyRemoteSigner",
    "SettlementNetwork",
    "SigningError",
    "StageResult",
    "StageTransitionError",
    "SwapInstructionSet",
    "SwapOperation",
    "SwapOutcome",
    "SwapPipeline",
    "SwapPipelineError",
    "SwapQuote",
    "SwapRequest",
    "SwapStage",
    "SwapState",
    "SwapVenue",
    "TradePreparationError",
    "TransactionSigner",
    "parse_private_key",
]
