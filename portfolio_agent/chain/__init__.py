from .rpc import (
    LatestBlockhash,
    RpcMethodError,
    SignatureStatus,
    SolanaRpcClient,
    parse_signature_status,
)

__all__ = [
    "LatestBlockhash",
    "RpcMethodError",
    "SignatureStatus",
    "SolanaRpcClient",
    "parse_signature_status",
]
