from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import aiohttp
from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.pubkey import Pubkey

from portfolio_agent.common import log_event

TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
LAMPORTS_PER_SOL = 1_000_000_000


class RpcMethodError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        method: str,
        status: int | None = None,
        code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.method = method
        self.status = status
        self.code = code


@dataclass(slots=True, frozen=True)
class LatestBlockhash:
    blockhash: str
    last_valid_block_height: int | None


@dataclass(slots=True, frozen=True)
class SignatureStatus:
    state: str
    confirmation_status: str | None = None
    slot: int | None = None
    error_detail: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.state == "pending"

    @property
    def is_confirmed(self) -> bool:
        return self.state == "confirmed"

    @property
    def is_failed(self) -> bool:
        return self.state == "failed"


def _nested(payload: Any, *keys: str) -> Any:
    current = payload
    for key in keys:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def parse_signature_status(raw: Any) -> SignatureStatus:
    if raw is None:
        return SignatureStatus(state="pending")
    if not isinstance(raw, dict):
        raise ValueError(f"Invalid signature status payload: {raw}")

    slot_raw = raw.get("slot")
    slot = int(slot_raw) if isinstance(slot_raw, int) else None
    confirmation_status = raw.get("confirmationStatus")
    if confirmation_status is not None and not isinstance(confirmation_status, str):
        raise ValueError(f"Invalid confirmationStatus: {confirmation_status}")

    error = raw.get("err")
    if error is not None:
        return SignatureStatus(
            state="failed",
            confirmation_status=confirmation_status,
            slot=slot,
            error_detail=str(error),
        )
    if confirmation_status in {"confirmed", "finalized"}:
        return SignatureStatus(state="confirmed", confirmation_status=confirmation_status, slot=slot)
    return SignatureStatus(state="pending", confirmation_status=confirmation_status, slot=slot)


class SolanaRpcClient:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc_url: str,
        timeout_seconds: float = 10.0,
        commitment: str = "confirmed",
    ) -> None:
        self._logger = logger
        self._rpc_url = rpc_url
        self._timeout_seconds = timeout_seconds
        self._commitment = commitment
        self._http_session: aiohttp.ClientSession | None = None
        self._request_id = 0

    async def connect(self) -> None:
        if not self._rpc_url:
            raise ValueError("SOLANA_RPC_URL is required.")
        if self._http_session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._http_session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    async def healthcheck(self) -> None:
        await self.get_latest_blockhash()

    async def rpc_call(self, method: str, params: list[Any] | None = None) -> Any:
        if self._http_session is None:
            await self.connect()
        if self._http_session is None:
            raise RuntimeError("RPC HTTP session is not initialized.")

        self._request_id += 1
        payload: dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        async with self._http_session.post(self._rpc_url, json=payload) as response:
            body = await response.json(content_type=None)
            if response.status >= 400:
                raise RpcMethodError(
                    f"RPC call failed: method={method} status={response.status} body={body}",
                    method=method,
                    status=response.status,
                )

        if not isinstance(body, dict):
            raise RpcMethodError(f"Invalid RPC response for {method}: {body}", method=method)

        error = body.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            raise RpcMethodError(
                f"RPC error for {method}: {error}",
                method=method,
                code=code if isinstance(code, int) else None,
            )

        return body.get("result")

    async def get_latest_blockhash(self) -> LatestBlockhash:
        result = await self.rpc_call("getLatestBlockhash", [{"commitment": self._commitment}])
        if not isinstance(result, dict):
            raise RuntimeError(f"Unexpected getLatestBlockhash response: {result}")

        value = result.get("value")
        if not isinstance(value, dict):
            raise RuntimeError(f"Unexpected getLatestBlockhash payload: {result}")

        blockhash = str(value.get("blockhash") or "").strip()
        if not blockhash:
            raise RuntimeError(f"Missing blockhash in RPC response: {result}")

        height_raw = value.get("lastValidBlockHeight")
        last_valid_block_height = height_raw if isinstance(height_raw, int) and height_raw >= 0 else None
        return LatestBlockhash(blockhash=blockhash, last_valid_block_height=last_valid_block_height)

    async def get_block_height(self) -> int:
        result = await self.rpc_call("getBlockHeight", [{"commitment": self._commitment}])
        if not isinstance(result, int):
            raise RuntimeError(f"Unexpected getBlockHeight response: {result}")
        return result

    async def get_lookup_table_accounts(self, addresses: list[str]) -> list[AddressLookupTableAccount]:
        accounts: list[AddressLookupTableAccount] = []
        for address in addresses:
            result = await self.rpc_call(
                "getAccountInfo",
                [address, {"encoding": "jsonParsed", "commitment": self._commitment}],
            )
            value = _nested(result, "value")
            if not isinstance(value, dict):
                raise RuntimeError(f"Address lookup table not found: {address}")

            raw_addresses = _nested(value, "data", "parsed", "info", "addresses")
            if not isinstance(raw_addresses, list):
                raise RuntimeError(f"Address lookup table addresses are missing for {address}: {value}")

            accounts.append(
                AddressLookupTableAccount(
                    Pubkey.from_string(address),
                    [
                        Pubkey.from_string(str(raw_address))
                        for raw_address in raw_addresses
                        if str(raw_address or "").strip()
                    ],
                )
            )
        return accounts

    async def send_transaction(self, signed_tx_base64: str, *, skip_preflight: bool = True) -> str:
        result = await self.rpc_call(
            "sendTransaction",
            [
                signed_tx_base64,
                {
                    "encoding": "base64",
                    "skipPreflight": skip_preflight,
                    "preflightCommitment": self._commitment,
                    "maxRetries": 3,
                },
            ],
        )
        signature = str(result or "").strip()
        if not signature:
            raise RuntimeError(f"sendTransaction returned no signature: {result}")
        log_event(
            self._logger,
            level="info",
            event="transaction_sent",
            message="Transaction sent to RPC",
            tx_signature=signature,
            skip_preflight=skip_preflight,
        )
        return signature

    async def get_signature_status(self, signature: str) -> SignatureStatus:
        result = await self.rpc_call(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": False}],
        )
        if not isinstance(result, dict) or not isinstance(result.get("value"), list):
            raise RuntimeError(f"Unexpected getSignatureStatuses response: {result}")
        values = result["value"]
        return parse_signature_status(values[0] if values else None)

    async def get_sol_balance(self, owner: str) -> float:
        result = await self.rpc_call("getBalance", [owner, {"commitment": self._commitment}])
        value = result.get("value") if isinstance(result, dict) else None
        if not isinstance(value, int):
            raise RuntimeError(f"Unexpected getBalance response: {result}")
        return value / LAMPORTS_PER_SOL

    async def get_token_balances(self, owner: str) -> dict[str, float]:
        balances: dict[str, float] = {}
        for program_id in (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID):
            result = await self.rpc_call(
                "getTokenAccountsByOwner",
                [
                    owner,
                    {"programId": program_id},
                    {"encoding": "jsonParsed", "commitment": self._commitment},
                ],
            )
            value = result.get("value") if isinstance(result, dict) else None
            if not isinstance(value, list):
                raise RuntimeError(f"Unexpected getTokenAccountsByOwner response: {result}")

            for item in value:
                info = _nested(item, "account", "data", "parsed", "info")
                if not isinstance(info, dict):
                    continue
                mint = str(info.get("mint") or "").strip()
                token_amount = info.get("tokenAmount")
                if not mint or not isinstance(token_amount, dict):
                    continue
                ui_amount = token_amount.get("uiAmountString") or token_amount.get("uiAmount") or 0
                balances[mint] = balances.get(mint, 0.0) + float(ui_amount)
        return balances
