from __future__ import annotations

import base64
import binascii
import contextlib
import json
import logging

import aiohttp
from solders.keypair import Keypair
from solders.message import to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from portfolio_agent.common import log_event

from .errors import MalformedPayloadError, SigningError
from .payloads import parse_signed_transaction_response


def decode_transaction(tx_base64: str) -> VersionedTransaction:
    try:
        return VersionedTransaction.from_bytes(base64.b64decode(tx_base64, validate=True))
    except (binascii.Error, ValueError) as error:
        raise SigningError(f"Transaction bytes could not be decoded: {error}") from error


def encode_transaction(tx: VersionedTransaction) -> str:
    return base64.b64encode(bytes(tx)).decode("ascii")


def verify_payer_signature(signed_tx_base64: str, payer: str) -> str:
    """Return the payer signature after checking it covers the message."""
    tx = decode_transaction(signed_tx_base64)
    if not tx.signatures:
        raise SigningError("Signed transaction carries no signatures.")

    account_keys = tx.message.account_keys
    payer_key = Pubkey.from_string(payer)
    if not account_keys or account_keys[0] != payer_key:
        raise SigningError("Signed transaction fee payer does not match the wallet.")

    signature = tx.signatures[0]
    if signature == Signature.default():
        raise SigningError("Signed transaction is missing the payer signature.")
    if not signature.verify(payer_key, to_bytes_versioned(tx.message)):
        raise SigningError("Payer signature does not verify against the transaction message.")
    return str(signature)


def parse_private_key(raw: str) -> Keypair:
    value = raw.strip()

    if value.startswith("["):
        arr = json.loads(value)
        if not isinstance(arr, list):
            raise ValueError("PRIVATE_KEY JSON must be an integer array.")
        return Keypair.from_bytes(bytes(arr))

    with contextlib.suppress(Exception):
        return Keypair.from_base58_string(value)

    raise ValueError("Unsupported PRIVATE_KEY format.")


class KeypairSigner:
    def __init__(self, keypair: Keypair) -> None:
        self._keypair = keypair

    @classmethod
    def from_private_key(cls, raw: str) -> "KeypairSigner":
        return cls(parse_private_key(raw))

    @property
    def pubkey(self) -> str:
        return str(self._keypair.pubkey())

    async def sign_transaction(self, unsigned_tx_base64: str) -> str:
        unsigned = decode_transaction(unsigned_tx_base64)
        message = unsigned.message
        signatures = list(unsigned.signatures)
        signer_keys = message.account_keys[: message.header.num_required_signatures]
        try:
            index = signer_keys.index(self._keypair.pubkey())
        except ValueError as error:
            raise SigningError("Keypair is not a required signer of this transaction.") from error

        signatures[index] = self._keypair.sign_message(to_bytes_versioned(message))
        return encode_transaction(VersionedTransaction.populate(message, signatures))


class PrivyRemoteSigner:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        app_id: str,
        app_secret: str,
        wallet_id: str,
        api_base: str = "https://api.privy.io",
        timeout_seconds: float = 10.0,
    ) -> None:
        self._logger = logger
        self._app_id = app_id
        self._app_secret = app_secret
        self._wallet_id = wallet_id
        self._api_base = api_base.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        if not self._app_id or not self._app_secret:
            raise ValueError("PRIVY_APP_ID and PRIVY_APP_SECRET are required for remote signing.")
        if not self._wallet_id:
            raise ValueError("WALLET_ID is required for remote signing.")
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    def _headers(self) -> dict[str, str]:
        token = base64.b64encode(f"{self._app_id}:{self._app_secret}".encode()).decode("ascii")
        return {
            "Authorization": f"Basic {token}",
            "privy-app-id": self._app_id,
            "Content-Type": "application/json",
        }

    async def sign_transaction(self, unsigned_tx_base64: str) -> str:
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise RuntimeError("Signer HTTP session is not initialized.")

        endpoint = f"{self._api_base}/v1/wallets/{self._wallet_id}/rpc"
        payload = {
            "method": "signTransaction",
            "params": {"transaction": unsigned_tx_base64, "encoding": "base64"},
        }
        async with self._session.post(endpoint, json=payload, headers=self._headers()) as response:
            status = response.status
            body = await response.json(content_type=None)

        if status >= 400:
            log_event(
                self._logger,
                level="warning",
                event="remote_signer_rejected",
                message="Remote signer rejected the transaction",
                status=status,
                wallet_id=self._wallet_id,
            )
            raise SigningError(f"Remote signer rejected transaction: status={status} body={body}", detail=body)

        try:
            return parse_signed_transaction_response(body)
        except MalformedPayloadError as error:
            raise SigningError(f"Remote signer response rejected: {error}", detail=body) from error
