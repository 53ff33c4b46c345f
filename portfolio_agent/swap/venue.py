from __future__ import annotations

import json
import logging
from typing import Any

import aiohttp

from portfolio_agent.common import log_event

from .errors import InstructionFetchError, MalformedPayloadError, NoRouteError
from .payloads import SwapInstructionSet, SwapQuote, error_text, is_no_route_text


class JupiterSwapClient:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        quote_url: str,
        swap_instructions_url: str,
        api_key: str = "",
        max_accounts: int = 54,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._logger = logger
        self._quote_url = quote_url
        self._swap_instructions_url = swap_instructions_url
        self._api_key = api_key
        self._max_accounts = max_accounts
        self._timeout_seconds = timeout_seconds
        self._session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["x-api-key"] = self._api_key
        return headers

    async def _require_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise RuntimeError("Swap venue HTTP session is not initialized.")
        return self._session

    @staticmethod
    def _decode_body(raw_text: str) -> Any:
        if not raw_text:
            return {}
        try:
            return json.loads(raw_text)
        except json.JSONDecodeError:
            return {"raw_text": raw_text[:500]}

    async def quote(
        self,
        *,
        input_mint: str,
        output_mint: str,
        amount_raw: int,
        slippage_bps: int,
    ) -> SwapQuote:
        session = await self._require_session()
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount_raw),
            "slippageBps": str(slippage_bps),
            "maxAccounts": str(self._max_accounts),
        }

        async with session.get(self._quote_url, params=params, headers=self._headers()) as response:
            status = response.status
            body = self._decode_body(await response.text())

        if status >= 400 or (isinstance(body, dict) and body.get("error")):
            message = error_text(body)
            log_event(
                self._logger,
                level="warning",
                event="quote_api_error_payload",
                message="Quote API response includes error payload",
                status=status,
                error=message,
                input_mint=input_mint,
                output_mint=output_mint,
            )
            if is_no_route_text(message):
                raise NoRouteError(f"NO_ROUTES_FOUND: {message}", detail=body)
            raise NoRouteError(f"Quote request failed: status={status} error={message}", detail=body)

        try:
            return SwapQuote.parse(body)
        except MalformedPayloadError as error:
            raise NoRouteError(f"Quote response rejected: {error}", detail=body) from error

    async def swap_instructions(self, *, quote: SwapQuote, payer: str) -> SwapInstructionSet:
        session = await self._require_session()
        payload = {
            "quoteResponse": quote.raw,
            "userPublicKey": payer,
            "dynamicComputeUnitLimit": True,
            "dynamicSlippage": {"maxBps": quote.slippage_bps or 300},
        }

        async with session.post(
            self._swap_instructions_url,
            json=payload,
            headers=self._headers(),
        ) as response:
            status = response.status
            body = self._decode_body(await response.text())

        if status >= 400:
            raise InstructionFetchError(
                f"Swap-instructions API request failed: status={status} error={error_text(body)}",
                detail=body,
            )

        try:
            return SwapInstructionSet.parse(body)
        except MalformedPayloadError as error:
            raise InstructionFetchError(f"Swap-instructions response rejected: {error}", detail=body) from error
