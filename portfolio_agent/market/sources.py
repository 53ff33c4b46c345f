from __future__ import annotations

import logging
from typing import Iterable, Mapping, Protocol

import aiohttp

from portfolio_agent.chain import SolanaRpcClient
from portfolio_agent.common import guarded_call, log_event
from portfolio_agent.portfolio.tokens import SOL_MINT

from .cache import TtlCache


class PriceSource(Protocol):
    async def get_prices(self, mints: Iterable[str]) -> dict[str, float]:
        ...


class BalanceSource(Protocol):
    async def get_balances(self, owner: str) -> dict[str, float]:
        ...


class StaticPriceSource:
    def __init__(self, prices: Mapping[str, float]) -> None:
        self._prices = {mint: float(price) for mint, price in prices.items()}

    async def get_prices(self, mints: Iterable[str]) -> dict[str, float]:
        return {mint: self._prices[mint] for mint in mints if mint in self._prices}


class JupiterPriceSource:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        api_url: str = "https://lite-api.jup.ag/price/v2",
        api_key: str = "",
        timeout_seconds: float = 10.0,
    ) -> None:
        self._logger = logger
        self._api_url = api_url.rstrip("/")
        self._api_key = api_key
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

    async def get_prices(self, mints: Iterable[str]) -> dict[str, float]:
        requested = [mint for mint in dict.fromkeys(mints) if mint]
        if not requested:
            return {}
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise RuntimeError("Price HTTP session is not initialized.")

        headers = {"x-api-key": self._api_key} if self._api_key else None
        async with self._session.get(
            self._api_url,
            params={"ids": ",".join(requested)},
            headers=headers,
        ) as response:
            body = await response.json(content_type=None)
            if response.status >= 400:
                raise RuntimeError(f"Price request failed: status={response.status} body={body}")

        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict):
            raise RuntimeError(f"Unexpected price response: {body}")

        prices: dict[str, float] = {}
        for mint in requested:
            entry = data.get(mint)
            if not isinstance(entry, dict):
                continue
            raw_price = entry.get("price") if entry.get("price") is not None else entry.get("usdPrice")
            try:
                price = float(raw_price)
            except (TypeError, ValueError):
                continue
            if price > 0:
                prices[mint] = price
        return prices


class CachedPriceSource:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        source: PriceSource,
        cache: TtlCache[float],
    ) -> None:
        self._logger = logger
        self._source = source
        self._cache = cache

    async def _fetch_one(self, mint: str) -> float:
        prices = await self._source.get_prices([mint])
        if mint not in prices:
            raise LookupError(f"No price available for {mint}")
        log_event(
            self._logger,
            level="debug",
            event="price_cache_refreshed",
            message="Price cache entry refreshed",
            mint=mint,
            price_usd=prices[mint],
        )
        return prices[mint]

    async def get_prices(self, mints: Iterable[str]) -> dict[str, float]:
        prices: dict[str, float] = {}
        for mint in dict.fromkeys(mints):
            price = await guarded_call(
                lambda mint=mint: self._cache.get_or_refresh(mint, lambda: self._fetch_one(mint)),
                logger=self._logger,
                event="price_unavailable",
                message="Price lookup failed; asset is excluded from valuation",
                mint=mint,
            )
            if price is not None:
                prices[mint] = price
        return prices


class SolanaBalanceSource:
    def __init__(self, *, rpc: SolanaRpcClient, include_native_sol: bool = True) -> None:
        self._rpc = rpc
        self._include_native_sol = include_native_sol

    async def get_balances(self, owner: str) -> dict[str, float]:
        balances = await self._rpc.get_token_balances(owner)
        if self._include_native_sol:
            native = await self._rpc.get_sol_balance(owner)
            # native lamports and wrapped SOL are one position
            balances[SOL_MINT] = balances.get(SOL_MINT, 0.0) + native
        return {mint: amount for mint, amount in balances.items() if amount > 0}

