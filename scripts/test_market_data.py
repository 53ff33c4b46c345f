from __future__ import annotations

import asyncio
import logging
import unittest
from unittest.mock import AsyncMock, MagicMock

from portfolio_agent.market import (
    CachedPriceSource,
    SnapshotBuilder,
    SolanaBalanceSource,
    StaticPriceSource,
    TtlCache,
    holdings_from_records,
)
from portfolio_agent.portfolio import AssetCategory, TokenRegistry
from portfolio_agent.portfolio.tokens import SOL_MINT, USDC_MINT

UNKNOWN_MINT = "UnknownMint1111111111111111111111111111111"
KNOWN_PRICES = {SOL_MINT: 150.0, USDC_MINT: 1.0}


def _known_prices(mints: list[str]) -> dict[str, float]:
    return {mint: KNOWN_PRICES[mint] for mint in mints if mint in KNOWN_PRICES}


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TtlCacheTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.clock = FakeClock()
        self.cache: TtlCache[float] = TtlCache(ttl_seconds=60, clock=self.clock)

    async def test_entries_expire_after_ttl(self) -> None:
        self.cache.put("sol", 150.0)
        self.clock.now = 59.9
        self.assertEqual(self.cache.get("sol"), 150.0)

        self.clock.now = 60.0
        self.assertIsNone(self.cache.get("sol"))
        self.assertEqual(len(self.cache), 0)

    async def test_reads_do_not_extend_lifetime(self) -> None:
        self.cache.put("sol", 150.0)
        self.clock.now = 30.0
        self.cache.get("sol")
        self.clock.now = 61.0
        self.assertIsNone(self.cache.get("sol"))

    async def test_concurrent_misses_share_one_refresh(self) -> None:
        calls = 0

        async def refresh() -> float:
            nonlocal calls
            calls += 1
            await asyncio.sleep(0)
            return 1.0

        values = await asyncio.gather(*(self.cache.get_or_refresh("usdc", refresh) for _ in range(5)))

        self.assertEqual(values, [1.0] * 5)
        self.assertEqual(calls, 1)
        self.assertEqual(self.cache._locks, {})

    async def test_failed_refresh_is_not_cached(self) -> None:
        refresh = AsyncMock(side_effect=[RuntimeError("upstream down"), 2.0])

        with self.assertRaises(RuntimeError):
            await self.cache.get_or_refresh("sol", refresh)
        self.assertIsNone(self.cache.get("sol"))

        self.assertEqual(await self.cache.get_or_refresh("sol", refresh), 2.0)
        self.assertEqual(refresh.await_count, 2)
        self.assertEqual(self.cache._locks, {})

    async def test_invalidate_drops_one_or_all(self) -> None:
        self.cache.put("a", 1.0)
        self.cache.put("b", 2.0)
        self.cache.invalidate("a")
        self.assertIsNone(self.cache.get("a"))
        self.assertEqual(self.cache.get("b"), 2.0)

        self.cache.invalidate()
        self.assertEqual(len(self.cache), 0)

    def test_ttl_must_be_positive(self) -> None:
        with self.assertRaises(ValueError):
            TtlCache(ttl_seconds=0)


class CachedPriceSourceTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.clock = FakeClock()
        self.upstream = MagicMock()
        self.upstream.get_prices = AsyncMock(side_effect=_known_prices)
        self.source = CachedPriceSource(
            logger=logging.getLogger("test.prices"),
            source=self.upstream,
            cache=TtlCache(ttl_seconds=60, clock=self.clock),
        )

    async def test_prices_are_served_from_cache_within_ttl(self) -> None:
        first = await self.source.get_prices([SOL_MINT, USDC_MINT])
        second = await self.source.get_prices([SOL_MINT, USDC_MINT])

        self.assertEqual(first, {SOL_MINT: 150.0, USDC_MINT: 1.0})
        self.assertEqual(second, first)
        self.assertEqual(self.upstream.get_prices.await_count, 2)

    async def test_expired_prices_are_refetched(self) -> None:
        await self.source.get_prices([SOL_MINT])
        self.clock.now = 120.0
        await self.source.get_prices([SOL_MINT])
        self.assertEqual(self.upstream.get_prices.await_count, 2)

    async def test_missing_price_excludes_the_mint(self) -> None:
        prices = await self.source.get_prices([SOL_MINT, UNKNOWN_MINT])
        self.assertEqual(prices, {SOL_MINT: 150.0})

    async def test_upstream_failure_excludes_the_mint(self) -> None:
        self.upstream.get_prices.side_effect = RuntimeError("status=503")
        prices = await self.source.get_prices([SOL_MINT])
        self.assertEqual(prices, {})


class SnapshotTests(unittest.IsolatedAsyncioTestCase):
    async def test_builder_values_priced_balances_and_skips_the_rest(self) -> None:
        balances = MagicMock()
        balances.get_balances = AsyncMock(return_value={USDC_MINT: 100.0, SOL_MINT: 2.0, UNKNOWN_MINT: 5.0})
        builder = SnapshotBuilder(
            logger=logging.getLogger("test.snapshot"),
            balances=balances,
            prices=StaticPriceSource({USDC_MINT: 1.0, SOL_MINT: 150.0}),
            registry=TokenRegistry(),
        )

        snapshot = await builder.build("owner")

        self.assertAlmostEqual(snapshot.total_value_usd, 400.0)
        self.assertEqual({holding.asset_id for holding in snapshot.holdings}, {USDC_MINT, SOL_MINT})
        self.assertEqual(snapshot.find("SOL").category, AssetCategory.BASE_ASSET)

    async def test_native_sol_is_merged_and_empty_balances_dropped(self) -> None:
        rpc = MagicMock()
        rpc.get_token_balances = AsyncMock(return_value={SOL_MINT: 0.5, USDC_MINT: 10.0, UNKNOWN_MINT: 0.0})
        rpc.get_sol_balance = AsyncMock(return_value=1.5)

        balances = await SolanaBalanceSource(rpc=rpc).get_balances("owner")

        self.assertEqual(balances, {SOL_MINT: 2.0, USDC_MINT: 10.0})

    def test_records_resolve_symbols_and_categories(self) -> None:
        holdings = holdings_from_records(
            [
                {"symbol": "USDC", "quantity": 250, "unit_price_usd": 1},
                {"asset_id": "custom-token", "category": "other", "quantity": 4, "unit_price_usd": 2.5},
            ],
            TokenRegistry(),
        )

        self.assertEqual(holdings[0].asset_id, USDC_MINT)
        self.assertEqual(holdings[0].category, AssetCategory.STABLECOIN)
        self.assertEqual(holdings[1].category, AssetCategory.OTHER_TOKEN)
        self.assertAlmostEqual(holdings[1].value_usd, 10.0)

    def test_unknown_record_without_category_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            holdings_from_records([{"asset_id": "mystery", "quantity": 1, "unit_price_usd": 1}], TokenRegistry())


if __name__ == "__main__":
    unittest.main()
