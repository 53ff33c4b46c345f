from __future__ import annotations

import logging
from typing import Any, Iterable

from portfolio_agent.common import log_event
from portfolio_agent.portfolio.tokens import TokenRegistry
from portfolio_agent.portfolio.types import AssetCategory, Holding, HoldingSnapshot

from .sources import BalanceSource, PriceSource


def holdings_from_records(records: Iterable[Any], registry: TokenRegistry) -> list[Holding]:
    holdings: list[Holding] = []
    for index, record in enumerate(records):
        if not isinstance(record, dict):
            raise ValueError(f"Holding record[{index}] must be an object: {record}")
        asset = str(record.get("asset_id") or record.get("mint") or record.get("symbol") or "").strip()
        if not asset:
            raise ValueError(f"Holding record[{index}] has no asset_id")

        token = registry.resolve(asset)
        raw_category = record.get("category")
        if raw_category:
            category = AssetCategory.parse(raw_category)
        elif token is not None:
            category = token.category
        else:
            raise ValueError(f"Holding record[{index}] has unknown asset {asset} and no category")

        holdings.append(
            Holding.from_quantity(
                asset_id=token.mint if token is not None else asset,
                symbol=str(record.get("symbol") or (token.symbol if token is not None else asset)),
                category=category,
                quantity=float(record.get("quantity", 0)),
                unit_price_usd=float(record.get("unit_price_usd", 0)),
            )
        )
    return holdings


class SnapshotBuilder:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        balances: BalanceSource,
        prices: PriceSource,
        registry: TokenRegistry,
    ) -> None:
        self._logger = logger
        self._balances = balances
        self._prices = prices
        self._registry = registry

    async def build(self, owner: str) -> HoldingSnapshot:
        balances = await self._balances.get_balances(owner)
        prices = await self._prices.get_prices(balances)

        holdings: list[Holding] = []
        unpriced: list[str] = []
        for mint, quantity in balances.items():
            price = prices.get(mint)
            if price is None:
                unpriced.append(mint)
                continue
            token = self._registry.resolve(mint)
            holdings.append(
                Holding.from_quantity(
                    asset_id=mint,
                    symbol=token.symbol if token is not None else mint[:6],
                    category=self._registry.category_of(mint),
                    quantity=quantity,
                    unit_price_usd=price,
                )
            )

        if unpriced:
            log_event(
                self._logger,
                level="warning",
                event="snapshot_unpriced_assets",
                message="Assets without a price were left out of the snapshot",
                owner=owner,
                mints=unpriced,
            )

        snapshot = HoldingSnapshot.build(holdings)
        log_event(
            self._logger,
            level="info",
            event="snapshot_built",
            message="Holding snapshot built",
            owner=owner,
            holdings=len(snapshot.holdings),
            total_value_usd=snapshot.total_value_usd,
        )
        return snapshot
