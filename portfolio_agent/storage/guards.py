from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from typing import AsyncIterator, Protocol

from portfolio_agent.common import guarded_call, log_event

from .redis_ops import RedisStateStore


class RebalanceInProgressError(RuntimeError):
    def __init__(self, account: str) -> None:
        super().__init__(f"A rebalance is already running for account {account}.")
        self.account = account


class AccountGuard(Protocol):
    def hold(self, account: str) -> contextlib.AbstractAsyncContextManager[str]:
        ...


class InProcessAccountGuard:
    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    @contextlib.asynccontextmanager
    async def hold(self, account: str) -> AsyncIterator[str]:
        lock = self._locks.setdefault(account, asyncio.Lock())
        if lock.locked():
            raise RebalanceInProgressError(account)
        async with lock:
            try:
                yield account
            finally:
                # busy callers raise instead of queueing, so nobody waits on this lock
                self._locks.pop(account, None)


class RedisAccountGuard:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        store: RedisStateStore,
        ttl_seconds: int = 600,
    ) -> None:
        self._logger = logger
        self._store = store
        self._ttl_seconds = ttl_seconds

    async def _refresh_loop(self, account: str, owner_id: str) -> None:
        interval = max(1.0, self._ttl_seconds / 3)
        while True:
            await asyncio.sleep(interval)
            await guarded_call(
                lambda: self._store.refresh_account_guard(
                    account=account,
                    owner_id=owner_id,
                    ttl_seconds=self._ttl_seconds,
                ),
                logger=self._logger,
                event="account_guard_refresh_failed",
                message="Failed to refresh account guard",
                account=account,
            )

    @contextlib.asynccontextmanager
    async def hold(self, account: str) -> AsyncIterator[str]:
        owner_id = uuid.uuid4().hex
        acquired = await self._store.acquire_account_guard(
            account=account,
            owner_id=owner_id,
            ttl_seconds=self._ttl_seconds,
        )
        if not acquired:
            existing = await guarded_call(
                lambda: self._store.get_account_guard(account=account),
                logger=self._logger,
                event="account_guard_lookup_failed",
                message="Failed to read the current account guard",
                account=account,
            )
            log_event(
                self._logger,
                level="warning",
                event="account_guard_busy",
                message="Account guard is held by another rebalance",
                account=account,
                holder=existing,
            )
            raise RebalanceInProgressError(account)

        refresher = asyncio.create_task(self._refresh_loop(account, owner_id))
        try:
            yield owner_id
        finally:
            refresher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await refresher
            await guarded_call(
                lambda: self._store.release_account_guard(account=account, owner_id=owner_id),
                logger=self._logger,
                event="account_guard_release_failed",
                message="Failed to release account guard; it will expire by TTL",
                account=account,
            )
