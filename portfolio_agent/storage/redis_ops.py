from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any

from redis import asyncio as redis
from redis.asyncio.client import Redis

from portfolio_agent.common import log_event


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class RedisStateStore:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        redis_url: str,
        key_prefix: str = "portfolio_agent",
        client: Redis | None = None,
    ) -> None:
        self._logger = logger
        self._redis_url = redis_url
        self._key_prefix = key_prefix
        self._redis: Redis | None = client

    def _guard_key(self, account: str) -> str:
        return f"{self._key_prefix}:account_guard:{account}"

    def _report_key(self, account: str, run_id: str) -> str:
        return f"{self._key_prefix}:report:{account}:{run_id}"

    def _latest_report_key(self, account: str) -> str:
        return f"{self._key_prefix}:report:{account}:latest"

    def _require_redis(self) -> Redis:
        if self._redis is None:
            raise RuntimeError("Redis client is not connected.")
        return self._redis

    async def connect(self) -> None:
        if self._redis is None:
            if not self._redis_url:
                raise ValueError("REDIS_URL is required for the Redis state store.")
            self._redis = redis.from_url(self._redis_url, decode_responses=True)
        await self._redis.ping()
        log_event(
            self._logger,
            level="info",
            event="redis_connected",
            message="Connected to Redis",
        )

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def acquire_account_guard(self, *, account: str, owner_id: str, ttl_seconds: int) -> bool:
        redis_client = self._require_redis()
        acquired = await redis_client.set(
            self._guard_key(account),
            owner_id,
            ex=max(1, ttl_seconds),
            nx=True,
        )
        return bool(acquired)

    async def get_account_guard(self, *, account: str) -> dict[str, Any] | None:
        redis_client = self._require_redis()
        key = self._guard_key(account)
        raw, ttl_seconds = await asyncio.gather(redis_client.get(key), redis_client.ttl(key))
        if raw is None:
            return None
        return {
            "owner_id": raw,
            "ttl_seconds": int(ttl_seconds) if isinstance(ttl_seconds, int) else -2,
        }

    async def refresh_account_guard(self, *, account: str, owner_id: str, ttl_seconds: int) -> bool:
        redis_client = self._require_redis()
        refreshed = await redis_client.eval(
            """
            if redis.call('get', KEYS[1]) == ARGV[1] then
              return redis.call('expire', KEYS[1], ARGV[2])
            end
            return 0
            """,
            1,
            self._guard_key(account),
            owner_id,
            str(max(1, ttl_seconds)),
        )
        return bool(refreshed)

    async def release_account_guard(self, *, account: str, owner_id: str) -> bool:
        redis_client = self._require_redis()
        deleted = await redis_client.eval(
            """
            if redis.call('get', KEYS[1]) == ARGV[1] then
              return redis.call('del', KEYS[1])
            end
            return 0
            """,
            1,
            self._guard_key(account),
            owner_id,
        )
        return bool(deleted)

    async def record_execution_report(
        self,
        *,
        account: str,
        run_id: str,
        report: dict[str, Any],
        ttl_seconds: int,
    ) -> None:
        redis_client = self._require_redis()
        value = json.dumps(
            {"run_id": run_id, "recorded_at": now_iso(), "report": report},
            ensure_ascii=False,
            separators=(",", ":"),
            default=str,
        )
        ttl = max(1, ttl_seconds)
        pipeline = redis_client.pipeline(transaction=True)
        pipeline.set(self._report_key(account, run_id), value, ex=ttl)
        pipeline.set(self._latest_report_key(account), value, ex=ttl)
        await pipeline.execute()
        log_event(
            self._logger,
            level="info",
            event="execution_report_recorded",
            message="Execution report stored in Redis",
            account=account,
            run_id=run_id,
            status=report.get("status"),
        )

    async def get_execution_report(self, *, account: str, run_id: str | None = None) -> dict[str, Any] | None:
        redis_client = self._require_redis()
        key = self._report_key(account, run_id) if run_id else self._latest_report_key(account)
        raw = await redis_client.get(key)
        if raw is None:
            return None
        parsed = json.loads(raw)
        if not isinstance(parsed, dict):
            raise RuntimeError(f"Stored execution report is malformed: {key}")
        return parsed
