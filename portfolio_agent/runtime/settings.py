from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

from portfolio_agent.execution.aggregator import AggregatorConfig
from portfolio_agent.portfolio.types import PlannerConfig
from portfolio_agent.swap.pipeline import PipelineConfig


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized == "":
        return default
    return normalized in {"1", "true", "yes", "on"}


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or str(value).strip() == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or str(value).strip() == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


@dataclass(slots=True)
class AppSettings:
    solana_rpc_url: str
    jupiter_quote_api: str
    jupiter_swap_instructions_api: str
    jupiter_api_key: str
    jupiter_max_accounts: int
    privy_api_base: str
    privy_app_id: str
    privy_app_secret: str
    wallet_id: str
    wallet_address: str
    private_key: str
    dry_run: bool
    auto_execute: bool
    min_trade_size_usd: float
    max_slippage_bps: int
    rebalance_threshold_pct: float
    include_stocks: bool
    materiality_floor_usd: float
    estimated_fee_per_trade_usd: float
    inter_trade_delay_seconds: float
    confirm_timeout_seconds: float
    confirm_poll_interval_seconds: float
    skip_preflight: bool
    http_timeout_seconds: float
    price_cache_ttl_seconds: float
    redis_url: str
    redis_key_prefix: str
    account_guard_ttl_seconds: int
    report_ttl_seconds: int

    @classmethod
    def from_env(cls) -> "AppSettings":
        return cls(
            solana_rpc_url=os.getenv("SOLANA_RPC_URL", "https://api.mainnet-beta.solana.com").strip(),
            jupiter_quote_api=os.getenv(
                "JUPITER_QUOTE_API",
                "https://lite-api.jup.ag/swap/v1/quote",
            ).strip(),
            jupiter_swap_instructions_api=os.getenv(
                "JUPITER_SWAP_INSTRUCTIONS_API",
                "https://lite-api.jup.ag/swap/v1/swap-instructions",
            ).strip(),
            jupiter_api_key=os.getenv("JUPITER_API_KEY", "").strip(),
            jupiter_max_accounts=max(8, to_int(os.getenv("JUPITER_MAX_ACCOUNTS"), 54)),
            privy_api_base=os.getenv("PRIVY_API_BASE", "https://api.privy.io").strip(),
            privy_app_id=os.getenv("PRIVY_APP_ID", "").strip(),
            privy_app_secret=os.getenv("PRIVY_APP_SECRET", "").strip(),
            wallet_id=os.getenv("WALLET_ID", "").strip(),
            wallet_address=os.getenv("WALLET_ADDRESS", "").strip(),
            private_key=os.getenv("PRIVATE_KEY", ""),
            dry_run=to_bool(os.getenv("DRY_RUN"), True),
            auto_execute=to_bool(os.getenv("AUTO_EXECUTE"), False),
            min_trade_size_usd=max(0.01, to_float(os.getenv("MIN_TRADE_SIZE_USD"), 10.0)),
            max_slippage_bps=max(1, min(10_000, to_int(os.getenv("MAX_SLIPPAGE_BPS"), 300))),
            rebalance_threshold_pct=max(0.0, to_float(os.getenv("REBALANCE_THRESHOLD_PCT"), 5.0)),
            include_stocks=to_bool(os.getenv("INCLUDE_STOCKS"), False),
            materiality_floor_usd=max(0.0, to_float(os.getenv("MATERIALITY_FLOOR_USD"), 100.0)),
            estimated_fee_per_trade_usd=max(
                0.0,
                to_float(os.getenv("ESTIMATED_FEE_PER_TRADE_USD"), 0.5),
            ),
            inter_trade_delay_seconds=max(
                0.0,
                to_float(os.getenv("INTER_TRADE_DELAY_SECONDS"), 1.5),
            ),
            confirm_timeout_seconds=max(
                5.0,
                to_float(os.getenv("CONFIRM_TIMEOUT_SECONDS"), 60.0),
            ),
            confirm_poll_interval_seconds=max(
                0.25,
                to_float(os.getenv("CONFIRM_POLL_INTERVAL_SECONDS"), 1.0),
            ),
            skip_preflight=to_bool(os.getenv("SKIP_PREFLIGHT"), True),
            http_timeout_seconds=max(1.0, to_float(os.getenv("HTTP_TIMEOUT_SECONDS"), 10.0)),
            price_cache_ttl_seconds=max(1.0, to_float(os.getenv("PRICE_CACHE_TTL_SECONDS"), 60.0)),
            redis_url=os.getenv("REDIS_URL", "").strip(),
            redis_key_prefix=(os.getenv("REDIS_KEY_PREFIX", "portfolio_agent").strip(":") or "portfolio_agent"),
            account_guard_ttl_seconds=max(
                30,
                to_int(os.getenv("ACCOUNT_GUARD_TTL_SECONDS"), 600),
            ),
            report_ttl_seconds=max(60, to_int(os.getenv("REPORT_TTL_SECONDS"), 604_800)),
        )

    def planner_config(self) -> PlannerConfig:
        return PlannerConfig(
            min_trade_size_usd=self.min_trade_size_usd,
            rebalance_threshold_pct=self.rebalance_threshold_pct,
            include_stocks=self.include_stocks,
            materiality_floor_usd=self.materiality_floor_usd,
            estimated_fee_per_trade_usd=self.estimated_fee_per_trade_usd,
        )

    def pipeline_config(self) -> PipelineConfig:
        return PipelineConfig(
            max_slippage_bps=self.max_slippage_bps,
            confirm_timeout_seconds=self.confirm_timeout_seconds,
            confirm_poll_interval_seconds=self.confirm_poll_interval_seconds,
            skip_preflight=self.skip_preflight,
        )

    def aggregator_config(self) -> AggregatorConfig:
        return AggregatorConfig(inter_trade_delay_seconds=self.inter_trade_delay_seconds)
