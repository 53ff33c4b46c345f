from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from portfolio_agent.chain import SolanaRpcClient
from portfolio_agent.execution import ExecutionAggregator
from portfolio_agent.market import (
    CachedPriceSource,
    JupiterPriceSource,
    SnapshotBuilder,
    SolanaBalanceSource,
    TtlCache,
    holdings_from_records,
)
from portfolio_agent.portfolio import (
    DriftAnalyzer,
    HoldingSnapshot,
    TokenRegistry,
    TradePlanGenerator,
    UserProfile,
    target_for_profile,
)
from portfolio_agent.runtime import AppSettings, setup_logger
from portfolio_agent.service import RebalanceService
from portfolio_agent.storage import InProcessAccountGuard, RedisAccountGuard, RedisStateStore
from portfolio_agent.swap import JupiterSwapClient, KeypairSigner, PrivyRemoteSigner, SwapPipeline


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Analyze and rebalance a Solana portfolio.")
    subcommands = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("analyze", "Report drift, health score and recommendations"),
        ("plan", "Print the trade plan without executing it"),
        ("rebalance", "Plan and execute trades (dry run unless --execute)"),
    ):
        command = subcommands.add_parser(name, help=help_text)
        command.add_argument("--holdings", type=Path, help="JSON file with holdings; omit to read the wallet")
        command.add_argument("--account", default="", help="Wallet address (defaults to WALLET_ADDRESS)")
        command.add_argument("--risk", default="moderate", choices=("conservative", "moderate", "aggressive"))
        command.add_argument("--horizon", default="medium", choices=("short", "medium", "long"))
        command.add_argument("--goals", default="", help="Comma separated goals, e.g. income,speculation")
        if name == "rebalance":
            command.add_argument("--execute", action="store_true", help="Submit trades instead of a dry run")
            command.add_argument("--only-if-needed", action="store_true", help="Skip when within threshold")

    return parser


def load_holdings_file(path: Path, registry: TokenRegistry) -> HoldingSnapshot:
    raw: Any = json.loads(path.read_text(encoding="utf-8"))
    records = raw.get("holdings") if isinstance(raw, dict) else raw
    if not isinstance(records, list):
        raise ValueError(f"{path} must contain a list of holdings.")
    return HoldingSnapshot.build(holdings_from_records(records, registry))


def execution_mode(settings: AppSettings, *, execute: bool) -> tuple[bool, bool]:
    """Return ``(dry_run, auto_execute)`` for the rebalance command.

    ``--execute`` overrides ``DRY_RUN`` and also authorizes the
    rebalance-if-needed path; without it that path executes only when
    ``AUTO_EXECUTE`` is set.
    """
    dry_run = settings.dry_run and not execute
    auto_execute = execute or settings.auto_execute
    return dry_run, auto_execute


def build_signer(settings: AppSettings, logger: logging.Logger) -> tuple[KeypairSigner | PrivyRemoteSigner, str]:
    if settings.private_key.strip():
        signer = KeypairSigner.from_private_key(settings.private_key)
        return signer, signer.pubkey
    if not settings.wallet_address:
        raise ValueError("WALLET_ADDRESS is required when signing through the remote signer.")
    signer = PrivyRemoteSigner(
        logger=logger,
        app_id=settings.privy_app_id,
        app_secret=settings.privy_app_secret,
        wallet_id=settings.wallet_id,
        api_base=settings.privy_api_base,
        timeout_seconds=settings.http_timeout_seconds,
    )
    return signer, settings.wallet_address


async def run(args: argparse.Namespace) -> int:
    logger = setup_logger()
    settings = AppSettings.from_env()
    registry = TokenRegistry()

    profile = UserProfile.parse(args.risk, args.horizon, args.goals.split(","))
    target = target_for_profile(profile)
    account = args.account or settings.wallet_address

    rpc = SolanaRpcClient(
        logger=logger,
        rpc_url=settings.solana_rpc_url,
        timeout_seconds=settings.http_timeout_seconds,
    )
    prices = JupiterPriceSource(
        logger=logger,
        api_key=settings.jupiter_api_key,
        timeout_seconds=settings.http_timeout_seconds,
    )
    snapshot_builder = SnapshotBuilder(
        logger=logger,
        balances=SolanaBalanceSource(rpc=rpc),
        prices=CachedPriceSource(
            logger=logger,
            source=prices,
            cache=TtlCache(ttl_seconds=settings.price_cache_ttl_seconds),
        ),
        registry=registry,
    )
    venue = JupiterSwapClient(
        logger=logger,
        quote_url=settings.jupiter_quote_api,
        swap_instructions_url=settings.jupiter_swap_instructions_api,
        api_key=settings.jupiter_api_key,
        max_accounts=settings.jupiter_max_accounts,
        timeout_seconds=settings.http_timeout_seconds,
    )
    store = (
        RedisStateStore(logger=logger, redis_url=settings.redis_url, key_prefix=settings.redis_key_prefix)
        if settings.redis_url
        else None
    )
    signer: KeypairSigner | PrivyRemoteSigner | None = None

    try:
        if args.holdings is not None:
            snapshot = load_holdings_file(args.holdings, registry)
        else:
            if not account:
                raise ValueError("--account or WALLET_ADDRESS is required without --holdings.")
            snapshot = await snapshot_builder.build(account)

        analyzer = DriftAnalyzer(logger=logger, threshold_pct=settings.rebalance_threshold_pct)
        planner = TradePlanGenerator(logger=logger, representatives=registry.representatives)

        if args.command == "analyze":
            output: Any = analyzer.evaluate(snapshot, target).to_dict()
        elif args.command == "plan":
            output = planner.plan(snapshot, target, settings.planner_config()).to_dict()
        else:
            dry_run, auto_execute = execution_mode(settings, execute=args.execute)
            aggregator = None
            if not dry_run:
                await rpc.healthcheck()
                signer, payer = build_signer(settings, logger)
                account = account or payer
                pipeline = SwapPipeline(
                    logger=logger,
                    venue=venue,
                    signer=signer,
                    network=rpc,
                    config=settings.pipeline_config(),
                )
                aggregator = ExecutionAggregator(
                    logger=logger,
                    pipeline=pipeline,
                    registry=registry,
                    payer=payer,
                    config=settings.aggregator_config(),
                )

            if store is not None:
                await store.connect()
                guard: InProcessAccountGuard | RedisAccountGuard = RedisAccountGuard(
                    logger=logger,
                    store=store,
                    ttl_seconds=settings.account_guard_ttl_seconds,
                )
            else:
                guard = InProcessAccountGuard()

            service = RebalanceService(
                logger=logger,
                analyzer=analyzer,
                planner=planner,
                planner_config=settings.planner_config(),
                aggregator=aggregator,
                snapshot_builder=snapshot_builder if args.holdings is None else None,
                guard=guard,
                store=store,
                dry_run=dry_run,
                auto_execute=auto_execute,
                report_ttl_seconds=settings.report_ttl_seconds,
            )
            if args.only_if_needed:
                report = await service.rebalance_if_needed(account or "local", snapshot, target)
                output = report.to_dict() if report is not None else {"rebalance_needed": False}
            else:
                output = (await service.rebalance(account or "local", snapshot, target)).to_dict()

        print(json.dumps(output, indent=2, ensure_ascii=False, default=str))
        return 0
    finally:
        with contextlib.suppress(Exception):
            await venue.close()
        with contextlib.suppress(Exception):
            await prices.close()
        with contextlib.suppress(Exception):
            await rpc.close()
        if isinstance(signer, PrivyRemoteSigner):
            with contextlib.suppress(Exception):
                await signer.close()
        if store is not None:
            with contextlib.suppress(Exception):
                await store.close()


def main() -> None:
    load_dotenv()
    args = build_parser().parse_args()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
