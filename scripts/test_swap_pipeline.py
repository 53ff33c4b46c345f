from __future__ import annotations

import base64
import json
import logging
import unittest
from typing import Any
from unittest.mock import AsyncMock, MagicMock

from solders.hash import Hash
from solders.keypair import Keypair

from portfolio_agent.chain import LatestBlockhash, RpcMethodError, SignatureStatus
from portfolio_agent.portfolio.tokens import SOL_MINT, USDC_MINT
from portfolio_agent.swap import (
    BroadcastError,
    ConfirmationTimeoutError,
    InstructionFetchError,
    JupiterSwapClient,
    KeypairSigner,
    MalformedPayloadError,
    NoRouteError,
    OnChainExecutionError,
    PipelineConfig,
    SigningError,
    StageTransitionError,
    SwapInstructionSet,
    SwapPipeline,
    SwapQuote,
    SwapRequest,
    SwapStage,
    SwapState,
)
from portfolio_agent.swap.payloads import parse_signed_transaction_response
from portfolio_agent.swap.signer import decode_transaction

SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"
COMPUTE_BUDGET_PROGRAM_ID = "ComputeBudget111111111111111111111111111111"


def _quote_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "inputMint": USDC_MINT,
        "outputMint": SOL_MINT,
        "inAmount": "300000000",
        "outAmount": "2000000000",
        "otherAmountThreshold": "1940000000",
        "slippageBps": 300,
        "priceImpactPct": "0.0012",
        "routePlan": [{"swapInfo": {"label": "Whirlpool"}}, {"swapInfo": {"label": "Raydium"}}],
        "contextSlot": 123,
    }
    payload.update(overrides)
    return payload


def _transfer_data(lamports: int) -> str:
    return base64.b64encode(b"\x02\x00\x00\x00" + lamports.to_bytes(8, "little")).decode("ascii")


def _instructions_payload(payer: str, **overrides: Any) -> dict[str, Any]:
    destination = str(Keypair().pubkey())
    payload: dict[str, Any] = {
        "computeBudgetInstructions": [
            {"programId": COMPUTE_BUDGET_PROGRAM_ID, "accounts": [], "data": "AsBcFQA="},
        ],
        "setupInstructions": [],
        "swapInstruction": {
            "programId": SYSTEM_PROGRAM_ID,
            "accounts": [
                {"pubkey": payer, "isSigner": True, "isWritable": True},
                {"pubkey": destination, "isSigner": False, "isWritable": True},
            ],
            "data": _transfer_data(1_000),
        },
        "cleanupInstruction": None,
        "addressLookupTableAddresses": [],
    }
    payload.update(overrides)
    return payload


def _echo_signature(signed_tx_base64: str, *, skip_preflight: bool = True) -> str:
    return str(decode_transaction(signed_tx_base64).signatures[0])


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeResponse:
    def __init__(self, status: int, text: str) -> None:
        self.status = status
        self._text = text

    async def __aenter__(self) -> "FakeResponse":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        return None

    async def text(self) -> str:
        return self._text


class FakeSession:
    def __init__(self, response: FakeResponse) -> None:
        self.response = response
        self.calls: list[tuple[str, str, dict[str, Any]]] = []

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append(("GET", url, kwargs))
        return self.response

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append(("POST", url, kwargs))
        return self.response

    async def close(self) -> None:
        return None


class PayloadParsingTests(unittest.TestCase):
    def test_quote_parses_amounts_and_route_labels(self) -> None:
        quote = SwapQuote.parse(_quote_payload())

        self.assertEqual(quote.in_amount_raw, 300_000_000)
        self.assertEqual(quote.out_amount_raw, 2_000_000_000)
        self.assertEqual(quote.min_out_amount_raw, 1_940_000_000)
        self.assertEqual(quote.route_labels, ("Whirlpool", "Raydium"))
        self.assertEqual(quote.context_slot, 123)
        self.assertAlmostEqual(quote.price_impact_pct, 0.0012)

    def test_quote_rejects_zero_output(self) -> None:
        with self.assertRaises(MalformedPayloadError):
            SwapQuote.parse(_quote_payload(outAmount="0"))

    def test_quote_rejects_invalid_mint(self) -> None:
        with self.assertRaises(MalformedPayloadError):
            SwapQuote.parse(_quote_payload(inputMint="not-a-key"))

    def test_quote_rejects_error_payload(self) -> None:
        with self.assertRaises(MalformedPayloadError):
            SwapQuote.parse({"error": "Could not find any route"})

    def test_instruction_set_orders_and_deduplicates_lookup_tables(self) -> None:
        payer = str(Keypair().pubkey())
        table = str(Keypair().pubkey())
        parsed = SwapInstructionSet.parse(
            _instructions_payload(payer, addressLookupTableAddresses=[table, table])
        )

        self.assertEqual(parsed.lookup_table_addresses, (table,))
        self.assertEqual(
            [operation.program_id for operation in parsed.ordered()],
            [COMPUTE_BUDGET_PROGRAM_ID, SYSTEM_PROGRAM_ID],
        )
        self.assertEqual(len(parsed.instructions()), 2)

    def test_instruction_set_rejects_invalid_base64(self) -> None:
        payer = str(Keypair().pubkey())
        payload = _instructions_payload(payer)
        payload["swapInstruction"]["data"] = "***"
        with self.assertRaises(MalformedPayloadError):
            SwapInstructionSet.parse(payload)

    def test_instruction_set_requires_core_instruction(self) -> None:
        payer = str(Keypair().pubkey())
        with self.assertRaises(MalformedPayloadError):
            SwapInstructionSet.parse(_instructions_payload(payer, swapInstruction=None))

    def test_signed_transaction_response_accepts_both_spellings(self) -> None:
        self.assertEqual(parse_signed_transaction_response({"data": {"signed_transaction": "AAA"}}), "AAA")
        self.assertEqual(parse_signed_transaction_response({"data": {"signedTransaction": "BBB"}}), "BBB")
        with self.assertRaises(MalformedPayloadError):
            parse_signed_transaction_response({"data": {}})


class JupiterSwapClientTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.client = JupiterSwapClient(
            logger=logging.getLogger("test.venue"),
            quote_url="https://api.jup.ag/swap/v1/quote",
            swap_instructions_url="https://api.jup.ag/swap/v1/swap-instructions",
            api_key="k-123",
        )

    def _use_response(self, status: int, body: str) -> FakeSession:
        session = FakeSession(FakeResponse(status, body))
        self.client._session = session  # type: ignore[assignment]
        return session

    async def test_quote_sends_query_and_parses_response(self) -> None:
        session = self._use_response(200, json.dumps(_quote_payload()))
        quote = await self.client.quote(
            input_mint=USDC_MINT,
            output_mint=SOL_MINT,
            amount_raw=300_000_000,
            slippage_bps=300,
        )

        method, _, kwargs = session.calls[0]
        self.assertEqual(method, "GET")
        self.assertEqual(kwargs["params"]["amount"], "300000000")
        self.assertEqual(kwargs["params"]["maxAccounts"], "54")
        self.assertEqual(kwargs["headers"]["x-api-key"], "k-123")
        self.assertEqual(quote.out_amount_raw, 2_000_000_000)

    async def test_quote_error_payload_raises_no_route(self) -> None:
        self._use_response(400, '{"error": "Could not find any route", "errorCode": "COULD_NOT_FIND_ANY_ROUTE"}')
        with self.assertRaises(NoRouteError) as ctx:
            await self.client.quote(
                input_mint=USDC_MINT,
                output_mint=SOL_MINT,
                amount_raw=1,
                slippage_bps=50,
            )
        self.assertIn("NO_ROUTES_FOUND", str(ctx.exception))

    async def test_swap_instructions_http_error_raises_instruction_fetch(self) -> None:
        self._use_response(500, "upstream unavailable")
        quote = SwapQuote.parse(_quote_payload())
        with self.assertRaises(InstructionFetchError):
            await self.client.swap_instructions(quote=quote, payer=str(Keypair().pubkey()))

    async def test_swap_instructions_posts_quote_and_payer(self) -> None:
        payer = str(Keypair().pubkey())
        session = self._use_response(200, json.dumps(_instructions_payload(payer)))
        quote = SwapQuote.parse(_quote_payload())

        parsed = await self.client.swap_instructions(quote=quote, payer=payer)

        method, _, kwargs = session.calls[0]
        self.assertEqual(method, "POST")
        self.assertEqual(kwargs["json"]["userPublicKey"], payer)
        self.assertEqual(kwargs["json"]["quoteResponse"]["outAmount"], "2000000000")
        self.assertEqual(parsed.core.program_id, SYSTEM_PROGRAM_ID)


class SwapPipelineTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.keypair = Keypair()
        self.payer = str(self.keypair.pubkey())
        self.clock = FakeClock()

        self.venue = MagicMock()
        self.venue.quote = AsyncMock(return_value=SwapQuote.parse(_quote_payload()))
        self.venue.swap_instructions = AsyncMock(
            return_value=SwapInstructionSet.parse(_instructions_payload(self.payer))
        )

        self.network = MagicMock()
        self.network.get_latest_blockhash = AsyncMock(
            return_value=LatestBlockhash(blockhash=str(Hash.new_unique()), last_valid_block_height=1_000)
        )
        self.network.get_lookup_table_accounts = AsyncMock(return_value=[])
        self.network.send_transaction = AsyncMock(side_effect=_echo_signature)
        self.network.get_signature_status = AsyncMock(
            return_value=SignatureStatus(state="confirmed", confirmation_status="confirmed")
        )
        self.network.get_block_height = AsyncMock(return_value=900)

        self.signer = KeypairSigner(self.keypair)
        self.pipeline = self._pipeline()

    def _pipeline(self, **config: Any) -> SwapPipeline:
        return SwapPipeline(
            logger=logging.getLogger("test.pipeline"),
            venue=self.venue,
            signer=self.signer,
            network=self.network,
            config=PipelineConfig(
                confirm_timeout_seconds=config.get("timeout", 3.0),
                confirm_poll_interval_seconds=config.get("interval", 1.0),
            ),
            sleep=self.clock.sleep,
            clock=self.clock,
        )

    def _request(self, amount_raw: int = 300_000_000) -> SwapRequest:
        return SwapRequest(
            input_mint=USDC_MINT,
            output_mint=SOL_MINT,
            amount_raw=amount_raw,
            slippage_bps=300,
            payer=self.payer,
            output_decimals=9,
            label="#0 stablecoin->base_asset",
        )

    async def test_happy_path_walks_every_stage_once(self) -> None:
        outcome = await self.pipeline.run(self._request())

        self.assertTrue(outcome.succeeded)
        self.assertEqual(outcome.final_stage, SwapStage.CONFIRMED)
        self.assertEqual(outcome.in_amount_raw, 300_000_000)
        self.assertEqual(outcome.out_amount_raw, 2_000_000_000)
        self.assertAlmostEqual(outcome.output_amount, 2.0)
        self.assertIsNone(outcome.error)
        self.assertEqual(self.venue.quote.await_count, 1)
        self.assertEqual(self.venue.swap_instructions.await_count, 1)
        self.assertEqual(self.network.send_transaction.await_count, 1)
        self.network.get_lookup_table_accounts.assert_not_awaited()

        signed = self.network.send_transaction.await_args.args[0]
        self.assertEqual(outcome.signature, str(decode_transaction(signed).signatures[0]))

    async def test_advance_moves_exactly_one_stage(self) -> None:
        state = SwapState(stage=SwapStage.PENDING, request=self._request())

        result = await self.pipeline.advance(state)

        self.assertTrue(result.ok)
        self.assertEqual(result.state.stage, SwapStage.QUOTED)
        self.venue.swap_instructions.assert_not_awaited()

    async def test_advance_refuses_terminal_state(self) -> None:
        state = SwapState(stage=SwapStage.CONFIRMED, request=self._request())
        with self.assertRaises(StageTransitionError):
            await self.pipeline.advance(state)

    async def test_zero_amount_fails_before_quoting(self) -> None:
        outcome = await self.pipeline.run(self._request(amount_raw=0))

        self.assertIsInstance(outcome.error, NoRouteError)
        self.assertEqual(outcome.last_completed_stage, SwapStage.PENDING)
        self.venue.quote.assert_not_awaited()

    async def test_no_route_is_not_retried(self) -> None:
        self.venue.quote.side_effect = NoRouteError("NO_ROUTES_FOUND: no route")

        outcome = await self.pipeline.run(self._request())

        self.assertEqual(outcome.final_stage, SwapStage.FAILED)
        self.assertIsInstance(outcome.error, NoRouteError)
        self.assertFalse(outcome.error.ambiguous)
        self.assertEqual(self.venue.quote.await_count, 1)
        self.venue.swap_instructions.assert_not_awaited()

    async def test_instruction_fetch_failure_stops_before_signing(self) -> None:
        self.venue.swap_instructions.side_effect = InstructionFetchError("status=500")

        outcome = await self.pipeline.run(self._request())

        self.assertIsInstance(outcome.error, InstructionFetchError)
        self.assertEqual(outcome.last_completed_stage, SwapStage.QUOTED)
        self.network.send_transaction.assert_not_awaited()

    async def test_blockhash_failure_during_assembly_is_a_signing_error(self) -> None:
        self.network.get_latest_blockhash.side_effect = RpcMethodError("down", method="getLatestBlockhash")

        outcome = await self.pipeline.run(self._request())

        self.assertIsInstance(outcome.error, SigningError)
        self.assertEqual(outcome.last_completed_stage, SwapStage.INSTRUCTIONS_BUILT)
        self.assertIn("RpcMethodError", str(outcome.error))

    async def test_lookup_tables_are_resolved_when_listed(self) -> None:
        table = str(Keypair().pubkey())
        self.venue.swap_instructions.return_value = SwapInstructionSet.parse(
            _instructions_payload(self.payer, addressLookupTableAddresses=[table])
        )

        outcome = await self.pipeline.run(self._request())

        self.assertTrue(outcome.succeeded)
        self.network.get_lookup_table_accounts.assert_awaited_once_with([table])

    async def test_unsigned_transaction_from_signer_is_rejected(self) -> None:
        signer = MagicMock()
        signer.sign_transaction = AsyncMock(side_effect=lambda unsigned: unsigned)
        self.signer = signer
        pipeline = self._pipeline()

        outcome = await pipeline.run(self._request())

        self.assertIsInstance(outcome.error, SigningError)
        self.assertEqual(outcome.last_completed_stage, SwapStage.INSTRUCTIONS_BUILT)
        self.network.send_transaction.assert_not_awaited()

    async def test_signer_that_is_not_the_payer_is_rejected(self) -> None:
        self.signer = KeypairSigner(Keypair())
        pipeline = self._pipeline()

        outcome = await pipeline.run(self._request())

        self.assertIsInstance(outcome.error, SigningError)
        self.network.send_transaction.assert_not_awaited()

    async def test_broadcast_failure_is_not_retried(self) -> None:
        self.network.send_transaction.side_effect = RpcMethodError(
            "RPC error for sendTransaction: blockhash not found",
            method="sendTransaction",
            code=-32002,
        )

        outcome = await self.pipeline.run(self._request())

        self.assertIsInstance(outcome.error, BroadcastError)
        self.assertFalse(outcome.error.ambiguous)
        self.assertEqual(outcome.last_completed_stage, SwapStage.SIGNED)
        self.assertEqual(self.network.send_transaction.await_count, 1)
        self.network.get_signature_status.assert_not_awaited()

    async def test_on_chain_error_is_ambiguous_failure(self) -> None:
        self.network.get_signature_status.return_value = SignatureStatus(
            state="failed",
            confirmation_status="confirmed",
            error_detail="{'InstructionError': [2, {'Custom': 6001}]}",
        )

        outcome = await self.pipeline.run(self._request())

        self.assertIsInstance(outcome.error, OnChainExecutionError)
        self.assertTrue(outcome.error.ambiguous)
        self.assertIsNotNone(outcome.signature)
        self.assertEqual(outcome.last_completed_stage, SwapStage.SUBMITTED)

    async def test_pending_until_deadline_times_out(self) -> None:
        self.network.get_signature_status.return_value = SignatureStatus(state="pending")

        outcome = await self.pipeline.run(self._request())

        self.assertIsInstance(outcome.error, ConfirmationTimeoutError)
        self.assertTrue(outcome.error.ambiguous)
        self.assertIn("not confirmed within 3s", str(outcome.error))
        self.assertEqual(self.clock.sleeps, [1.0, 1.0, 1.0])
        self.assertEqual(self.network.send_transaction.await_count, 1)

    async def test_poll_errors_are_treated_as_pending(self) -> None:
        self.network.get_signature_status.side_effect = [
            RpcMethodError("flaky", method="getSignatureStatuses"),
            SignatureStatus(state="confirmed", confirmation_status="finalized"),
        ]

        outcome = await self.pipeline.run(self._request())

        self.assertTrue(outcome.succeeded)
        self.assertEqual(self.clock.sleeps, [1.0])

    async def test_expired_blockhash_stops_polling(self) -> None:
        self.network.get_signature_status.return_value = SignatureStatus(state="pending")
        self.network.get_block_height.return_value = 1_001

        outcome = await self.pipeline.run(self._request())

        self.assertIsInstance(outcome.error, ConfirmationTimeoutError)
        self.assertIn("Blockhash expired", str(outcome.error))
        self.assertEqual(self.clock.sleeps, [])


if __name__ == "__main__":
    unittest.main()
