from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from typing import Any

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from .errors import MalformedPayloadError


def _require_dict(raw: Any, *, source: str) -> dict[str, Any]:
    if not isinstance(raw, dict):
        raise MalformedPayloadError(f"expected an object, got {type(raw).__name__}", source=source)
    return raw


def _require_pubkey(raw: Any, *, source: str) -> str:
    value = str(raw or "").strip()
    if not value:
        raise MalformedPayloadError("public key is missing", source=source)
    try:
        Pubkey.from_string(value)
    except ValueError as error:
        raise MalformedPayloadError(f"invalid public key {value!r}: {error}", source=source) from error
    return value


def _parse_raw_amount(raw: Any, *, source: str) -> int:
    if raw is None or str(raw).strip() == "":
        raise MalformedPayloadError("amount is missing", source=source)
    try:
        amount = int(str(raw).strip())
    except ValueError as error:
        raise MalformedPayloadError(f"amount is not an integer: {raw!r}", source=source) from error
    if amount < 0:
        raise MalformedPayloadError(f"amount is negative: {amount}", source=source)
    return amount


def error_text(payload: Any) -> str:
    if isinstance(payload, dict):
        for key in ("error", "message", "errorCode", "code"):
            value = payload.get(key)
            if value:
                return error_text(value) if isinstance(value, dict) else str(value)
        return str(payload)
    return str(payload or "")


def is_no_route_text(text: str) -> bool:
    normalized = (text or "").lower()
    return (
        "no_routes_found" in normalized
        or "could_not_find_any_route" in normalized
        or "could not find any route" in normalized
        or "no route" in normalized
        or "token_not_tradable" in normalized
    )


@dataclass(slots=True, frozen=True)
class SwapQuote:
    input_mint: str
    output_mint: str
    in_amount_raw: int
    out_amount_raw: int
    min_out_amount_raw: int
    slippage_bps: int
    price_impact_pct: float
    route_labels: tuple[str, ...]
    context_slot: int | None
    raw: dict[str, Any] = field(repr=False, compare=False)

    @classmethod
    def parse(cls, raw: Any) -> "SwapQuote":
        source = "quote"
        payload = _require_dict(raw, source=source)
        if payload.get("error"):
            raise MalformedPayloadError(f"venue returned an error: {error_text(payload)}", source=source)

        out_amount = _parse_raw_amount(payload.get("outAmount"), source=f"{source}.outAmount")
        if out_amount <= 0:
            raise MalformedPayloadError("outAmount is zero", source=source)
        in_amount = _parse_raw_amount(payload.get("inAmount"), source=f"{source}.inAmount")
        threshold_raw = payload.get("otherAmountThreshold")
        min_out = (
            _parse_raw_amount(threshold_raw, source=f"{source}.otherAmountThreshold")
            if threshold_raw is not None
            else out_amount
        )

        route_plan = payload.get("routePlan")
        if route_plan is not None and not isinstance(route_plan, list):
            raise MalformedPayloadError("routePlan must be a list", source=source)
        labels: list[str] = []
        for step in route_plan or []:
            swap_info = step.get("swapInfo") if isinstance(step, dict) else None
            label = swap_info.get("label") if isinstance(swap_info, dict) else None
            if label:
                labels.append(str(label))

        try:
            price_impact = float(payload.get("priceImpactPct") or 0.0)
        except (TypeError, ValueError) as error:
            raise MalformedPayloadError(
                f"priceImpactPct is not numeric: {payload.get('priceImpactPct')!r}",
                source=source,
            ) from error

        context_slot = payload.get("contextSlot")
        slippage = payload.get("slippageBps")
        return cls(
            input_mint=_require_pubkey(payload.get("inputMint"), source=f"{source}.inputMint"),
            output_mint=_require_pubkey(payload.get("outputMint"), source=f"{source}.outputMint"),
            in_amount_raw=in_amount,
            out_amount_raw=out_amount,
            min_out_amount_raw=min_out,
            slippage_bps=int(slippage) if isinstance(slippage, int) else 0,
            price_impact_pct=price_impact,
            route_labels=tuple(labels),
            context_slot=context_slot if isinstance(context_slot, int) else None,
            raw=payload,
        )


@dataclass(slots=True, frozen=True)
class AccountRef:
    pubkey: str
    is_signer: bool
    is_writable: bool


@dataclass(slots=True, frozen=True)
class SwapOperation:
    program_id: str
    accounts: tuple[AccountRef, ...]
    data: bytes

    @classmethod
    def parse(cls, raw: Any, *, source: str) -> "SwapOperation":
        payload = _require_dict(raw, source=source)
        program_id = _require_pubkey(payload.get("programId"), source=f"{source}.programId")

        raw_accounts = payload.get("accounts")
        if not isinstance(raw_accounts, list):
            raise MalformedPayloadError("accounts must be a list", source=source)
        accounts: list[AccountRef] = []
        for index, account in enumerate(raw_accounts):
            entry = _require_dict(account, source=f"{source}.accounts[{index}]")
            accounts.append(
                AccountRef(
                    pubkey=_require_pubkey(entry.get("pubkey"), source=f"{source}.accounts[{index}]"),
                    is_signer=bool(entry.get("isSigner")),
                    is_writable=bool(entry.get("isWritable")),
                )
            )

        encoded = payload.get("data")
        if not isinstance(encoded, str):
            raise MalformedPayloadError("data must be a base64 string", source=source)
        try:
            data = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as error:
            raise MalformedPayloadError(f"data is not valid base64: {error}", source=source) from error

        return cls(program_id=program_id, accounts=tuple(accounts), data=data)

    def to_instruction(self) -> Instruction:
        return Instruction(
            Pubkey.from_string(self.program_id),
            self.data,
            [
                AccountMeta(
                    pubkey=Pubkey.from_string(account.pubkey),
                    is_signer=account.is_signer,
                    is_writable=account.is_writable,
                )
                for account in self.accounts
            ],
        )


def _parse_operation_list(raw: Any, *, source: str) -> tuple[SwapOperation, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise MalformedPayloadError("expected a list of instructions", source=source)
    return tuple(SwapOperation.parse(item, source=f"{source}[{index}]") for index, item in enumerate(raw))


@dataclass(slots=True, frozen=True)
class SwapInstructionSet:
    compute_budget: tuple[SwapOperation, ...]
    setup: tuple[SwapOperation, ...]
    core: SwapOperation
    cleanup: tuple[SwapOperation, ...]
    lookup_table_addresses: tuple[str, ...]

    @classmethod
    def parse(cls, raw: Any) -> "SwapInstructionSet":
        source = "swap_instructions"
        payload = _require_dict(raw, source=source)
        if payload.get("error"):
            raise MalformedPayloadError(f"venue returned an error: {error_text(payload)}", source=source)

        core_raw = payload.get("swapInstruction")
        if core_raw is None:
            raise MalformedPayloadError("swapInstruction is missing", source=source)

        cleanup_raw = payload.get("cleanupInstruction")
        cleanup = (
            (SwapOperation.parse(cleanup_raw, source=f"{source}.cleanupInstruction"),)
            if cleanup_raw
            else ()
        )

        raw_lookup = payload.get("addressLookupTableAddresses")
        if raw_lookup is not None and not isinstance(raw_lookup, list):
            raise MalformedPayloadError("addressLookupTableAddresses must be a list", source=source)
        lookup_addresses: list[str] = []
        for index, address in enumerate(raw_lookup or []):
            value = _require_pubkey(address, source=f"{source}.addressLookupTableAddresses[{index}]")
            if value not in lookup_addresses:
                lookup_addresses.append(value)

        return cls(
            compute_budget=_parse_operation_list(
                payload.get("computeBudgetInstructions"),
                source=f"{source}.computeBudgetInstructions",
            ),
            setup=_parse_operation_list(
                payload.get("setupInstructions"),
                source=f"{source}.setupInstructions",
            ),
            core=SwapOperation.parse(core_raw, source=f"{source}.swapInstruction"),
            cleanup=cleanup,
            lookup_table_addresses=tuple(lookup_addresses),
        )

    def ordered(self) -> list[SwapOperation]:
        return [*self.compute_budget, *self.setup, self.core, *self.cleanup]

    def instructions(self) -> list[Instruction]:
        return [operation.to_instruction() for operation in self.ordered()]


def parse_signed_transaction_response(raw: Any) -> str:
    source = "signer"
    payload = _require_dict(raw, source=source)
    if payload.get("error"):
        raise MalformedPayloadError(f"signer returned an error: {error_text(payload)}", source=source)
    data = _require_dict(payload.get("data"), source=f"{source}.data")
    signed = data.get("signed_transaction") or data.get("signedTransaction")
    if not isinstance(signed, str) or not signed.strip():
        raise MalformedPayloadError("signed_transaction is missing", source=source)
    return signed.strip()
