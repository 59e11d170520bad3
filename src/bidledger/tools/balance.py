"""Balance tools: add_balance, hold, release, complete_payment, balance info, settlement.

Every tool returns a result dict with a ``success`` flag. Expected
failures (bad amounts, insufficient balance, unknown holds, a simulated
bank failure, unreadable storage) come back as
``{"success": False, "error": ...}``; anything else propagates.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence

from bidledger.config import LedgerConfig
from bidledger.constants import TransactionType
from bidledger.events import BalanceEvent, BalanceEventBus, BalanceEventType
from bidledger.ledger import (
    BalanceInfo,
    BalanceLedger,
    LedgerError,
    TransactionRecord,
)
from bidledger.ledger_cache import LedgerCache

logger = logging.getLogger(__name__)

_DEFAULT_CONFIG = LedgerConfig()

BANK_FAILURE_MESSAGE = (
    "Bank transfer failed. Please check your account details and try again."
)

PAYMENT_METHODS: list[dict[str, Any]] = [
    {
        "id": "BANK_TRANSFER",
        "name": "Bank Transfer",
        "description": "Direct bank transfer using account number",
        "icon": "bank",
        "enabled": True,
        "processing_time": "Instant (Demo)",
    },
]


@dataclass(frozen=True)
class HoldRef:
    """Points at one user's hold transaction."""

    user_id: str
    hold_id: str


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _failure(error: LedgerError | str) -> dict[str, Any]:
    return {"success": False, "error": str(error)}


def _publish(events: BalanceEventBus | None, event: BalanceEvent) -> None:
    if events is not None:
        events.publish(event)


def format_amount(amount: float, currency: str = _DEFAULT_CONFIG.currency) -> str:
    return f"{amount:,.2f} {currency}"


def mask_account_number(account_number: str) -> str:
    """``"1000 2345 6789"`` -> ``"****6789"``."""
    digits = "".join(account_number.split())
    return f"****{digits[-4:]}"


def compute_balance_status(
    available_balance: int,
    low_balance_floor: int = _DEFAULT_CONFIG.low_balance_floor,
) -> dict[str, str]:
    """Classify an available balance as empty, low or good."""
    if available_balance <= 0:
        return {"status": "empty", "message": "No available balance"}
    if available_balance < low_balance_floor:
        return {"status": "low", "message": "Low balance"}
    return {"status": "good", "message": "Sufficient balance"}


def _coerce_amount(amount: Any) -> int | None:
    """Whole-unit int for ``amount``, or None if it is not a positive whole number."""
    if isinstance(amount, bool):
        return None
    if isinstance(amount, float) and amount.is_integer():
        amount = int(amount)
    if not isinstance(amount, int) or amount <= 0:
        return None
    return amount


def _validate_deposit_amount(amount: Any, config: LedgerConfig) -> tuple[int | None, str | None]:
    value = _coerce_amount(amount)
    if value is None:
        return None, "Please enter a valid amount"
    if value < config.min_deposit:
        return None, f"Minimum amount is {config.min_deposit:,} {config.currency}"
    if value > config.max_deposit:
        return None, f"Maximum amount is {config.max_deposit:,} {config.currency}"
    return value, None


def _validate_bank_details(bank_details: dict[str, Any]) -> str | None:
    account_number = "".join(str(bank_details.get("account_number") or "").split())
    if len(account_number) < 8 or not account_number.isdigit():
        return "Please provide a valid account number (minimum 8 digits)"
    holder = str(bank_details.get("account_holder") or "").strip()
    if len(holder) < 2:
        return "Please provide the account holder name"
    return None


async def _flush_or_log(cache: LedgerCache, user_id: str, what: str) -> None:
    if not await cache.flush_user(user_id):
        logger.error(
            "CRITICAL: Failed to persist %s for %s. "
            "The change is in memory but may be lost on restart.",
            what, user_id,
        )


async def _close_hold(
    cache: LedgerCache,
    user_id: str,
    hold_id: str,
    convert: bool,
    description: str | None = None,
    product_id: str | None = None,
) -> tuple[TransactionRecord, TransactionRecord, BalanceInfo]:
    """Release or convert one hold. Returns (hold, new record, balance).

    With ``product_id`` set, the hold must have been placed on that product.
    """
    async with cache.locked(user_id) as ledger:
        hold = ledger.get_transaction(hold_id)
        if product_id is not None and hold is not None and hold.product_id != product_id:
            raise LedgerError(f"Hold {hold_id} is not for product {product_id}")
        if convert:
            rec = ledger.complete_payment(hold_id, description)
        else:
            rec = ledger.release(hold_id, description)
        hold = ledger.get_transaction(hold_id)
        info = ledger.balance_info()
    await _flush_or_log(cache, user_id, "payment" if convert else "hold release")
    return hold, rec, info


# ---------------------------------------------------------------------------
# Deposits
# ---------------------------------------------------------------------------


async def add_balance_tool(
    cache: LedgerCache,
    user_id: str,
    amount: Any,
    bank_details: dict[str, Any] | None = None,
    config: LedgerConfig | None = None,
    events: BalanceEventBus | None = None,
    rng: random.Random | None = None,
) -> dict[str, Any]:
    """Deposit ``amount`` via a simulated bank transfer.

    Validates the amount against the configured min/max and, when given,
    the bank details (account number of at least 8 digits, holder name).
    A configurable fraction of transfers fails on purpose to exercise error
    paths; pass ``config.deposit_failure_rate=0`` to disable that.

    Returns dict with:
        success, message, transaction, new_balance (total), payment_reference,
        balance (total/held/available/held_transactions).
    """
    config = config or _DEFAULT_CONFIG
    value, error = _validate_deposit_amount(amount, config)
    if error:
        return _failure(error)

    masked: dict[str, str] | None = None
    if bank_details is not None:
        error = _validate_bank_details(bank_details)
        if error:
            return _failure(error)
        masked = {
            "account_number": mask_account_number(str(bank_details["account_number"])),
            "account_holder": str(bank_details["account_holder"]).strip(),
        }

    if config.deposit_failure_rate > 0:
        roll = (rng or random).random()
        if roll < config.deposit_failure_rate:
            logger.info("Simulated bank transfer failure for %s (%d).", user_id, value)
            return _failure(BANK_FAILURE_MESSAGE)

    try:
        async with cache.locked(user_id) as ledger:
            rec = ledger.deposit(
                value,
                bank_details=masked,
                description=f"Bank transfer deposit of {value} {config.currency}",
            )
            info = ledger.balance_info()
    except LedgerError as e:
        return _failure(e)

    await _flush_or_log(cache, user_id, f"deposit {rec.id}")
    _publish(events, BalanceEvent(
        event_type=BalanceEventType.BALANCE_ADDED,
        user_id=user_id,
        amount=value,
        new_balance=info.total_balance,
        transaction_id=rec.id,
    ))

    return {
        "success": True,
        "message": "Bank transfer completed successfully",
        "transaction": rec.to_dict(),
        "new_balance": info.total_balance,
        "payment_reference": rec.id,
        "balance": info.to_dict(),
    }


# ---------------------------------------------------------------------------
# Holds
# ---------------------------------------------------------------------------


async def hold_balance_tool(
    cache: LedgerCache,
    user_id: str,
    amount: Any,
    product_id: str,
    bid_id: str | None = None,
    config: LedgerConfig | None = None,
    events: BalanceEventBus | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Hold ``amount`` of the available balance against a bid on ``product_id``.

    The hold expires ``config.hold_duration_days`` after ``now``; see
    release_expired_holds_tool.
    """
    config = config or _DEFAULT_CONFIG
    value = _coerce_amount(amount)
    if value is None:
        return _failure("Please enter a valid bid amount")

    held_until = (now or datetime.now(timezone.utc)) + timedelta(days=config.hold_duration_days)
    try:
        async with cache.locked(user_id) as ledger:
            rec = ledger.hold(value, product_id, bid_id, held_until=held_until)
            info = ledger.balance_info()
    except LedgerError as e:
        return _failure(e)

    await _flush_or_log(cache, user_id, f"hold {rec.id}")
    _publish(events, BalanceEvent(
        event_type=BalanceEventType.BALANCE_HELD,
        user_id=user_id,
        amount=value,
        new_balance=info.total_balance,
        transaction_id=rec.id,
        product_id=product_id,
    ))

    return {
        "success": True,
        "message": "Balance held for bid",
        "transaction": rec.to_dict(),
        "hold_id": rec.id,
        "new_balance": info.total_balance,
        "balance": info.to_dict(),
    }


async def release_hold_tool(
    cache: LedgerCache,
    user_id: str,
    hold_id: str,
    description: str | None = None,
    events: BalanceEventBus | None = None,
) -> dict[str, Any]:
    """Return a held amount to the available balance (user was outbid)."""
    try:
        hold, rec, info = await _close_hold(cache, user_id, hold_id, False, description)
    except LedgerError as e:
        return _failure(e)

    _publish(events, BalanceEvent(
        event_type=BalanceEventType.BALANCE_RELEASED,
        user_id=user_id,
        amount=rec.amount,
        new_balance=info.total_balance,
        transaction_id=rec.id,
        product_id=hold.product_id,
    ))
    return {
        "success": True,
        "message": "Balance released successfully",
        "transaction": rec.to_dict(),
        "new_balance": info.total_balance,
        "balance": info.to_dict(),
    }


async def complete_payment_tool(
    cache: LedgerCache,
    user_id: str,
    hold_id: str,
    description: str | None = None,
    events: BalanceEventBus | None = None,
) -> dict[str, Any]:
    """Convert a hold into a permanent payment (user won the auction)."""
    try:
        hold, rec, info = await _close_hold(cache, user_id, hold_id, True, description)
    except LedgerError as e:
        return _failure(e)

    _publish(events, BalanceEvent(
        event_type=BalanceEventType.PAYMENT_COMPLETED,
        user_id=user_id,
        amount=rec.amount,
        new_balance=info.total_balance,
        transaction_id=rec.id,
        product_id=hold.product_id,
    ))
    return {
        "success": True,
        "message": "Payment completed successfully",
        "transaction": rec.to_dict(),
        "new_balance": info.total_balance,
        "balance": info.to_dict(),
    }


async def release_expired_holds_tool(
    cache: LedgerCache,
    user_id: str,
    now: datetime | None = None,
    events: BalanceEventBus | None = None,
) -> dict[str, Any]:
    """Release every open hold whose expiry has passed."""
    try:
        async with cache.locked(user_id) as ledger:
            released = [
                ledger.release(hold.id, "Released expired bid hold")
                for hold in ledger.expired_holds(now)
            ]
            info = ledger.balance_info()
    except LedgerError as e:
        return _failure(e)

    if released:
        await _flush_or_log(cache, user_id, f"{len(released)} expired hold release(s)")
        logger.info("Released %d expired hold(s) for %s.", len(released), user_id)
    for rec in released:
        _publish(events, BalanceEvent(
            event_type=BalanceEventType.BALANCE_RELEASED,
            user_id=user_id,
            amount=rec.amount,
            new_balance=info.total_balance,
            transaction_id=rec.id,
            product_id=rec.product_id,
        ))

    return {
        "success": True,
        "released_count": len(released),
        "released_amount": sum(rec.amount for rec in released),
        "released_hold_ids": [rec.related_transaction_id for rec in released],
        "balance": info.to_dict(),
    }


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------


async def settle_auction_tool(
    cache: LedgerCache,
    product_id: str,
    winner: HoldRef | None,
    losers: Sequence[HoldRef] = (),
    events: BalanceEventBus | None = None,
) -> dict[str, Any]:
    """Settle the holds of a finished auction.

    The winner's hold becomes a payment; every losing hold is released.
    Each hold is settled independently: a failure is reported in
    ``errors`` and does not stop the others. ``success`` is True only when
    nothing failed.
    """
    result: dict[str, Any] = {
        "product_id": product_id,
        "winner_payment": None,
        "released": [],
        "errors": [],
    }

    targets: list[tuple[HoldRef, bool]] = []
    if winner is not None:
        targets.append((winner, True))
    targets.extend((ref, False) for ref in losers)

    for ref, convert in targets:
        try:
            _, rec, info = await _close_hold(
                cache, ref.user_id, ref.hold_id, convert,
                "Payment for won auction" if convert else "Outbid: auction ended",
                product_id=product_id,
            )
        except LedgerError as e:
            logger.warning(
                "Settlement of %s: hold %s for %s failed: %s",
                product_id, ref.hold_id, ref.user_id, e,
            )
            result["errors"].append({
                "user_id": ref.user_id,
                "hold_id": ref.hold_id,
                "error": str(e),
            })
            continue

        _publish(events, BalanceEvent(
            event_type=(
                BalanceEventType.PAYMENT_COMPLETED if convert
                else BalanceEventType.BALANCE_RELEASED
            ),
            user_id=ref.user_id,
            amount=rec.amount,
            new_balance=info.total_balance,
            transaction_id=rec.id,
            product_id=product_id,
        ))
        entry = {"user_id": ref.user_id, "hold_id": ref.hold_id, "amount": rec.amount}
        if convert:
            result["winner_payment"] = entry
        else:
            result["released"].append(entry)

    result["success"] = not result["errors"]
    return result


# ---------------------------------------------------------------------------
# Read-only views
# ---------------------------------------------------------------------------


async def get_balance_info_tool(
    cache: LedgerCache,
    user_id: str,
    config: LedgerConfig | None = None,
) -> dict[str, Any]:
    """Current total/held/available balance plus a status classification.

    Read-only. A user seen for the first time receives the demo balance.
    """
    config = config or _DEFAULT_CONFIG
    try:
        info = (await cache.get(user_id)).balance_info()
    except LedgerError as e:
        return _failure(e)

    status = compute_balance_status(info.available_balance, config.low_balance_floor)
    return {
        "success": True,
        **info.to_dict(),
        "balance_status": status["status"],
        "status_message": status["message"],
        "currency": config.currency,
    }


async def get_transactions_tool(
    cache: LedgerCache,
    user_id: str,
    limit: int = 50,
    offset: int = 0,
    type: str | None = None,
) -> dict[str, Any]:
    """Newest-first transaction history, paginated by limit/offset."""
    type_filter: TransactionType | None = None
    if type:
        try:
            type_filter = TransactionType(type.upper())
        except ValueError:
            return _failure(f"Unknown transaction type: {type}")

    try:
        ledger = await cache.get(user_id)
    except LedgerError as e:
        return _failure(e)

    page = ledger.history(limit=limit, offset=offset, type=type_filter)
    return {
        "success": True,
        "transactions": [rec.to_dict() for rec in page.transactions],
        "total": page.total,
        "has_more": page.has_more,
        "limit": page.limit,
        "offset": page.offset,
    }


async def validate_bid_amount_tool(
    cache: LedgerCache,
    user_id: str,
    bid_amount: Any,
    config: LedgerConfig | None = None,
) -> dict[str, Any]:
    """Check whether the available balance covers ``bid_amount``.

    Does not hold anything; call hold_balance_tool to actually reserve funds.
    """
    config = config or _DEFAULT_CONFIG
    try:
        amount = float(bid_amount)
    except (TypeError, ValueError):
        amount = float("nan")
    if amount != amount or amount <= 0:
        return {"success": True, "valid": False, "error": "Please enter a valid bid amount"}

    try:
        available = (await cache.get(user_id)).available_balance
    except LedgerError as e:
        return _failure(e)

    if available < amount:
        shortfall = amount - available
        return {
            "success": True,
            "valid": False,
            "error": (
                f"Insufficient balance. Available: {format_amount(available, config.currency)}, "
                f"Required: {format_amount(amount, config.currency)}"
            ),
            "available_balance": available,
            "shortfall": shortfall,
            "message": (
                f"You need {format_amount(shortfall, config.currency)} more "
                "to bid on this auction."
            ),
        }
    return {"success": True, "valid": True, "error": None, "available_balance": available}


async def get_payment_methods_tool() -> dict[str, Any]:
    """Supported deposit methods (bank transfer only)."""
    return {"success": True, "payment_methods": [dict(m) for m in PAYMENT_METHODS]}


# ---------------------------------------------------------------------------
# Demo maintenance
# ---------------------------------------------------------------------------


async def reset_demo_data_tool(
    cache: LedgerCache,
    user_id: str,
    config: LedgerConfig | None = None,
    events: BalanceEventBus | None = None,
) -> dict[str, Any]:
    """Discard the user's history and start over with the demo balance."""
    config = config or _DEFAULT_CONFIG
    ledger = BalanceLedger.seeded(config.seed_balance)
    await cache.replace(user_id, ledger)
    await _flush_or_log(cache, user_id, "demo reset")
    logger.info("Reset demo data for %s.", user_id)

    _publish(events, BalanceEvent(
        event_type=BalanceEventType.DATA_RESET,
        user_id=user_id,
        new_balance=ledger.total_balance,
    ))
    return {
        "success": True,
        "message": "Demo data reset successfully",
        "new_balance": ledger.total_balance,
    }
