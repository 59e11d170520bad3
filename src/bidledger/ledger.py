"""Per-user demo balance ledger for auction bidding.

Pure data model, no I/O. All amounts are whole currency units (ETB).
``available_balance`` is derived as ``total_balance - held_amount``, so the
balance identity holds by construction. Every mutation checks its
preconditions before it touches any field: an operation either applies
completely or raises and leaves the ledger unchanged.
"""

from __future__ import annotations

import json
import logging
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from bidledger.constants import (
    CURRENCY,
    DEMO_SEED_BALANCE,
    SEED_BANK_DETAILS,
    SEED_DESCRIPTION,
    TransactionStatus,
    TransactionType,
)

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1

_ID_ALPHABET = string.ascii_lowercase + string.digits


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class LedgerError(Exception):
    """Base exception for ledger operations."""


class InvalidAmountError(LedgerError):
    """Amount is not a positive whole number."""


class InsufficientBalanceError(LedgerError):
    """Available balance does not cover the requested hold."""

    def __init__(self, available: int, required: int, currency: str = CURRENCY) -> None:
        super().__init__(
            f"Insufficient balance. Available: {available} {currency}, "
            f"Required: {required} {currency}"
        )
        self.available = available
        self.required = required


class HoldNotFoundError(LedgerError):
    """No open hold with the given transaction ID."""

    def __init__(self, hold_id: str, reason: str = "Hold transaction not found") -> None:
        super().__init__(f"{reason}: {hold_id}")
        self.hold_id = hold_id


class LedgerIntegrityError(LedgerError):
    """Stored counters disagree with the transaction history."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def generate_transaction_id() -> str:
    """Return an ID like ``BANK_1718000000000_k3j9x0a1q``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"BANK_{int(time.time() * 1000)}_{suffix}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_positive(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError(f"Please enter a valid amount (got {amount!r})")


def _parse_timestamp(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _bank_details_from(raw: Any) -> dict[str, str] | None:
    if not isinstance(raw, dict):
        return None
    details = {
        "account_number": raw.get("account_number", raw.get("accountNumber")),
        "account_holder": raw.get("account_holder", raw.get("accountHolder")),
    }
    return {k: str(v) for k, v in details.items() if v is not None}


def _close_settled_holds(transactions: list[TransactionRecord]) -> int:
    """Mark HELD holds that a RELEASE or PAYMENT record points at as closed.

    The browser demo left released and paid holds in status HELD.
    Returns the number of holds corrected.
    """
    closing = {
        TransactionType.RELEASE: TransactionStatus.RELEASED,
        TransactionType.PAYMENT: TransactionStatus.CONVERTED,
    }
    holds = {rec.id: rec for rec in transactions if rec.is_open_hold}
    corrected = 0
    for rec in transactions:
        status = closing.get(rec.type)
        hold = holds.get(rec.related_transaction_id or "") if status else None
        if hold is not None and hold.is_open_hold:
            hold.status = status
            corrected += 1
    return corrected


# ---------------------------------------------------------------------------
# TransactionRecord
# ---------------------------------------------------------------------------


@dataclass
class TransactionRecord:
    """One entry of the append-only transaction history."""

    id: str
    type: TransactionType
    amount: int
    timestamp: str  # ISO datetime, UTC
    status: TransactionStatus = TransactionStatus.COMPLETED
    description: str = ""
    product_id: str | None = None
    bid_id: str | None = None
    related_transaction_id: str | None = None
    held_until: str | None = None  # HOLD only
    bank_details: dict[str, str] | None = None  # DEPOSIT only, already masked
    balance_before: int = 0  # total balance
    balance_after: int = 0

    @property
    def is_open_hold(self) -> bool:
        return (
            self.type is TransactionType.HOLD
            and self.status is TransactionStatus.HELD
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "amount": self.amount,
            "timestamp": self.timestamp,
            "status": self.status.value,
            "description": self.description,
            "product_id": self.product_id,
            "bid_id": self.bid_id,
            "related_transaction_id": self.related_transaction_id,
            "held_until": self.held_until,
            "bank_details": self.bank_details,
            "balance_before": self.balance_before,
            "balance_after": self.balance_after,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransactionRecord:
        """Build a record from its dict form.

        Accepts the camelCase keys of the browser demo (``productId``,
        ``relatedTransactionId``, ``bankDetails.accountNumber``, ...).
        Raises ValueError on an unknown type or status.
        """
        def _get(key: str, legacy_key: str, default: Any = None) -> Any:
            return data.get(key, data.get(legacy_key, default))

        return cls(
            id=str(data.get("id", "")),
            type=TransactionType(str(data.get("type", ""))),
            amount=int(data.get("amount", 0)),
            timestamp=str(data.get("timestamp", "")),
            status=TransactionStatus(str(data.get("status", "COMPLETED"))),
            description=str(data.get("description", "")),
            product_id=_get("product_id", "productId"),
            bid_id=_get("bid_id", "bidId"),
            related_transaction_id=_get("related_transaction_id", "relatedTransactionId"),
            held_until=_get("held_until", "heldUntil"),
            bank_details=_bank_details_from(_get("bank_details", "bankDetails")),
            balance_before=int(_get("balance_before", "balanceBefore", 0)),
            balance_after=int(_get("balance_after", "balanceAfter", 0)),
        )


# ---------------------------------------------------------------------------
# Read-only views
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BalanceInfo:
    total_balance: int
    held_amount: int
    available_balance: int
    held_transactions: int

    def to_dict(self) -> dict[str, int]:
        return {
            "total_balance": self.total_balance,
            "held_amount": self.held_amount,
            "available_balance": self.available_balance,
            "held_transactions": self.held_transactions,
        }


@dataclass(frozen=True)
class HistoryPage:
    transactions: list[TransactionRecord]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + self.limit < self.total


# ---------------------------------------------------------------------------
# BalanceLedger
# ---------------------------------------------------------------------------


@dataclass
class BalanceLedger:
    """Total/held balance of one user plus its transaction history.

    ``transactions`` is ordered newest first. ``hold()`` raises
    InsufficientBalanceError when the available balance is short;
    ``release()`` and ``complete_payment()`` raise HoldNotFoundError unless
    the hold is still open. ``from_json()`` returns a fresh ledger on
    corrupt data.
    """

    total_balance: int = 0
    held_amount: int = 0
    held_transactions: int = 0
    transactions: list[TransactionRecord] = field(default_factory=list)

    @property
    def available_balance(self) -> int:
        return self.total_balance - self.held_amount

    @classmethod
    def seeded(cls, amount: int = DEMO_SEED_BALANCE) -> BalanceLedger:
        """A new ledger holding a single demo deposit of ``amount``."""
        ledger = cls()
        if amount > 0:
            ledger.deposit(
                amount,
                bank_details=dict(SEED_BANK_DETAILS),
                description=SEED_DESCRIPTION,
            )
        return ledger

    # -- queries --------------------------------------------------------------

    def balance_info(self) -> BalanceInfo:
        return BalanceInfo(
            total_balance=self.total_balance,
            held_amount=self.held_amount,
            available_balance=self.available_balance,
            held_transactions=self.held_transactions,
        )

    def get_transaction(self, transaction_id: str) -> TransactionRecord | None:
        for rec in self.transactions:
            if rec.id == transaction_id:
                return rec
        return None

    def open_holds(self) -> list[TransactionRecord]:
        return [rec for rec in self.transactions if rec.is_open_hold]

    def expired_holds(self, now: datetime | None = None) -> list[TransactionRecord]:
        """Open holds whose ``held_until`` lies before ``now``."""
        now = now or _utcnow()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        expired = []
        for rec in self.open_holds():
            if not rec.held_until:
                continue
            until = _parse_timestamp(rec.held_until)
            if until is not None and until < now:
                expired.append(rec)
        return expired

    def history(
        self,
        limit: int = 50,
        offset: int = 0,
        type: TransactionType | None = None,
    ) -> HistoryPage:
        """Slice of the newest-first history, optionally filtered by type."""
        limit = max(1, limit)
        offset = max(0, offset)
        records = self.transactions
        if type is not None:
            records = [rec for rec in records if rec.type is type]
        return HistoryPage(
            transactions=records[offset:offset + limit],
            total=len(records),
            limit=limit,
            offset=offset,
        )

    def verify(self) -> None:
        """Raise LedgerIntegrityError if counters disagree with open holds."""
        holds = self.open_holds()
        held_sum = sum(rec.amount for rec in holds)
        if held_sum != self.held_amount or len(holds) != self.held_transactions:
            raise LedgerIntegrityError(
                f"Held amount {self.held_amount} ({self.held_transactions} holds) "
                f"does not match open holds {held_sum} ({len(holds)} holds)."
            )
        if self.held_amount < 0 or self.available_balance < 0:
            raise LedgerIntegrityError(
                f"Negative balance: total={self.total_balance}, held={self.held_amount}."
            )

    # -- mutations ------------------------------------------------------------

    def deposit(
        self,
        amount: int,
        bank_details: dict[str, str] | None = None,
        description: str | None = None,
    ) -> TransactionRecord:
        """Add ``amount`` to the total (and therefore available) balance."""
        _require_positive(amount)

        before = self.total_balance
        self.total_balance += amount
        rec = TransactionRecord(
            id=generate_transaction_id(),
            type=TransactionType.DEPOSIT,
            amount=amount,
            timestamp=_utcnow().isoformat(),
            description=description or f"Bank transfer deposit of {amount} {CURRENCY}",
            bank_details=bank_details,
            balance_before=before,
            balance_after=self.total_balance,
        )
        self.transactions.insert(0, rec)
        return rec

    def hold(
        self,
        amount: int,
        product_id: str,
        bid_id: str | None = None,
        held_until: datetime | None = None,
        description: str | None = None,
    ) -> TransactionRecord:
        """Move ``amount`` from available to held against a bid."""
        _require_positive(amount)
        if self.available_balance < amount:
            raise InsufficientBalanceError(self.available_balance, amount)

        self.held_amount += amount
        self.held_transactions += 1
        rec = TransactionRecord(
            id=generate_transaction_id(),
            type=TransactionType.HOLD,
            amount=amount,
            timestamp=_utcnow().isoformat(),
            status=TransactionStatus.HELD,
            description=description or f"Balance held for bid on product {product_id}",
            product_id=product_id,
            bid_id=bid_id,
            held_until=held_until.isoformat() if held_until else None,
            balance_before=self.total_balance,
            balance_after=self.total_balance,
        )
        self.transactions.insert(0, rec)
        return rec

    def _open_hold(self, hold_id: str) -> TransactionRecord:
        rec = self.get_transaction(hold_id)
        if rec is None or rec.type is not TransactionType.HOLD:
            raise HoldNotFoundError(hold_id)
        if rec.status is not TransactionStatus.HELD:
            raise HoldNotFoundError(hold_id, f"Hold already {rec.status.value.lower()}")
        if rec.amount > self.held_amount or self.held_transactions < 1:
            raise LedgerIntegrityError(
                f"Hold {hold_id} ({rec.amount}) exceeds held amount {self.held_amount}."
            )
        return rec

    def release(self, hold_id: str, description: str | None = None) -> TransactionRecord:
        """Return a held amount to the available balance (e.g. outbid)."""
        hold = self._open_hold(hold_id)

        self.held_amount -= hold.amount
        self.held_transactions -= 1
        hold.status = TransactionStatus.RELEASED
        rec = TransactionRecord(
            id=generate_transaction_id(),
            type=TransactionType.RELEASE,
            amount=hold.amount,
            timestamp=_utcnow().isoformat(),
            description=description or "Balance released from bid hold",
            product_id=hold.product_id,
            bid_id=hold.bid_id,
            related_transaction_id=hold_id,
            balance_before=self.total_balance,
            balance_after=self.total_balance,
        )
        self.transactions.insert(0, rec)
        return rec

    def complete_payment(
        self, hold_id: str, description: str | None = None,
    ) -> TransactionRecord:
        """Convert a hold into a permanent deduction (auction won)."""
        hold = self._open_hold(hold_id)

        before = self.total_balance
        self.total_balance -= hold.amount
        self.held_amount -= hold.amount
        self.held_transactions -= 1
        hold.status = TransactionStatus.CONVERTED
        rec = TransactionRecord(
            id=generate_transaction_id(),
            type=TransactionType.PAYMENT,
            amount=hold.amount,
            timestamp=_utcnow().isoformat(),
            description=description or "Payment for won auction",
            product_id=hold.product_id,
            bid_id=hold.bid_id,
            related_transaction_id=hold_id,
            balance_before=before,
            balance_after=self.total_balance,
        )
        self.transactions.insert(0, rec)
        return rec

    # -- serialization --------------------------------------------------------

    def to_json(self) -> str:
        """Serialize to JSON string with schema version."""
        return json.dumps({
            "v": _SCHEMA_VERSION,
            "total_balance": self.total_balance,
            "held_amount": self.held_amount,
            "held_transactions": self.held_transactions,
            "transactions": [rec.to_dict() for rec in self.transactions],
        }, indent=2)

    @classmethod
    def from_json(cls, data: str) -> BalanceLedger:
        """Deserialize from JSON. Returns fresh ledger on corrupt/missing data.

        Accepts the camelCase keys (``totalBalance``, ``heldAmount``) written
        by the browser demo. Held counters are rebuilt from the open holds
        when the stored values disagree with them.
        """
        try:
            obj = json.loads(data)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Ledger data is corrupt; returning fresh ledger.")
            return cls()

        if not isinstance(obj, dict):
            logger.warning("Ledger data is not a dict; returning fresh ledger.")
            return cls()

        transactions: list[TransactionRecord] = []
        raw_transactions = obj.get("transactions", [])
        if isinstance(raw_transactions, list):
            for raw in raw_transactions:
                if not isinstance(raw, dict):
                    continue
                try:
                    transactions.append(TransactionRecord.from_dict(raw))
                except (TypeError, ValueError):
                    logger.warning("Skipping unreadable transaction record %r.", raw.get("id"))

        corrected = _close_settled_holds(transactions)
        if corrected:
            logger.info("Closed %d settled hold(s) left open in stored history.", corrected)

        def _get_int(new_key: str, old_key: str) -> int:
            return int(obj.get(new_key, obj.get(old_key, 0)) or 0)

        try:
            total = _get_int("total_balance", "totalBalance")
            held = _get_int("held_amount", "heldAmount")
            held_count = _get_int("held_transactions", "heldTransactions")
        except (TypeError, ValueError):
            logger.warning("Ledger balances are not numeric; returning fresh ledger.")
            return cls()

        ledger = cls(
            total_balance=total,
            held_amount=held,
            held_transactions=held_count,
            transactions=transactions,
        )

        holds = ledger.open_holds()
        held_sum = sum(rec.amount for rec in holds)
        if held_sum != held or len(holds) != held_count:
            logger.warning(
                "Held counters (%d over %d holds) disagree with open holds "
                "(%d over %d); rebuilding from history.",
                held, held_count, held_sum, len(holds),
            )
            ledger.held_amount = held_sum
            ledger.held_transactions = len(holds)

        if ledger.total_balance < 0 or ledger.available_balance < 0:
            logger.warning(
                "Ledger total %d does not cover held %d; returning fresh ledger.",
                ledger.total_balance, ledger.held_amount,
            )
            return cls()

        return ledger
