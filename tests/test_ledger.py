"""Tests for BalanceLedger model and serialization."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from bidledger.constants import SEED_DESCRIPTION, TransactionStatus, TransactionType
from bidledger.ledger import (
    BalanceLedger,
    HoldNotFoundError,
    InsufficientBalanceError,
    InvalidAmountError,
    LedgerIntegrityError,
    TransactionRecord,
    generate_transaction_id,
)


def _assert_identity(ledger: BalanceLedger) -> None:
    assert ledger.total_balance == ledger.available_balance + ledger.held_amount
    ledger.verify()


# ---------------------------------------------------------------------------
# Seeding / deposits
# ---------------------------------------------------------------------------


class TestSeedAndDeposit:
    def test_fresh_ledger_is_empty(self) -> None:
        ledger = BalanceLedger()
        assert ledger.total_balance == 0
        assert ledger.available_balance == 0
        assert ledger.transactions == []

    def test_seeded_ledger(self) -> None:
        ledger = BalanceLedger.seeded(1000)
        assert ledger.total_balance == 1000
        assert ledger.available_balance == 1000
        assert len(ledger.transactions) == 1
        seed = ledger.transactions[0]
        assert seed.type is TransactionType.DEPOSIT
        assert seed.description == SEED_DESCRIPTION
        assert seed.balance_before == 0
        assert seed.balance_after == 1000
        assert seed.bank_details == {"account_number": "****1234", "account_holder": "Demo Account"}

    def test_seeded_zero_has_no_history(self) -> None:
        assert BalanceLedger.seeded(0).transactions == []

    def test_deposit(self) -> None:
        ledger = BalanceLedger.seeded(1000)
        rec = ledger.deposit(250, bank_details={"account_number": "****1234"})
        assert ledger.total_balance == 1250
        assert ledger.available_balance == 1250
        assert rec.balance_before == 1000
        assert rec.balance_after == 1250
        assert rec.status is TransactionStatus.COMPLETED
        assert rec.bank_details == {"account_number": "****1234"}
        assert ledger.transactions[0] is rec  # newest first

    @pytest.mark.parametrize("amount", [0, -5, 1.5, True, "10"])
    def test_deposit_rejects_invalid_amounts(self, amount) -> None:
        ledger = BalanceLedger.seeded(1000)
        with pytest.raises(InvalidAmountError):
            ledger.deposit(amount)
        assert ledger.total_balance == 1000
        assert len(ledger.transactions) == 1

    def test_transaction_ids_are_unique(self) -> None:
        ids = {generate_transaction_id() for _ in range(200)}
        assert len(ids) == 200
        assert all(i.startswith("BANK_") for i in ids)


# ---------------------------------------------------------------------------
# Hold / release / payment
# ---------------------------------------------------------------------------


class TestHold:
    def test_hold_moves_available_to_held(self) -> None:
        ledger = BalanceLedger.seeded(1000)
        rec = ledger.hold(300, "prod-1", "bid-1")
        assert ledger.total_balance == 1000
        assert ledger.held_amount == 300
        assert ledger.available_balance == 700
        assert ledger.held_transactions == 1
        assert rec.type is TransactionType.HOLD
        assert rec.status is TransactionStatus.HELD
        assert rec.product_id == "prod-1"
        assert rec.bid_id == "bid-1"
        assert rec.balance_before == rec.balance_after == 1000
        _assert_identity(ledger)

    def test_hold_exact_available(self) -> None:
        ledger = BalanceLedger.seeded(1000)
        ledger.hold(1000, "prod-1")
        assert ledger.available_balance == 0
        _assert_identity(ledger)

    def test_hold_insufficient_leaves_ledger_untouched(self) -> None:
        ledger = BalanceLedger.seeded(1000)
        ledger.hold(800, "prod-1")
        with pytest.raises(InsufficientBalanceError) as exc_info:
            ledger.hold(300, "prod-2")
        assert exc_info.value.available == 200
        assert exc_info.value.required == 300
        assert "Available: 200 ETB, Required: 300 ETB" in str(exc_info.value)
        assert ledger.held_amount == 800
        assert ledger.held_transactions == 1
        assert len(ledger.transactions) == 2

    def test_hold_records_expiry(self) -> None:
        ledger = BalanceLedger.seeded(1000)
        until = datetime(2030, 1, 1, tzinfo=timezone.utc)
        rec = ledger.hold(10, "prod-1", held_until=until)
        assert rec.held_until == until.isoformat()

    def test_hold_rejects_zero(self) -> None:
        ledger = BalanceLedger.seeded(1000)
        with pytest.raises(InvalidAmountError):
            ledger.hold(0, "prod-1")


class TestRelease:
    def test_release_restores_available(self) -> None:
        ledger = BalanceLedger.seeded(1000)
        hold = ledger.hold(300, "prod-1", "bid-1")
        rec = ledger.release(hold.id)
        assert ledger.total_balance == 1000
        assert ledger.held_amount == 0
        assert ledger.available_balance == 1000
        assert ledger.held_transactions == 0
        assert rec.type is TransactionType.RELEASE
        assert rec.amount == 300
        assert rec.related_transaction_id == hold.id
        assert rec.product_id == "prod-1"
        assert hold.status is TransactionStatus.RELEASED
        _assert_identity(ledger)

    def test_release_twice_fails(self) -> None:
        ledger = BalanceLedger.seeded(1000)
        hold = ledger.hold(300, "prod-1")
        ledger.release(hold.id)
        with pytest.raises(HoldNotFoundError) as exc_info:
            ledger.release(hold.id)
        assert "already released" in str(exc_info.value)
        assert ledger.available_balance == 1000

    def test_release_unknown_hold(self) -> None:
        ledger = BalanceLedger.seeded(1000)
        with pytest.raises(HoldNotFoundError):
            ledger.release("nope")

    def test_release_of_deposit_id_fails(self) -> None:
        ledger = BalanceLedger.seeded(1000)
        with pytest.raises(HoldNotFoundError):
            ledger.release(ledger.transactions[0].id)


class TestCompletePayment:
    def test_payment_deducts_total(self) -> None:
        ledger = BalanceLedger.seeded(1000)
        hold = ledger.hold(400, "prod-9", "bid-9")
        rec = ledger.complete_payment(hold.id)
        assert ledger.total_balance == 600
        assert ledger.held_amount == 0
        assert ledger.available_balance == 600
        assert ledger.held_transactions == 0
        assert rec.type is TransactionType.PAYMENT
        assert rec.balance_before == 1000
        assert rec.balance_after == 600
        assert rec.product_id == "prod-9"
        assert rec.related_transaction_id == hold.id
        assert hold.status is TransactionStatus.CONVERTED
        _assert_identity(ledger)

    def test_payment_after_release_fails(self) -> None:
        ledger = BalanceLedger.seeded(1000)
        hold = ledger.hold(400, "prod-9")
        ledger.release(hold.id)
        with pytest.raises(HoldNotFoundError):
            ledger.complete_payment(hold.id)
        assert ledger.total_balance == 1000

    def test_mixed_sequence_keeps_identity(self) -> None:
        ledger = BalanceLedger.seeded(1000)
        a = ledger.hold(100, "p1")
        b = ledger.hold(200, "p2")
        ledger.deposit(50)
        c = ledger.hold(300, "p3")
        ledger.release(a.id)
        ledger.complete_payment(b.id)
        assert ledger.total_balance == 850
        assert ledger.held_amount == 300
        assert ledger.held_transactions == 1
        assert ledger.open_holds() == [c]
        _assert_identity(ledger)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestQueries:
    def test_balance_info(self) -> None:
        ledger = BalanceLedger.seeded(1000)
        ledger.hold(250, "p1")
        assert ledger.balance_info().to_dict() == {
            "total_balance": 1000,
            "held_amount": 250,
            "available_balance": 750,
            "held_transactions": 1,
        }

    def test_history_pagination(self) -> None:
        ledger = BalanceLedger.seeded(1000)
        for _ in range(5):
            ledger.deposit(10)
        page = ledger.history(limit=4, offset=0)
        assert page.total == 6
        assert len(page.transactions) == 4
        assert page.has_more is True
        last = ledger.history(limit=4, offset=4)
        assert len(last.transactions) == 2
        assert last.has_more is False
        assert last.transactions[-1].description == SEED_DESCRIPTION

    def test_history_type_filter(self) -> None:
        ledger = BalanceLedger.seeded(1000)
        hold = ledger.hold(10, "p1")
        ledger.release(hold.id)
        page = ledger.history(type=TransactionType.HOLD)
        assert page.total == 1
        assert page.transactions[0].id == hold.id

    def test_expired_holds(self) -> None:
        ledger = BalanceLedger.seeded(1000)
        now = datetime(2030, 1, 10, tzinfo=timezone.utc)
        old = ledger.hold(10, "p1", held_until=now - timedelta(days=1))
        ledger.hold(10, "p2", held_until=now + timedelta(days=1))
        ledger.hold(10, "p3")  # no expiry
        assert ledger.expired_holds(now) == [old]

    def test_expired_holds_accepts_naive_now(self) -> None:
        ledger = BalanceLedger.seeded(1000)
        old = ledger.hold(10, "p1", held_until=datetime(2030, 1, 1, tzinfo=timezone.utc))
        ledger.hold(10, "p2", held_until=datetime(2030, 1, 20))
        assert ledger.expired_holds(datetime(2030, 1, 10)) == [old]

    def test_verify_detects_drift(self) -> None:
        ledger = BalanceLedger.seeded(1000)
        ledger.hold(100, "p1")
        ledger.held_amount = 50
        with pytest.raises(LedgerIntegrityError):
            ledger.verify()


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


class TestLedgerSerialization:
    def test_roundtrip(self) -> None:
        ledger = BalanceLedger.seeded(1000)
        hold = ledger.hold(300, "prod-1", "bid-1")
        ledger.deposit(20, bank_details={"account_number": "****9999", "account_holder": "Abebe"})
        restored = BalanceLedger.from_json(ledger.to_json())
        assert restored.balance_info() == ledger.balance_info()
        assert [r.id for r in restored.transactions] == [r.id for r in ledger.transactions]
        assert restored.get_transaction(hold.id).status is TransactionStatus.HELD
        assert restored.transactions[0].bank_details["account_holder"] == "Abebe"

    def test_schema_version(self) -> None:
        obj = json.loads(BalanceLedger().to_json())
        assert obj["v"] == 1

    def test_from_json_corrupt_data(self) -> None:
        assert BalanceLedger.from_json("not json at all").total_balance == 0

    def test_from_json_none(self) -> None:
        restored = BalanceLedger.from_json(None)  # type: ignore[arg-type]
        assert restored.total_balance == 0

    def test_from_json_non_dict(self) -> None:
        assert BalanceLedger.from_json("[1, 2]").transactions == []

    def test_from_json_non_numeric_balance(self) -> None:
        assert BalanceLedger.from_json('{"total_balance": "lots"}').total_balance == 0

    def test_from_json_accepts_camel_case_keys(self) -> None:
        data = json.dumps({"totalBalance": 1500, "heldAmount": 0, "availableBalance": 1500})
        restored = BalanceLedger.from_json(data)
        assert restored.total_balance == 1500
        assert restored.available_balance == 1500

    def test_from_json_rebuilds_held_counters(self) -> None:
        ledger = BalanceLedger.seeded(1000)
        ledger.hold(300, "p1")
        obj = json.loads(ledger.to_json())
        obj["held_amount"] = 999
        obj["held_transactions"] = 7
        restored = BalanceLedger.from_json(json.dumps(obj))
        assert restored.held_amount == 300
        assert restored.held_transactions == 1
        restored.verify()

    def test_from_json_skips_unknown_record_types(self) -> None:
        obj = json.loads(BalanceLedger.seeded(1000).to_json())
        obj["transactions"].append({"id": "x", "type": "COMMISSION", "amount": 5})
        restored = BalanceLedger.from_json(json.dumps(obj))
        assert len(restored.transactions) == 1

    def test_from_json_rejects_held_above_total(self) -> None:
        ledger = BalanceLedger.seeded(1000)
        ledger.hold(800, "p1")
        obj = json.loads(ledger.to_json())
        obj["total_balance"] = 100
        assert BalanceLedger.from_json(json.dumps(obj)).total_balance == 0

    def test_record_from_dict_unknown_type_raises(self) -> None:
        with pytest.raises(ValueError):
            TransactionRecord.from_dict({"id": "x", "type": "BOGUS"})


# ---------------------------------------------------------------------------
# Browser demo data
# ---------------------------------------------------------------------------


def _legacy_payload() -> str:
    """Balance and history as the browser demo stored them (camelCase, holds left HELD)."""
    return json.dumps({
        "totalBalance": 700,
        "heldAmount": 200,
        "availableBalance": 500,
        "heldTransactions": 1,
        "transactions": [
            {"id": "h3", "type": "HOLD", "amount": 200, "status": "HELD",
             "productId": "p3", "bidId": "b3", "timestamp": "2025-06-03T10:00:00.000Z",
             "balanceBefore": 700, "balanceAfter": 700},
            {"id": "pay2", "type": "PAYMENT", "amount": 300, "status": "COMPLETED",
             "relatedTransactionId": "h2", "productId": "p2",
             "timestamp": "2025-06-02T12:00:00.000Z",
             "balanceBefore": 1000, "balanceAfter": 700},
            {"id": "h2", "type": "HOLD", "amount": 300, "status": "HELD",
             "productId": "p2", "bidId": "b2", "timestamp": "2025-06-02T10:00:00.000Z",
             "balanceBefore": 1000, "balanceAfter": 1000},
            {"id": "r1", "type": "RELEASE", "amount": 300, "status": "COMPLETED",
             "relatedTransactionId": "h1", "timestamp": "2025-06-01T12:00:00.000Z",
             "balanceBefore": 1000, "balanceAfter": 1000},
            {"id": "h1", "type": "HOLD", "amount": 300, "status": "HELD",
             "productId": "p1", "bidId": "b1", "timestamp": "2025-06-01T10:00:00.000Z",
             "balanceBefore": 1000, "balanceAfter": 1000},
            {"id": "d0", "type": "DEPOSIT", "amount": 1000, "status": "COMPLETED",
             "description": "Demo starting balance", "timestamp": "2025-06-01T09:00:00.000Z",
             "balanceBefore": 0, "balanceAfter": 1000,
             "bankDetails": {"accountNumber": "****1234", "accountHolder": "Demo Account"}},
        ],
    })


class TestLegacyData:
    def test_record_fields_are_mapped(self) -> None:
        ledger = BalanceLedger.from_json(_legacy_payload())
        hold = ledger.get_transaction("h1")
        assert hold.product_id == "p1"
        assert hold.bid_id == "b1"
        payment = ledger.get_transaction("pay2")
        assert payment.related_transaction_id == "h2"
        assert payment.balance_before == 1000
        assert payment.balance_after == 700
        seed = ledger.get_transaction("d0")
        assert seed.bank_details == {"account_number": "****1234", "account_holder": "Demo Account"}

    def test_settled_holds_are_closed(self) -> None:
        ledger = BalanceLedger.from_json(_legacy_payload())
        assert ledger.get_transaction("h1").status is TransactionStatus.RELEASED
        assert ledger.get_transaction("h2").status is TransactionStatus.CONVERTED
        assert ledger.get_transaction("h3").status is TransactionStatus.HELD
        assert ledger.balance_info().to_dict() == {
            "total_balance": 700,
            "held_amount": 200,
            "available_balance": 500,
            "held_transactions": 1,
        }
        ledger.verify()

    def test_closed_holds_cannot_be_released_again(self) -> None:
        ledger = BalanceLedger.from_json(_legacy_payload())
        with pytest.raises(HoldNotFoundError):
            ledger.release("h1")
        ledger.release("h3")
        assert ledger.available_balance == 700

    def test_legacy_roundtrip_uses_current_keys(self) -> None:
        ledger = BalanceLedger.from_json(_legacy_payload())
        obj = json.loads(ledger.to_json())
        assert obj["v"] == 1
        assert obj["held_amount"] == 200
        assert BalanceLedger.from_json(ledger.to_json()).balance_info() == ledger.balance_info()
