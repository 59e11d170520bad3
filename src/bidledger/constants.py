"""Constants for the demo balance ledger."""

from enum import Enum


DEMO_SEED_BALANCE = 1_000  # starting balance for a brand-new ledger
MIN_DEPOSIT = 10
MAX_DEPOSIT = 100_000  # per bank transfer
HOLD_DURATION_DAYS = 7
LOW_BALANCE_FLOOR = 100  # below this the balance status is "low"
DEPOSIT_FAILURE_RATE = 0.02  # simulated bank transfer failures
CURRENCY = "ETB"

SEED_DESCRIPTION = "Demo starting balance"
SEED_BANK_DETAILS = {"account_number": "****1234", "account_holder": "Demo Account"}


class TransactionType(str, Enum):
    """Kinds of ledger entries."""

    DEPOSIT = "DEPOSIT"
    HOLD = "HOLD"
    RELEASE = "RELEASE"
    PAYMENT = "PAYMENT"


class TransactionStatus(str, Enum):
    """Record status. Only HOLD records ever leave their initial status."""

    COMPLETED = "COMPLETED"
    HELD = "HELD"
    RELEASED = "RELEASED"
    CONVERTED = "CONVERTED"
