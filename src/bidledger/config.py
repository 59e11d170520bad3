"""Ledger configuration: plain frozen dataclass, no pydantic.

The host application constructs this from its own settings (env vars,
CLI flags, etc.) and passes it to the balance tools.
"""

from dataclasses import dataclass

from bidledger.constants import (
    CURRENCY,
    DEMO_SEED_BALANCE,
    DEPOSIT_FAILURE_RATE,
    HOLD_DURATION_DAYS,
    LOW_BALANCE_FLOOR,
    MAX_DEPOSIT,
    MIN_DEPOSIT,
)


@dataclass(frozen=True)
class LedgerConfig:
    seed_balance: int = DEMO_SEED_BALANCE
    min_deposit: int = MIN_DEPOSIT
    max_deposit: int = MAX_DEPOSIT
    deposit_failure_rate: float = DEPOSIT_FAILURE_RATE
    hold_duration_days: int = HOLD_DURATION_DAYS
    low_balance_floor: int = LOW_BALANCE_FLOOR
    currency: str = CURRENCY
    cache_maxsize: int = 20
    flush_interval_secs: int = 60
