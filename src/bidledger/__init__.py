"""bidledger: demo balance ledger for auction bidding.

Tracks total/held/available balance per user, holds funds against bids,
releases or converts holds, and persists ledgers through a pluggable
storage backend.
"""

__version__ = "0.1.0"

from bidledger.config import LedgerConfig
from bidledger.constants import TransactionStatus, TransactionType, DEMO_SEED_BALANCE
from bidledger.events import BalanceEvent, BalanceEventBus, BalanceEventType
from bidledger.ledger import (
    BalanceInfo,
    BalanceLedger,
    HoldNotFoundError,
    InsufficientBalanceError,
    InvalidAmountError,
    LedgerError,
    LedgerIntegrityError,
    TransactionRecord,
)
from bidledger.ledger_cache import LedgerCache, LedgerUnavailableError
from bidledger.store_backend import StorageBackend
from bidledger.stores import FileStore, HttpStore, StoreError

__all__ = [
    "LedgerConfig",
    "TransactionStatus",
    "TransactionType",
    "DEMO_SEED_BALANCE",
    "BalanceEvent",
    "BalanceEventBus",
    "BalanceEventType",
    "BalanceInfo",
    "BalanceLedger",
    "HoldNotFoundError",
    "InsufficientBalanceError",
    "InvalidAmountError",
    "LedgerError",
    "LedgerIntegrityError",
    "TransactionRecord",
    "LedgerCache",
    "LedgerUnavailableError",
    "StorageBackend",
    "FileStore",
    "HttpStore",
    "StoreError",
]
