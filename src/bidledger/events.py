"""Balance-update notifications.

A small publish/subscribe bus that lets a UI (or anything else) refresh
its view of a user's balance after a ledger operation. Delivery is
synchronous and fire-and-forget: a failing handler is logged and never
undoes or blocks the operation that published the event.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


class BalanceEventType(str, Enum):
    BALANCE_ADDED = "BALANCE_ADDED"
    BALANCE_HELD = "BALANCE_HELD"
    BALANCE_RELEASED = "BALANCE_RELEASED"
    PAYMENT_COMPLETED = "PAYMENT_COMPLETED"
    DATA_RESET = "DATA_RESET"


@dataclass(frozen=True)
class BalanceEvent:
    event_type: BalanceEventType
    user_id: str
    new_balance: int  # total balance after the operation
    amount: int = 0
    transaction_id: str | None = None
    product_id: str | None = None
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.event_type.value,
            "user_id": self.user_id,
            "amount": self.amount,
            "new_balance": self.new_balance,
            "transaction_id": self.transaction_id,
            "product_id": self.product_id,
            "timestamp": self.timestamp,
        }


BalanceHandler = Callable[[BalanceEvent], None]


class BalanceEventBus:
    """Dispatch BalanceEvents to per-type and catch-all handlers."""

    def __init__(self) -> None:
        self._handlers: dict[BalanceEventType, list[BalanceHandler]] = {}
        self._global_handlers: list[BalanceHandler] = []

    def subscribe(self, event_type: BalanceEventType, handler: BalanceHandler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    def subscribe_all(self, handler: BalanceHandler) -> None:
        self._global_handlers.append(handler)

    def unsubscribe(self, event_type: BalanceEventType, handler: BalanceHandler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def unsubscribe_all(self, handler: BalanceHandler) -> None:
        if handler in self._global_handlers:
            self._global_handlers.remove(handler)

    def publish(self, event: BalanceEvent) -> int:
        """Deliver ``event``; returns the number of handlers that succeeded."""
        logger.debug(
            "Publishing %s for %s (new balance %d).",
            event.event_type.value, event.user_id, event.new_balance,
        )
        delivered = 0
        for handler in [*self._handlers.get(event.event_type, []), *self._global_handlers]:
            try:
                handler(event)
                delivered += 1
            except Exception:
                logger.exception(
                    "Balance event handler %s failed for %s.",
                    getattr(handler, "__name__", repr(handler)),
                    event.event_type.value,
                )
        return delivered

    def handler_count(self, event_type: BalanceEventType | None = None) -> int:
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(h) for h in self._handlers.values()) + len(self._global_handlers)
