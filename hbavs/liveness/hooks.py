"""
Ledger Hooks - Observer pattern for ledger events.

The ledger notifies hooks after a mutation has committed. Hook exceptions
are caught and logged by the ledger, never propagated, so an observer can
not roll back or block a proof or a penalty.
"""

from __future__ import annotations

import logging
from typing import List, Protocol

from .models import LedgerEvent, OperatorDeregistered, PenaltyApplied, ProofSubmitted

logger = logging.getLogger(__name__)


class LedgerHooks(Protocol):
    """Protocol for ledger event hooks. Called synchronously, after commit."""

    def on_event(self, event: LedgerEvent) -> None:
        ...


class NullHooks:
    """No-op hooks implementation."""

    def on_event(self, event: LedgerEvent) -> None:
        pass


class LoggingHooks:
    """Hooks that log every ledger event."""

    def __init__(self, log_level: int = logging.INFO):
        self._level = log_level

    def on_event(self, event: LedgerEvent) -> None:
        if isinstance(event, ProofSubmitted):
            logger.log(
                self._level,
                f"[HOOK] Proof: operator={event.operator_id}, ts={event.timestamp}, note={event.note!r}",
            )
        elif isinstance(event, PenaltyApplied):
            logger.log(
                self._level,
                f"[HOOK] Penalty: operator={event.operator_id}, "
                f"missed_proof={event.missed_proof_time}, count={event.penalty_count}",
            )
        elif isinstance(event, OperatorDeregistered):
            logger.log(
                self._level,
                f"[HOOK] Deregistered: operator={event.operator_id}, count={event.penalty_count}",
            )
        else:
            logger.log(self._level, f"[HOOK] {type(event).__name__}: operator={event.operator_id}")


class RecordingHooks:
    """Collects events in order."""

    def __init__(self) -> None:
        self.events: List[LedgerEvent] = []

    def on_event(self, event: LedgerEvent) -> None:
        self.events.append(event)
