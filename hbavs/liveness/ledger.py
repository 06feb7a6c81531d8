"""
Liveness Ledger - authoritative liveness and slashing state.

Provides:
1. Operator registration (clears penalties, keeps proof history)
2. Proof-of-life submission
3. Penalty application with escalation to deregistration
4. Reads of per-operator state and the global thresholds
5. JSON snapshot persistence

Per-operator state machine:

    Unregistered --register--> Registered --submit_proof--> Registered
    Registered (now > last + interval + grace) --apply_penalty--> Registered
    Registered (penalty_count reaches threshold) --> Deregistered
    Deregistered --register--> Registered (penalty_count = 0)

Every mutation runs under one lock and either fully commits or raises with
no state change: the snapshot is written from the updated records before
they replace the in-memory ones, and the penalty authority is called after
the write (a failed slash restores the previous snapshot). Events are
delivered to hooks only after commit.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from collections import deque
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol, Union

from .hooks import LedgerHooks, NullHooks
from .models import (
    LedgerEvent,
    OperatorDeregistered,
    OperatorRecord,
    OperatorRegistered,
    PenaltyApplied,
    PenaltyOutcome,
    ProofSubmitted,
    normalize_operator,
)
from .policy import is_penalty_due, penalty_deadline

logger = logging.getLogger(__name__)

DEFAULT_ESCALATION_THRESHOLD = 3
SNAPSHOT_VERSION = 1
MAX_EVENT_LOG = 10_000


# =============================================================================
# Errors
# =============================================================================

class LedgerError(Exception):
    """Base class for ledger precondition failures."""
    code = "ledger_error"

    def __init__(self, operator_id: str, message: str):
        self.operator_id = operator_id
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "operator_id": self.operator_id, "message": str(self)}


class NotEligible(LedgerError):
    """Operator is not registered."""
    code = "not_eligible"

    def __init__(self, operator_id: str):
        super().__init__(operator_id, f"Operator {operator_id} is not registered")


class PenaltyNotDue(LedgerError):
    """Penalty requested at or before ``expected`` (last proof + interval + grace)."""
    code = "penalty_not_due"

    def __init__(self, operator_id: str, expected: int):
        self.expected = expected
        super().__init__(operator_id, f"Penalty for {operator_id} not due until after {expected}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["expected"] = self.expected
        return data


class PenaltyAlreadyApplied(LedgerError):
    """The missed window ending at ``missed_proof_time`` was already penalized."""
    code = "penalty_already_applied"

    def __init__(self, operator_id: str, missed_proof_time: int):
        self.missed_proof_time = missed_proof_time
        super().__init__(
            operator_id,
            f"Operator {operator_id} already penalized for proof window starting {missed_proof_time}",
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["missed_proof_time"] = self.missed_proof_time
        return data


class PenaltyAuthorityError(LedgerError):
    """The external penalty authority failed; the penalty was rolled back."""
    code = "penalty_authority_failed"

    def __init__(self, operator_id: str, reason: str):
        self.reason = reason
        super().__init__(operator_id, f"Penalty authority failed for {operator_id}: {reason}")


# =============================================================================
# External Penalty Authority
# =============================================================================

class PenaltyAuthority(Protocol):
    """Staking-layer capability that applies the economic penalty.

    Must raise to signal failure; the ledger then rolls the penalty back.
    """

    def slash(self, operator_id: str) -> None:
        ...


class RecordingPenaltyAuthority:
    """Authority that records slashes locally instead of moving stake."""

    def __init__(self) -> None:
        self.slashed: List[str] = []

    def slash(self, operator_id: str) -> None:
        logger.warning(f"Slashing operator {operator_id}")
        self.slashed.append(operator_id)


# =============================================================================
# Ledger
# =============================================================================

def _wall_clock() -> int:
    return int(time.time())


class LivenessLedger:
    """
    Authoritative per-operator liveness record.

    Example:
        ledger = LivenessLedger(interval=30, grace=10, authority=RecordingPenaltyAuthority())
        ledger.register("0xabc")
        ledger.submit_proof("0xabc", "ok")
    """

    def __init__(
        self,
        interval: int,
        grace: int,
        authority: PenaltyAuthority,
        *,
        clock: Callable[[], int] = _wall_clock,
        hooks: Optional[LedgerHooks] = None,
        escalation_threshold: int = DEFAULT_ESCALATION_THRESHOLD,
        one_penalty_per_window: bool = False,
        snapshot_path: Optional[Union[str, Path]] = None,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        if grace < 0:
            raise ValueError("grace must be non-negative")
        if escalation_threshold <= 0:
            raise ValueError("escalation_threshold must be positive")

        self._interval = int(interval)
        self._grace = int(grace)
        self._authority = authority
        self._clock = clock
        self._hooks: LedgerHooks = hooks or NullHooks()
        self._escalation_threshold = escalation_threshold
        self._one_penalty_per_window = one_penalty_per_window
        self._snapshot_path = Path(snapshot_path) if snapshot_path else None

        self._records: Dict[str, OperatorRecord] = {}
        self._events: Deque[LedgerEvent] = deque(maxlen=MAX_EVENT_LOG)
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @property
    def interval(self) -> int:
        return self._interval

    @property
    def grace(self) -> int:
        return self._grace

    @property
    def escalation_threshold(self) -> int:
        return self._escalation_threshold

    def chain_time(self) -> int:
        """Current ledger time in seconds."""
        return int(self._clock())

    def get_operator(self, operator: str) -> OperatorRecord:
        """Copy of the operator's record; unknown operators read as zero."""
        op = normalize_operator(operator)
        with self._lock:
            record = self._records.get(op)
            return replace(record) if record else OperatorRecord(operator_id=op)

    def last_proof_time(self, operator: str) -> int:
        return self.get_operator(operator).last_proof_time

    def penalty_count(self, operator: str) -> int:
        return self.get_operator(operator).penalty_count

    def is_registered(self, operator: str) -> bool:
        return self.get_operator(operator).registered

    def operators(self) -> List[str]:
        with self._lock:
            return sorted(self._records)

    def events(self) -> List[LedgerEvent]:
        with self._lock:
            return list(self._events)

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def register(self, operator: str) -> OperatorRecord:
        """Mark operator eligible and clear its penalties.

        Idempotent. Only a snapshot write failure (OSError) can make it raise.
        """
        op = normalize_operator(operator)
        with self._lock:
            now = self.chain_time()
            record = self._records.get(op) or OperatorRecord(operator_id=op)
            updated = replace(
                record,
                registered=True,
                penalty_count=0,
                last_penalized_proof_time=None,
            )
            self._records = self._persist_locked(updated)
            result = replace(updated)

        logger.info(f"Operator {op} registered")
        self._emit([OperatorRegistered(operator_id=op, timestamp=now)])
        return result

    def submit_proof(self, operator: str, note: str = "") -> int:
        """Record a proof of life at the current ledger time.

        Raises:
            NotEligible: operator is not registered
        """
        op = normalize_operator(operator)
        with self._lock:
            record = self._records.get(op)
            if record is None or not record.registered:
                raise NotEligible(op)
            now = self.chain_time()
            # Time never runs backwards on the record even if the clock does.
            timestamp = max(now, record.last_proof_time)
            self._records = self._persist_locked(replace(record, last_proof_time=timestamp))

        logger.debug(f"Proof from {op} at {timestamp}")
        self._emit([ProofSubmitted(operator_id=op, timestamp=timestamp, note=note)])
        return timestamp

    def apply_penalty(self, operator: str) -> PenaltyOutcome:
        """Penalize an operator whose proof deadline has passed.

        Raises:
            NotEligible: operator is not registered
            PenaltyNotDue: now <= last_proof_time + interval + grace
            PenaltyAlreadyApplied: per-window rule enabled and window already penalized
            PenaltyAuthorityError: authority failed; nothing was changed
        """
        op = normalize_operator(operator)
        with self._lock:
            record = self._records.get(op)
            if record is None or not record.registered:
                raise NotEligible(op)

            now = self.chain_time()
            missed = record.last_proof_time
            if not is_penalty_due(now, missed, self._interval, self._grace):
                raise PenaltyNotDue(op, penalty_deadline(missed, self._interval, self._grace))

            if self._one_penalty_per_window and record.last_penalized_proof_time == missed:
                raise PenaltyAlreadyApplied(op, missed)

            new_count = record.penalty_count + 1
            deregister = new_count >= self._escalation_threshold
            records = self._persist_locked(replace(
                record,
                penalty_count=new_count,
                registered=not deregister,
                last_penalized_proof_time=missed,
            ))

            try:
                self._authority.slash(op)
            except Exception as exc:
                logger.error(f"Penalty authority failed for {op}; penalty rolled back: {exc}")
                self._restore_snapshot_locked()
                raise PenaltyAuthorityError(op, str(exc)) from exc

            self._records = records

        events: List[LedgerEvent] = [
            PenaltyApplied(operator_id=op, missed_proof_time=missed, penalty_count=new_count, timestamp=now)
        ]
        if deregister:
            logger.warning(f"Operator {op} deregistered after {new_count} penalties")
            events.append(OperatorDeregistered(operator_id=op, penalty_count=new_count, timestamp=now))
        else:
            logger.warning(f"Operator {op} penalized ({new_count}/{self._escalation_threshold})")
        self._emit(events)

        return PenaltyOutcome(
            operator_id=op,
            penalty_count=new_count,
            deregistered=deregister,
            missed_proof_time=missed,
        )

    def _emit(self, events: List[LedgerEvent]) -> None:
        with self._lock:
            self._events.extend(events)
        for event in events:
            try:
                self._hooks.on_event(event)
            except Exception:
                logger.exception(f"Ledger hook failed for {type(event).__name__}")

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return self._to_dict_locked()

    def _to_dict_locked(self, records: Optional[Dict[str, OperatorRecord]] = None) -> Dict[str, Any]:
        if records is None:
            records = self._records
        return {
            "version": SNAPSHOT_VERSION,
            "interval": self._interval,
            "grace": self._grace,
            "escalation_threshold": self._escalation_threshold,
            "operators": [records[op].to_dict() for op in sorted(records)],
        }

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        authority: PenaltyAuthority,
        **kwargs: Any,
    ) -> "LivenessLedger":
        version = data.get("version")
        if version != SNAPSHOT_VERSION:
            raise ValueError(f"Unsupported ledger snapshot version: {version}")
        ledger = cls(
            interval=int(data["interval"]),
            grace=int(data["grace"]),
            authority=authority,
            escalation_threshold=int(data.get("escalation_threshold", DEFAULT_ESCALATION_THRESHOLD)),
            **kwargs,
        )
        for item in data.get("operators", []):
            record = OperatorRecord.from_dict(item)
            ledger._records[record.operator_id] = record
        return ledger

    def save(self, path: Union[str, Path]) -> None:
        """Write a snapshot atomically."""
        with self._lock:
            self._write_snapshot(Path(path), self._to_dict_locked())

    @classmethod
    def load(
        cls,
        path: Union[str, Path],
        authority: PenaltyAuthority,
        **kwargs: Any,
    ) -> "LivenessLedger":
        data = json.loads(Path(path).read_text())
        return cls.from_dict(data, authority, **kwargs)

    def _persist_locked(self, record: OperatorRecord) -> Dict[str, OperatorRecord]:
        """Write a snapshot with ``record`` applied and return the new records.

        The caller installs the returned dict; a failed write leaves
        ``self._records`` untouched.
        """
        records = dict(self._records)
        records[record.operator_id] = record
        if self._snapshot_path is not None:
            self._write_snapshot(self._snapshot_path, self._to_dict_locked(records))
        return records

    def _restore_snapshot_locked(self) -> None:
        if self._snapshot_path is None:
            return
        try:
            self._write_snapshot(self._snapshot_path, self._to_dict_locked())
        except OSError:
            logger.exception(f"Could not restore ledger snapshot at {self._snapshot_path}")

    @staticmethod
    def _write_snapshot(path: Path, data: Dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(data, handle, indent=2, sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
