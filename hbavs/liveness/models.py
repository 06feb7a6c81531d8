"""
Liveness data model.

Ledger side (authoritative):
- OperatorRecord: last proof time, registration flag, penalty count
- Ledger events emitted after a mutation commits
- PenaltyOutcome returned by a successful penalty

Monitor side (advisory replica):
- OperatorStatusCache: last derived status per operator
- MonitorState: the cycle's explicit state object
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from .policy import LivenessStatus


def normalize_operator(operator: str) -> str:
    """Operator ids are address-like and compared case-insensitively."""
    if not isinstance(operator, str) or not operator.strip():
        raise ValueError("operator id must be a non-empty string")
    return operator.strip().lower()


# =============================================================================
# Ledger Records
# =============================================================================

@dataclass
class OperatorRecord:
    """Authoritative per-operator liveness state."""
    operator_id: str
    last_proof_time: int = 0
    registered: bool = False
    penalty_count: int = 0
    last_penalized_proof_time: Optional[int] = None

    def __post_init__(self) -> None:
        if self.last_proof_time < 0:
            raise ValueError("last_proof_time must be non-negative")
        if self.penalty_count < 0:
            raise ValueError("penalty_count must be non-negative")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operator_id": self.operator_id,
            "last_proof_time": self.last_proof_time,
            "registered": self.registered,
            "penalty_count": self.penalty_count,
            "last_penalized_proof_time": self.last_penalized_proof_time,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OperatorRecord":
        return cls(
            operator_id=normalize_operator(data["operator_id"]),
            last_proof_time=int(data.get("last_proof_time", 0)),
            registered=bool(data.get("registered", False)),
            penalty_count=int(data.get("penalty_count", 0)),
            last_penalized_proof_time=data.get("last_penalized_proof_time"),
        )


@dataclass(frozen=True)
class PenaltyOutcome:
    """Result of a successful penalty application."""
    operator_id: str
    penalty_count: int
    deregistered: bool
    missed_proof_time: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operator_id": self.operator_id,
            "penalty_count": self.penalty_count,
            "deregistered": self.deregistered,
            "missed_proof_time": self.missed_proof_time,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PenaltyOutcome":
        return cls(
            operator_id=data["operator_id"],
            penalty_count=int(data["penalty_count"]),
            deregistered=bool(data["deregistered"]),
            missed_proof_time=int(data["missed_proof_time"]),
        )


# =============================================================================
# Ledger Events
# =============================================================================

@dataclass(frozen=True)
class OperatorRegistered:
    operator_id: str
    timestamp: int


@dataclass(frozen=True)
class ProofSubmitted:
    operator_id: str
    timestamp: int
    note: str


@dataclass(frozen=True)
class PenaltyApplied:
    operator_id: str
    missed_proof_time: int
    penalty_count: int
    timestamp: int


@dataclass(frozen=True)
class OperatorDeregistered:
    operator_id: str
    penalty_count: int
    timestamp: int


LedgerEvent = Union[OperatorRegistered, ProofSubmitted, PenaltyApplied, OperatorDeregistered]


# =============================================================================
# Monitor Replica
# =============================================================================

@dataclass
class OperatorStatusCache:
    """
    Monitor's off-chain view of one operator.

    Advisory only: may lag the ledger by one polling cycle and never feeds
    back into ledger state. Chain-time fields are ledger seconds; the
    ``*_at`` fields are monitor wall-clock seconds.

    ``last_observation_time`` is 0 until a read succeeds. While ``status`` is
    ERROR, ``status_before_error`` holds the status the failure interrupted.
    """
    operator_id: str
    status: LivenessStatus = LivenessStatus.NEVER_PROVED
    last_known_proof_time: int = 0
    last_observation_time: int = 0
    status_before_error: Optional[LivenessStatus] = None
    last_warning_sent_at: Optional[float] = None
    last_error_alert_at: Optional[float] = None
    remediated_proof_time: Optional[int] = None
    penalty_count: int = 0
    registered: Optional[bool] = None

    @property
    def ever_proved(self) -> bool:
        return self.last_known_proof_time > 0


@dataclass
class MonitorState:
    """Explicit state threaded through monitor cycles."""
    operators: Dict[str, OperatorStatusCache] = field(default_factory=dict)
    last_snapshot: Optional[int] = None
    last_cycle_at: Optional[float] = None
    cycles_completed: int = 0
