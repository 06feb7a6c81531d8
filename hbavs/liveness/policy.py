"""
Slashing policy - the single threshold function shared by ledger and monitor.

Given the same inputs the ledger's penalty check and the monitor's displayed
status always agree, because both go through ``classify``:

    age = now - last_proof_time

    last_proof_time == 0          -> NEVER_PROVED
    age <= interval               -> HEALTHY
    interval < age <= i + grace   -> WARNING
    age > interval + grace        -> OVERDUE   (penalty due)
"""

from __future__ import annotations

from enum import Enum


class LivenessStatus(Enum):
    """Derived health of an operator. ERROR is only produced by the monitor."""
    NEVER_PROVED = "never_proved"
    HEALTHY = "healthy"
    WARNING = "warning"
    OVERDUE = "overdue"
    ERROR = "error"


def _check_thresholds(interval: int, grace: int) -> None:
    if interval < 0:
        raise ValueError(f"interval must be non-negative, got {interval}")
    if grace < 0:
        raise ValueError(f"grace must be non-negative, got {grace}")


def penalty_deadline(last_proof_time: int, interval: int, grace: int) -> int:
    """Last instant at which the operator is still not penalizable."""
    return last_proof_time + interval + grace


def classify(now: int, last_proof_time: int, interval: int, grace: int) -> LivenessStatus:
    """Classify an operator from chain time and its last proof time.

    Total and deterministic in its four arguments. A ``now`` earlier than
    the proof (reads taken from different blocks) counts as HEALTHY.
    """
    _check_thresholds(interval, grace)
    if last_proof_time == 0:
        return LivenessStatus.NEVER_PROVED
    age = now - last_proof_time
    if age <= interval:
        return LivenessStatus.HEALTHY
    if age <= interval + grace:
        return LivenessStatus.WARNING
    return LivenessStatus.OVERDUE


def is_penalty_due(now: int, last_proof_time: int, interval: int, grace: int) -> bool:
    """True iff ``now > last_proof_time + interval + grace``.

    An operator that never proved is penalizable once the deadline measured
    from time zero has passed, matching the ledger arithmetic.
    """
    _check_thresholds(interval, grace)
    if last_proof_time == 0:
        return now > penalty_deadline(0, interval, grace)
    return classify(now, last_proof_time, interval, grace) is LivenessStatus.OVERDUE
