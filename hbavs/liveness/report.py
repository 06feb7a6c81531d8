"""
Alert texts and the multi-operator status report (Telegram Markdown).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .models import PenaltyOutcome
from .policy import LivenessStatus

_STATUS_ICONS = {
    LivenessStatus.NEVER_PROVED: "ℹ️",
    LivenessStatus.HEALTHY: "✅",
    LivenessStatus.WARNING: "⚠️",
    LivenessStatus.OVERDUE: "🚨",
    LivenessStatus.ERROR: "❓",
}


def format_time_ago(seconds: Optional[float]) -> str:
    """75 -> "1m 15s ago", 3665 -> "1h 1m ago"."""
    if seconds is None or seconds < 0:
        return "invalid time"
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s ago"
    if seconds < 3600:
        return f"{seconds // 60}m {seconds % 60}s ago"
    return f"{seconds // 3600}h {(seconds % 3600) // 60}m ago"


# =============================================================================
# Event Alerts
# =============================================================================

def new_operator_message(operator: str) -> str:
    return f"ℹ️ New Operator Detected: `{operator}`\nMonitoring started. Waiting for first proof."


def first_proof_message(operator: str, age: int) -> str:
    return f"✅ First Proof Received: `{operator}` (proof was {format_time_ago(age)})"


def warning_message(operator: str, last_proof_time: int, age: int, interval: int, grace: int) -> str:
    return (
        "⚠️ *Operator Warning* ⚠️\n"
        f"Operator: `{operator}`\n"
        f"Last Proof: {format_time_ago(age)} (Timestamp: {last_proof_time})\n"
        f"Required Interval: {interval}s\n"
        f"Status: Currently in grace period ({grace}s)."
    )


def recovered_message(operator: str, age: int) -> str:
    return f"✅ Operator Recovered: `{operator}`\nProof received {format_time_ago(age)}."


def overdue_message(operator: str, last_proof_time: int, age: int, deadline: int, penalize: bool) -> str:
    action = "Submitting penalty." if penalize else "Automatic penalty disabled; manual action required."
    return (
        "🚨 *Operator Overdue* 🚨\n"
        f"Operator: `{operator}`\n"
        f"Last Proof: {format_time_ago(age)} (Timestamp: {last_proof_time})\n"
        f"Penalty deadline {deadline} has passed. {action}"
    )


def penalty_applied_message(outcome: PenaltyOutcome) -> str:
    text = (
        f"⚖️ Penalty Applied: `{outcome.operator_id}`\n"
        f"Missed proof window from {outcome.missed_proof_time}. Penalty count: {outcome.penalty_count}."
    )
    if outcome.deregistered:
        text += "\nOperator has been *deregistered*."
    return text


def penalty_failed_message(operator: str, reason: str) -> str:
    return f"❌ Penalty Failed: `{operator}`\n{reason}\nNot retried; next cycle will re-evaluate."


def penalty_skipped_message(operator: str) -> str:
    return f"ℹ️ Penalty Skipped: `{operator}` is not registered."


def read_error_message(operator: str) -> str:
    return f"🚨 Monitor Error: Failed to check status for operator `{operator}`. Check monitor logs."


def cycle_error_message() -> str:
    return "🚨 Monitor Error: Could not read ledger time; check cycle aborted. Check monitor logs."


def startup_failed_message() -> str:
    return "🚨 Monitor Error: Failed to fetch ledger constants (interval/grace). Shutting down."


def started_message(operator_count: int, interval: int, grace: int, mode: str) -> str:
    return (
        "✅ *Liveness Monitor Started*\n"
        f"Monitoring {operator_count} operators.\n"
        f"Interval: {interval}s, Grace: {grace}s, Remediation: {mode}."
    )


def shutdown_message(reason: str) -> str:
    return f"🛑 Liveness Monitor shutting down ({reason})."


# =============================================================================
# Status Report
# =============================================================================

@dataclass(frozen=True)
class OperatorStatusView:
    """One row of the status report."""
    operator_id: str
    status: Optional[LivenessStatus]  # None: never observed
    proof_age: Optional[int]
    last_checked_age: Optional[int]
    ever_proved: bool
    last_proof_time: int = 0
    last_observation_time: int = 0
    penalty_count: int = 0
    registered: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operator_id": self.operator_id,
            "status": self.status.value if self.status else "unknown",
            "proof_age": self.proof_age,
            "last_checked_age": self.last_checked_age,
            "ever_proved": self.ever_proved,
            "last_proof_time": self.last_proof_time,
            "last_observation_time": self.last_observation_time,
            "penalty_count": self.penalty_count,
            "registered": self.registered,
        }


@dataclass(frozen=True)
class StatusReport:
    """Snapshot of every monitored operator as seen by the monitor."""
    now: Optional[int]
    stale: bool
    interval: int
    grace: int
    rows: List[OperatorStatusView] = field(default_factory=list)
    generated_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "now": self.now,
            "stale": self.stale,
            "interval": self.interval,
            "grace": self.grace,
            "generated_at": self.generated_at,
            "operators": [row.to_dict() for row in self.rows],
        }


def render_status_report(report: StatusReport) -> str:
    """Render a report as one Markdown message."""
    generated = datetime.fromtimestamp(report.generated_at).strftime("%Y-%m-%d %H:%M:%S")
    lines = ["*Heartbeat AVS Status Report*", f"_({generated})_", ""]
    if report.stale:
        lines.append("⚠️ _Live ledger time unavailable; showing the last successful check cycle._")
    lines.append(f"*Required Interval:* {report.interval}s")
    lines.append(f"*Grace Period:* {report.grace}s")
    lines.append(f"*Total Monitored Operators:* {len(report.rows)}")
    chain_time = report.now if report.now is not None else "_Unavailable_"
    lines.append(f"*Current Chain Timestamp:* {chain_time}")
    lines.append("------------------------------------")
    lines.append("")

    if not report.rows:
        lines.append("_No operators are currently configured for monitoring._")
        return "\n".join(lines)

    for row in report.rows:
        lines.append(f"*Operator:* `{row.operator_id}`")
        if row.status is None:
            lines.append("  Status: ❓ Unknown (not checked yet)")
        elif row.status is LivenessStatus.ERROR:
            lines.append("  Status: ❓ Error during last check")
        else:
            label = row.status.value.replace("_", " ").upper()
            lines.append(f"  Status: {_STATUS_ICONS[row.status]} {label}")

        if row.status is not None:
            if row.ever_proved:
                if row.proof_age is not None:
                    lines.append(f"  Last Proof: {format_time_ago(row.proof_age)} (Timestamp: {row.last_proof_time})")
                else:
                    lines.append(f"  Last Proof Timestamp: {row.last_proof_time}")
            else:
                lines.append("  Last Proof: Never")
            if row.last_checked_age is not None:
                lines.append(
                    f"  Last Checked: {format_time_ago(row.last_checked_age)} (at {row.last_observation_time})"
                )
            if row.registered is not None:
                registration = "registered" if row.registered else "deregistered"
                lines.append(f"  Penalties: {row.penalty_count} ({registration})")
        lines.append("")

    return "\n".join(lines).rstrip() + "\n"
