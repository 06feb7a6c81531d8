"""
Heartbeat AVS liveness - proof-of-life tracking and slashing for operators.

Provides:
- LivenessLedger: authoritative registration, proofs and penalties
- classify / is_penalty_due: the shared liveness policy
- LivenessMonitor: polled replica with alert hysteresis and remediation
- Alert sinks (Telegram, logging, in-memory)
- ProofAgent: periodic proof submitter for one operator
"""

from .policy import LivenessStatus, classify, is_penalty_due, penalty_deadline
from .models import (
    OperatorRecord,
    PenaltyOutcome,
    OperatorRegistered,
    ProofSubmitted,
    PenaltyApplied,
    OperatorDeregistered,
    OperatorStatusCache,
    MonitorState,
    normalize_operator,
)
from .config import (
    HBAVSConfig,
    LedgerConfig,
    MonitorConfig,
    AlertsConfig,
    AgentConfig,
    RemediationMode,
    get_config,
    set_config,
    reset_config,
)
from .hooks import LedgerHooks, NullHooks, LoggingHooks, RecordingHooks
from .ledger import (
    LivenessLedger,
    LedgerError,
    NotEligible,
    PenaltyNotDue,
    PenaltyAlreadyApplied,
    PenaltyAuthorityError,
    PenaltyAuthority,
    RecordingPenaltyAuthority,
)
from .alerts import (
    AlertSink,
    LoggingAlertSink,
    MemoryAlertSink,
    TelegramAlertSink,
    create_alert_sink,
)
from .observability import MonitorMetrics
from .report import StatusReport, OperatorStatusView, format_time_ago, render_status_report
from .monitor import (
    LivenessMonitor,
    MonitorStartupError,
    TransitionAction,
    TRANSITIONS,
)
from .agent import ProofAgent
