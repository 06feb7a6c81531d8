"""
Liveness Monitor - polled replica of the ledger's liveness state machine.

Each cycle:
1. Takes one ledger-time snapshot shared by every operator in the cycle
2. Reads every monitored operator concurrently (bounded, with timeouts)
3. Classifies with the same policy the ledger uses
4. Looks up (previous, current) in TRANSITIONS and performs the action

Alert hysteresis:
- A warning is sent on entering WARNING and resent only after
  ``warning_resend_seconds`` while the operator stays there.
- A read-failure alert is sent on entering ERROR and resent only after
  ``error_alert_cooldown_seconds``.
- ERROR is not a transition endpoint. The cache keeps the status a read
  failure interrupted, and the next good read is evaluated from it, so
  warning cooldowns, recovery alerts and remediation survive a flapping
  read path.
- Remediation runs at most once per missed proof window.

The per-operator caches live in an explicit MonitorState that run_cycle
takes and returns; the input state is never mutated.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter as TallyCounter
from dataclasses import dataclass, replace
from enum import Enum, auto
from typing import Callable, Dict, Optional, Tuple

from .alerts import AlertSink
from .config import MonitorConfig, RemediationMode
from .ledger import LedgerError
from .models import MonitorState, OperatorStatusCache, normalize_operator
from .network.client import LedgerReadError, LedgerReader, LedgerWriter
from .observability import MonitorMetrics
from .policy import LivenessStatus, classify, penalty_deadline
from .report import (
    OperatorStatusView,
    StatusReport,
    cycle_error_message,
    first_proof_message,
    new_operator_message,
    overdue_message,
    penalty_applied_message,
    penalty_failed_message,
    penalty_skipped_message,
    read_error_message,
    recovered_message,
    render_status_report,
    shutdown_message,
    started_message,
    startup_failed_message,
    warning_message,
)

logger = logging.getLogger(__name__)

SHUTDOWN_ALERT_TIMEOUT_SECONDS = 5.0


class MonitorStartupError(Exception):
    """Ledger constants could not be read; the monitor must not run."""


@dataclass(frozen=True)
class LedgerParams:
    interval: int
    grace: int


# =============================================================================
# Transition Table
# =============================================================================

class TransitionAction(Enum):
    NONE = auto()
    FIRST_PROOF = auto()
    WARN = auto()
    RESEND_WARNING = auto()
    REMEDIATE = auto()
    RECOVERED = auto()


_S = LivenessStatus
_A = TransitionAction

# (previous, current) -> action over classify() results. ERROR never appears:
# an operator leaving ERROR is looked up by its status_before_error.
TRANSITIONS: Dict[Tuple[LivenessStatus, LivenessStatus], TransitionAction] = {
    (_S.NEVER_PROVED, _S.NEVER_PROVED): _A.NONE,
    (_S.NEVER_PROVED, _S.HEALTHY): _A.FIRST_PROOF,
    (_S.NEVER_PROVED, _S.WARNING): _A.WARN,
    (_S.NEVER_PROVED, _S.OVERDUE): _A.REMEDIATE,

    (_S.HEALTHY, _S.NEVER_PROVED): _A.NONE,
    (_S.HEALTHY, _S.HEALTHY): _A.NONE,
    (_S.HEALTHY, _S.WARNING): _A.WARN,
    (_S.HEALTHY, _S.OVERDUE): _A.REMEDIATE,

    (_S.WARNING, _S.NEVER_PROVED): _A.NONE,
    (_S.WARNING, _S.HEALTHY): _A.RECOVERED,
    (_S.WARNING, _S.WARNING): _A.RESEND_WARNING,
    (_S.WARNING, _S.OVERDUE): _A.REMEDIATE,

    (_S.OVERDUE, _S.NEVER_PROVED): _A.NONE,
    (_S.OVERDUE, _S.HEALTHY): _A.RECOVERED,
    (_S.OVERDUE, _S.WARNING): _A.WARN,
    (_S.OVERDUE, _S.OVERDUE): _A.NONE,
}


def transition_for(previous: LivenessStatus, current: LivenessStatus) -> TransitionAction:
    """Action for a status change. KeyError means either side was ERROR."""
    return TRANSITIONS[(previous, current)]


# =============================================================================
# Monitor
# =============================================================================

class LivenessMonitor:
    """
    Polls the ledger and alerts/remediates on status transitions.

    Example:
        monitor = LivenessMonitor(reader, sink, MonitorConfig(operators=["0xabc"]))
        await monitor.start()
        await monitor.run_forever(stop_event)
    """

    def __init__(
        self,
        reader: LedgerReader,
        sink: AlertSink,
        config: MonitorConfig,
        *,
        writer: Optional[LedgerWriter] = None,
        metrics: Optional[MonitorMetrics] = None,
        wallclock: Callable[[], float] = time.time,
    ):
        if config.remediation is RemediationMode.ALERT_AND_PENALIZE and writer is None:
            raise ValueError("alert-and-penalize remediation requires a ledger writer")

        self._reader = reader
        self._writer = writer
        self._sink = sink
        self._config = config
        self._metrics = metrics or MonitorMetrics()
        self._wallclock = wallclock
        self._operators = [normalize_operator(op) for op in config.operators]

        self._params: Optional[LedgerParams] = None
        self._state = MonitorState()
        self._cycle_lock = asyncio.Lock()
        self._read_slots = asyncio.Semaphore(config.max_concurrent_reads)

    @property
    def params(self) -> Optional[LedgerParams]:
        return self._params

    @property
    def state(self) -> MonitorState:
        """Last committed cycle state."""
        return self._state

    @property
    def metrics(self) -> MonitorMetrics:
        return self._metrics

    @property
    def operators(self) -> list:
        return list(self._operators)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> LedgerParams:
        """Read interval and grace. Failure is fatal.

        Raises:
            MonitorStartupError: constants unreadable or invalid
        """
        timeout = self._config.read_timeout_seconds
        try:
            interval = int(await asyncio.wait_for(self._reader.interval(), timeout))
            grace = int(await asyncio.wait_for(self._reader.grace(), timeout))
            if interval <= 0 or grace < 0:
                raise ValueError(f"invalid ledger constants interval={interval} grace={grace}")
        except Exception as exc:
            logger.critical(f"Failed to fetch ledger constants: {exc}")
            await self._alert(startup_failed_message())
            raise MonitorStartupError(str(exc)) from exc

        self._params = LedgerParams(interval=interval, grace=grace)
        logger.info(
            f"Ledger interval={interval}s grace={grace}s; monitoring {len(self._operators)} operators, "
            f"remediation={self._config.remediation.value}"
        )
        if not self._operators:
            logger.warning("No operators configured; the monitor will idle")
        await self._alert(
            started_message(len(self._operators), interval, grace, self._config.remediation.value)
        )
        return self._params

    async def shutdown(self, reason: str = "shutdown") -> None:
        """Send one best-effort final notification."""
        logger.info(f"Monitor shutting down ({reason})")
        try:
            await asyncio.wait_for(self._alert(shutdown_message(reason)), SHUTDOWN_ALERT_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("Final shutdown alert timed out")

    async def run_forever(self, stop: asyncio.Event) -> None:
        """Tick on a fixed cadence until ``stop`` is set."""
        loop = asyncio.get_running_loop()
        interval = self._config.poll_interval_seconds
        while not stop.is_set():
            started = loop.time()
            await self.tick()
            delay = max(0.0, interval - (loop.time() - started))
            try:
                await asyncio.wait_for(stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    async def tick(self) -> bool:
        """Run one cycle unless one is in flight. Returns False when skipped."""
        if self._cycle_lock.locked():
            logger.warning("Check cycle still in flight; tick skipped")
            self._metrics.cycles_skipped.inc()
            return False
        async with self._cycle_lock:
            self._state = await self.run_cycle(self._state)
        return True

    # -------------------------------------------------------------------------
    # Cycle
    # -------------------------------------------------------------------------

    async def run_cycle(self, state: MonitorState) -> MonitorState:
        """Check every operator against one ledger-time snapshot.

        Returns a new state; on snapshot failure returns ``state`` unchanged.
        """
        if self._params is None:
            raise RuntimeError("start() must complete before running cycles")
        if not self._operators:
            return state

        try:
            now = int(await asyncio.wait_for(self._reader.chain_time(), self._config.read_timeout_seconds))
        except Exception as exc:
            logger.error(f"Could not read ledger time; aborting cycle: {exc}")
            self._metrics.cycles_aborted.inc()
            await self._alert(cycle_error_message())
            return state

        logger.debug(f"Starting check cycle at ledger time {now}")
        results = await asyncio.gather(
            *(self._check_operator(op, now, state.operators.get(op)) for op in self._operators)
        )

        operators = dict(state.operators)
        for cache in results:
            operators[cache.operator_id] = cache

        self._metrics.cycles_total.inc()
        self._metrics.set_status_counts(dict(TallyCounter(c.status for c in operators.values())))
        logger.debug(f"Finished check cycle at ledger time {now}")

        return MonitorState(
            operators=operators,
            last_snapshot=now,
            last_cycle_at=self._wallclock(),
            cycles_completed=state.cycles_completed + 1,
        )

    async def _check_operator(
        self,
        operator: str,
        now: int,
        previous: Optional[OperatorStatusCache],
    ) -> OperatorStatusCache:
        async with self._read_slots:
            try:
                return await self._observe(operator, now, previous)
            except Exception as exc:
                return await self._record_failure(operator, previous, exc)

    async def _read_operator(self, operator: str) -> Tuple[int, int, bool]:
        timeout = self._config.read_timeout_seconds
        last_proof, penalties, registered = await asyncio.gather(
            asyncio.wait_for(self._reader.last_proof_time(operator), timeout),
            asyncio.wait_for(self._reader.penalty_count(operator), timeout),
            asyncio.wait_for(self._reader.is_registered(operator), timeout),
        )
        if not isinstance(last_proof, int) or last_proof < 0:
            raise LedgerReadError(f"invalid last proof time for {operator}: {last_proof!r}")
        return last_proof, int(penalties), bool(registered)

    async def _observe(
        self,
        operator: str,
        now: int,
        previous: Optional[OperatorStatusCache],
    ) -> OperatorStatusCache:
        assert self._params is not None
        last_proof, penalties, registered = await self._read_operator(operator)

        # A cache created by a failed first read has never been observed.
        if previous is None or previous.last_observation_time == 0:
            logger.info(f"First observation of operator {operator}")
            await self._alert(new_operator_message(operator))
        cache = replace(previous) if previous is not None else OperatorStatusCache(operator_id=operator)

        previous_status = cache.status
        if previous_status is LivenessStatus.ERROR:
            previous_status = cache.status_before_error or LivenessStatus.NEVER_PROVED
            logger.info(f"Reads for operator {operator} recovered (was {previous_status.value})")
        current = classify(now, last_proof, self._params.interval, self._params.grace)

        cache.status = current
        cache.status_before_error = None
        cache.last_known_proof_time = last_proof
        cache.last_observation_time = now
        cache.penalty_count = penalties
        cache.registered = registered
        cache.last_error_alert_at = None

        if previous_status is not current:
            logger.info(f"Operator {operator}: {previous_status.value} -> {current.value}")

        await self._perform(transition_for(previous_status, current), cache, now)
        return cache

    async def _perform(self, action: TransitionAction, cache: OperatorStatusCache, now: int) -> None:
        age = max(0, now - cache.last_known_proof_time)
        op = cache.operator_id

        if action is TransitionAction.NONE:
            return
        if action is TransitionAction.FIRST_PROOF:
            await self._alert(first_proof_message(op, age))
        elif action is TransitionAction.WARN:
            await self._send_warning(cache, age)
        elif action is TransitionAction.RESEND_WARNING:
            sent_at = cache.last_warning_sent_at
            if sent_at is None or self._wallclock() - sent_at > self._config.warning_resend_seconds:
                logger.info(f"Operator {op} still in warning; resending")
                await self._send_warning(cache, age)
        elif action is TransitionAction.REMEDIATE:
            await self._remediate(cache, now, age)
        elif action is TransitionAction.RECOVERED:
            await self._alert(recovered_message(op, age))
            cache.last_warning_sent_at = None

    async def _send_warning(self, cache: OperatorStatusCache, age: int) -> None:
        assert self._params is not None
        cache.last_warning_sent_at = self._wallclock()
        await self._alert(
            warning_message(
                cache.operator_id,
                cache.last_known_proof_time,
                age,
                self._params.interval,
                self._params.grace,
            )
        )

    async def _remediate(self, cache: OperatorStatusCache, now: int, age: int) -> None:
        assert self._params is not None
        op = cache.operator_id
        if cache.remediated_proof_time == cache.last_known_proof_time:
            logger.debug(f"Remediation for {op} already attempted for proof {cache.last_known_proof_time}")
            return
        cache.remediated_proof_time = cache.last_known_proof_time

        penalize = self._config.remediation is RemediationMode.ALERT_AND_PENALIZE
        deadline = penalty_deadline(cache.last_known_proof_time, self._params.interval, self._params.grace)
        logger.error(f"Operator {op} overdue (last proof {age}s ago, deadline {deadline})")
        await self._alert(overdue_message(op, cache.last_known_proof_time, age, deadline, penalize))

        if not penalize:
            return
        assert self._writer is not None
        if cache.registered is False:
            logger.info(f"Operator {op} not registered; penalty skipped")
            await self._alert(penalty_skipped_message(op))
            return

        # One attempt only: a retry could hit an operator that has since recovered.
        try:
            outcome = await asyncio.wait_for(
                self._writer.apply_penalty(op), self._config.read_timeout_seconds,
            )
        except LedgerError as exc:
            logger.warning(f"Penalty for {op} rejected by ledger: {exc}")
            self._metrics.penalties_failed.inc()
            await self._alert(penalty_failed_message(op, str(exc)))
            return
        except asyncio.TimeoutError:
            logger.error(f"Penalty call for {op} timed out")
            self._metrics.penalties_failed.inc()
            await self._alert(penalty_failed_message(op, "penalty call timed out"))
            return
        except Exception as exc:
            logger.exception(f"Penalty call for {op} failed")
            self._metrics.penalties_failed.inc()
            await self._alert(penalty_failed_message(op, str(exc)))
            return

        self._metrics.penalties_applied.inc()
        cache.penalty_count = outcome.penalty_count
        cache.registered = not outcome.deregistered
        await self._alert(penalty_applied_message(outcome))

    async def _record_failure(
        self,
        operator: str,
        previous: Optional[OperatorStatusCache],
        exc: Exception,
    ) -> OperatorStatusCache:
        logger.error(f"Check failed for operator {operator}: {exc!r}")
        self._metrics.read_failures.inc()

        cache = replace(previous) if previous is not None else OperatorStatusCache(operator_id=operator)
        was_error = cache.status is LivenessStatus.ERROR
        if not was_error:
            cache.status_before_error = cache.status
        cache.status = LivenessStatus.ERROR

        wall = self._wallclock()
        last_alert = cache.last_error_alert_at
        if (
            not was_error
            or last_alert is None
            or wall - last_alert > self._config.error_alert_cooldown_seconds
        ):
            cache.last_error_alert_at = wall
            await self._alert(read_error_message(operator))
        return cache

    async def _alert(self, text: str) -> bool:
        try:
            delivered = await self._sink.notify(text)
        except Exception:
            logger.exception("Alert sink raised")
            delivered = False
        if delivered:
            self._metrics.alerts_sent.inc()
        else:
            self._metrics.alerts_failed.inc()
            logger.warning("Alert delivery failed")
        return delivered

    # -------------------------------------------------------------------------
    # On-demand Query
    # -------------------------------------------------------------------------

    async def status_report(self) -> StatusReport:
        """Fresh view of every monitored operator.

        Uses a live ledger-time snapshot when one can be read, else the last
        successful cycle's snapshot (report marked stale). Never waits for
        an in-flight cycle.
        """
        if self._params is None:
            raise RuntimeError("monitor is still initialising")
        state = self._state
        interval, grace = self._params.interval, self._params.grace

        stale = False
        now: Optional[int]
        try:
            now = int(await asyncio.wait_for(self._reader.chain_time(), self._config.read_timeout_seconds))
        except Exception as exc:
            logger.warning(f"Live ledger time unavailable for status report: {exc}")
            now = state.last_snapshot
            stale = True

        rows = []
        for op in self._operators:
            cache = state.operators.get(op)
            if cache is None:
                rows.append(OperatorStatusView(
                    operator_id=op, status=None, proof_age=None, last_checked_age=None, ever_proved=False,
                ))
                continue

            status = cache.status
            if now is not None and status is not LivenessStatus.ERROR:
                status = classify(now, cache.last_known_proof_time, interval, grace)

            proof_age = None
            checked_age = None
            if now is not None:
                if cache.ever_proved:
                    proof_age = max(0, now - cache.last_known_proof_time)
                if cache.last_observation_time > 0:
                    checked_age = max(0, now - cache.last_observation_time)

            rows.append(OperatorStatusView(
                operator_id=op,
                status=status,
                proof_age=proof_age,
                last_checked_age=checked_age,
                ever_proved=cache.ever_proved,
                last_proof_time=cache.last_known_proof_time,
                last_observation_time=cache.last_observation_time,
                penalty_count=cache.penalty_count,
                registered=cache.registered,
            ))

        return StatusReport(
            now=now,
            stale=stale,
            interval=interval,
            grace=grace,
            rows=rows,
            generated_at=self._wallclock(),
        )

    async def send_status_report(self) -> bool:
        """Render the status report and deliver it through the sink."""
        report = await self.status_report()
        return await self._alert(render_status_report(report))
