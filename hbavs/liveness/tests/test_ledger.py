"""
Tests for the liveness ledger.

Covers:
- Registration and proof submission
- Penalty deadline arithmetic
- Escalation to deregistration and re-registration
- Authority failure rollback
- Per-window penalty rule
- Snapshot persistence
"""

from __future__ import annotations

import json

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from hbavs.liveness.hooks import RecordingHooks
from hbavs.liveness.ledger import (
    LivenessLedger,
    NotEligible,
    PenaltyAlreadyApplied,
    PenaltyAuthorityError,
    PenaltyNotDue,
    RecordingPenaltyAuthority,
)
from hbavs.liveness.models import (
    OperatorDeregistered,
    OperatorRegistered,
    PenaltyApplied,
    ProofSubmitted,
)
from hbavs.liveness.policy import LivenessStatus, classify

OP = "0xAbC"


class FailingAuthority:
    def __init__(self) -> None:
        self.calls = 0

    def slash(self, operator_id: str) -> None:
        self.calls += 1
        raise RuntimeError("staking layer unavailable")


class TestRegistration:
    """Tests for register and submit_proof."""

    def test_unknown_operator_reads_as_zero(self, ledger):
        assert ledger.last_proof_time(OP) == 0
        assert ledger.penalty_count(OP) == 0
        assert ledger.is_registered(OP) is False

    def test_register_normalizes_operator_id(self, ledger):
        ledger.register(OP)
        assert ledger.is_registered("0xabc")
        assert ledger.operators() == ["0xabc"]

    def test_proof_rejected_when_unregistered(self, ledger):
        """Should raise NotEligible and leave no record behind."""
        with pytest.raises(NotEligible):
            ledger.submit_proof(OP, "hello")
        assert ledger.last_proof_time(OP) == 0

    def test_proof_records_current_time(self, ledger, clock):
        ledger.register(OP)
        clock.advance(5)
        assert ledger.submit_proof(OP, "ok") == 1005
        assert ledger.last_proof_time(OP) == 1005

    def test_register_resets_penalties_but_keeps_proof(self, ledger, clock):
        ledger.register(OP)
        ledger.submit_proof(OP, "ok")
        clock.advance(41)
        ledger.apply_penalty(OP)
        assert ledger.penalty_count(OP) == 1

        ledger.register(OP)
        assert ledger.penalty_count(OP) == 0
        assert ledger.last_proof_time(OP) == 1000

    def test_get_operator_returns_copy(self, ledger):
        ledger.register(OP)
        record = ledger.get_operator(OP)
        record.penalty_count = 99
        assert ledger.penalty_count(OP) == 0

    def test_rejects_invalid_parameters(self, authority):
        with pytest.raises(ValueError):
            LivenessLedger(0, 10, authority)
        with pytest.raises(ValueError):
            LivenessLedger(30, -1, authority)
        with pytest.raises(ValueError):
            LivenessLedger(30, 10, authority, escalation_threshold=0)


class TestPenalties:
    """Tests for apply_penalty."""

    def test_deadline_scenario(self, ledger, clock, authority):
        """Proof at t0: penalty at t0+39 not due (expected t0+40), at t0+41 applied."""
        ledger.register(OP)
        t0 = ledger.submit_proof(OP, "ok")

        clock.now = t0 + 29
        assert classify(ledger.chain_time(), t0, 30, 10) is LivenessStatus.HEALTHY
        clock.now = t0 + 31
        assert classify(ledger.chain_time(), t0, 30, 10) is LivenessStatus.WARNING

        clock.now = t0 + 39
        with pytest.raises(PenaltyNotDue) as excinfo:
            ledger.apply_penalty(OP)
        assert excinfo.value.expected == t0 + 40
        assert authority.slashed == []

        clock.now = t0 + 40
        with pytest.raises(PenaltyNotDue):
            ledger.apply_penalty(OP)

        clock.now = t0 + 41
        assert classify(ledger.chain_time(), t0, 30, 10) is LivenessStatus.OVERDUE
        outcome = ledger.apply_penalty(OP)
        assert outcome.penalty_count == 1
        assert outcome.missed_proof_time == t0
        assert outcome.deregistered is False
        assert authority.slashed == ["0xabc"]

    def test_penalty_rejected_when_unregistered(self, ledger, clock):
        clock.advance(1000)
        with pytest.raises(NotEligible):
            ledger.apply_penalty(OP)

    def test_three_penalties_deregister(self, ledger, clock, hooks):
        """Three successful penalties deregister; a fourth is NotEligible."""
        ledger.register(OP)
        ledger.submit_proof(OP, "ok")
        clock.advance(41)

        outcomes = [ledger.apply_penalty(OP) for _ in range(3)]
        assert [o.penalty_count for o in outcomes] == [1, 2, 3]
        assert [o.deregistered for o in outcomes] == [False, False, True]
        assert ledger.penalty_count(OP) == 3
        assert ledger.is_registered(OP) is False

        with pytest.raises(NotEligible):
            ledger.apply_penalty(OP)

        deregistrations = [e for e in hooks.events if isinstance(e, OperatorDeregistered)]
        assert deregistrations == [OperatorDeregistered(operator_id="0xabc", penalty_count=3, timestamp=1041)]

    def test_never_proved_operator_penalizable_from_time_zero(self, authority):
        ledger = LivenessLedger(30, 10, authority, clock=lambda: 100)
        ledger.register(OP)
        outcome = ledger.apply_penalty(OP)
        assert outcome.missed_proof_time == 0

    def test_authority_failure_rolls_back(self, clock, hooks):
        """Should leave the record untouched and emit nothing."""
        authority = FailingAuthority()
        ledger = LivenessLedger(30, 10, authority, clock=clock, hooks=hooks)
        ledger.register(OP)
        ledger.submit_proof(OP, "ok")
        clock.advance(41)
        before = len(hooks.events)

        with pytest.raises(PenaltyAuthorityError, match="staking layer unavailable"):
            ledger.apply_penalty(OP)

        assert authority.calls == 1
        assert ledger.penalty_count(OP) == 0
        assert ledger.is_registered(OP) is True
        assert len(hooks.events) == before

    def test_one_penalty_per_window(self, clock, authority):
        ledger = LivenessLedger(30, 10, authority, clock=clock, one_penalty_per_window=True)
        ledger.register(OP)
        ledger.submit_proof(OP, "ok")
        clock.advance(41)
        ledger.apply_penalty(OP)

        with pytest.raises(PenaltyAlreadyApplied) as excinfo:
            ledger.apply_penalty(OP)
        assert excinfo.value.missed_proof_time == 1000
        assert ledger.penalty_count(OP) == 1

        # A new proof opens a new window.
        ledger.submit_proof(OP, "back")
        clock.advance(41)
        assert ledger.apply_penalty(OP).penalty_count == 2


class TestEvents:
    """Events are emitted in commit order."""

    def test_event_sequence(self, ledger, clock, hooks):
        ledger.register(OP)
        ledger.submit_proof(OP, "ok")
        clock.advance(41)
        ledger.apply_penalty(OP)

        assert hooks.events == [
            OperatorRegistered(operator_id="0xabc", timestamp=1000),
            ProofSubmitted(operator_id="0xabc", timestamp=1000, note="ok"),
            PenaltyApplied(operator_id="0xabc", missed_proof_time=1000, penalty_count=1, timestamp=1041),
        ]
        assert ledger.events() == hooks.events

    def test_hook_failure_does_not_block_mutation(self, clock, authority):
        class BrokenHooks:
            def on_event(self, event):
                raise RuntimeError("observer crashed")

        ledger = LivenessLedger(30, 10, authority, clock=clock, hooks=BrokenHooks())
        ledger.register(OP)
        assert ledger.submit_proof(OP, "ok") == 1000


class TestSnapshots:
    """Tests for JSON snapshot persistence."""

    def test_save_and_load(self, ledger, clock, authority, tmp_path):
        ledger.register(OP)
        ledger.submit_proof(OP, "ok")
        clock.advance(41)
        ledger.apply_penalty(OP)

        path = tmp_path / "ledger.json"
        ledger.save(path)
        restored = LivenessLedger.load(path, authority, clock=clock)

        assert restored.interval == 30
        assert restored.grace == 10
        assert restored.get_operator(OP) == ledger.get_operator(OP)

    def test_snapshot_path_persists_every_mutation(self, clock, authority, tmp_path):
        path = tmp_path / "state" / "ledger.json"
        ledger = LivenessLedger(30, 10, authority, clock=clock, snapshot_path=path)
        ledger.register(OP)
        ledger.submit_proof(OP, "ok")

        data = json.loads(path.read_text())
        assert data["operators"][0]["last_proof_time"] == 1000
        assert data["operators"][0]["registered"] is True
        assert [p.name for p in path.parent.iterdir()] == ["ledger.json"]

    def test_failed_snapshot_write_leaves_no_partial_state(self, clock, authority, hooks, tmp_path, monkeypatch):
        """A penalty whose snapshot cannot be written is not applied and not slashed."""
        path = tmp_path / "ledger.json"
        ledger = LivenessLedger(30, 10, authority, clock=clock, hooks=hooks, snapshot_path=path)
        ledger.register(OP)
        ledger.submit_proof(OP, "ok")
        clock.advance(41)
        before = len(hooks.events)

        def disk_full(path, data):
            raise OSError("disk full")

        monkeypatch.setattr(LivenessLedger, "_write_snapshot", staticmethod(disk_full))

        with pytest.raises(OSError, match="disk full"):
            ledger.apply_penalty(OP)
        with pytest.raises(OSError):
            ledger.submit_proof(OP, "late")
        with pytest.raises(OSError):
            ledger.register("0xdef")

        assert ledger.penalty_count(OP) == 0
        assert ledger.last_proof_time(OP) == 1000
        assert ledger.is_registered("0xdef") is False
        assert ledger.operators() == ["0xabc"]
        assert authority.slashed == []
        assert len(hooks.events) == before

        monkeypatch.undo()
        assert ledger.apply_penalty(OP).penalty_count == 1
        assert authority.slashed == ["0xabc"]

    def test_authority_failure_restores_snapshot(self, clock, tmp_path):
        path = tmp_path / "ledger.json"
        ledger = LivenessLedger(30, 10, FailingAuthority(), clock=clock, snapshot_path=path)
        ledger.register(OP)
        ledger.submit_proof(OP, "ok")
        clock.advance(41)

        with pytest.raises(PenaltyAuthorityError):
            ledger.apply_penalty(OP)

        record = json.loads(path.read_text())["operators"][0]
        assert record["penalty_count"] == 0
        assert record["last_penalized_proof_time"] is None

    def test_rejects_unknown_version(self, authority):
        with pytest.raises(ValueError, match="version"):
            LivenessLedger.from_dict({"version": 99, "interval": 30, "grace": 10}, authority)


@settings(max_examples=100, deadline=None, derandomize=True)
@given(steps=st.lists(st.sampled_from(["register", "proof", "wait", "penalty"]), max_size=40))
def test_penalty_count_invariants(steps):
    """Count grows by one per applied penalty; deregistration exactly at the threshold."""
    now = [1000]
    ledger = LivenessLedger(30, 10, RecordingPenaltyAuthority(), clock=lambda: now[0])

    for step in steps:
        before = ledger.get_operator(OP)
        if step == "register":
            ledger.register(OP)
            assert ledger.penalty_count(OP) == 0
            assert ledger.is_registered(OP)
        elif step == "proof":
            try:
                assert ledger.submit_proof(OP, "") == now[0]
            except NotEligible:
                assert not before.registered
        elif step == "wait":
            now[0] += 25
        else:
            try:
                outcome = ledger.apply_penalty(OP)
            except NotEligible:
                assert not before.registered
                continue
            except PenaltyNotDue as exc:
                assert exc.expected == before.last_proof_time + 40
                assert now[0] <= exc.expected
                continue
            assert outcome.penalty_count == before.penalty_count + 1
            assert ledger.is_registered(OP) == (outcome.penalty_count < 3)

        after = ledger.get_operator(OP)
        if before.registered is False and step != "register":
            assert after.registered is False
