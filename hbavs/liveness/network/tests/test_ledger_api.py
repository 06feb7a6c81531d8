from __future__ import annotations

import socket
import threading
from contextlib import closing

import aiohttp
import pytest
from aiohttp import web

from hbavs.liveness.config import ApiConfig
from hbavs.liveness.ledger import (
    LivenessLedger,
    NotEligible,
    PenaltyAlreadyApplied,
    PenaltyAuthorityError,
    PenaltyNotDue,
)
from hbavs.liveness.models import ProofSubmitted
from hbavs.liveness.network.api import LedgerApiHandlers, create_ledger_app
from hbavs.liveness.network.client import HttpLedgerClient, LedgerAuthError, LedgerReadError

ADMIN_KEY = "admin-secret"
SLASHER_KEY = "slasher-secret"
OPERATOR_KEY = "operator-secret"


def _find_free_port() -> int:
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def _start_app(ledger: LivenessLedger, config: ApiConfig):
    app = create_ledger_app(LedgerApiHandlers(ledger, config))
    runner = web.AppRunner(app)
    await runner.setup()

    port = _find_free_port()
    site = web.TCPSite(runner, "127.0.0.1", port)
    await site.start()

    return runner, f"http://127.0.0.1:{port}"


def _config() -> ApiConfig:
    return ApiConfig(
        admin_api_key=ADMIN_KEY,
        slasher_api_key=SLASHER_KEY,
        operator_api_keys={"0xABC": OPERATOR_KEY},
    )


@pytest.mark.asyncio
async def test_client_reads_and_writes_through_api(ledger, clock):
    runner, base = await _start_app(ledger, _config())
    try:
        async with HttpLedgerClient(base, api_key=ADMIN_KEY, operator_key=OPERATOR_KEY) as client:
            assert await client.interval() == 30
            assert await client.grace() == 10
            assert await client.chain_time() == 1000

            await client.register("0xABC")
            clock.advance(3)
            assert await client.submit_proof("0xabc", "ok") == 1003
            assert await client.last_proof_time("0xabc") == 1003
            assert await client.penalty_count("0xabc") == 0
            assert await client.is_registered("0xabc") is True
    finally:
        await runner.cleanup()

    assert ledger.events()[-1].note == "ok"


@pytest.mark.asyncio
async def test_penalty_errors_keep_their_type(ledger, clock):
    ledger.register("0xabc")
    ledger.submit_proof("0xabc", "ok")
    runner, base = await _start_app(ledger, _config())
    try:
        async with HttpLedgerClient(base, api_key=SLASHER_KEY) as client:
            clock.now = 1039
            with pytest.raises(PenaltyNotDue) as excinfo:
                await client.apply_penalty("0xabc")
            assert excinfo.value.expected == 1040

            clock.now = 1041
            outcome = await client.apply_penalty("0xabc")
            assert outcome.penalty_count == 1
            assert outcome.missed_proof_time == 1000

            with pytest.raises(NotEligible):
                await client.apply_penalty("0xdead")
    finally:
        await runner.cleanup()


@pytest.mark.asyncio
async def test_per_window_and_authority_errors(clock):
    class FailingAuthority:
        def slash(self, operator_id):
            raise RuntimeError("revert")

    failing = LivenessLedger(30, 10, FailingAuthority(), clock=clock)
    failing.register("0xabc")
    runner, base = await _start_app(failing, _config())
    try:
        clock.now = 5000
        async with aiohttp.ClientSession() as session:
            async with session.post(
                f"{base}/api/v1/operators/0xabc/penalties", headers={"X-API-Key": SLASHER_KEY},
            ) as resp:
                assert resp.status == 502
                body = await resp.json()
                assert body["code"] == "penalty_authority_failed"
                assert body["error"] == "revert"

        async with HttpLedgerClient(base, api_key=SLASHER_KEY) as client:
            with pytest.raises(PenaltyAuthorityError):
                await client.apply_penalty("0xabc")
    finally:
        await runner.cleanup()
    assert failing.penalty_count("0xabc") == 0

    windowed = LivenessLedger(30, 10, _NoopAuthority(), clock=clock, one_penalty_per_window=True)
    windowed.register("0xabc")
    runner, base = await _start_app(windowed, _config())
    try:
        async with HttpLedgerClient(base, api_key=SLASHER_KEY) as client:
            await client.apply_penalty("0xabc")
            with pytest.raises(PenaltyAlreadyApplied):
                await client.apply_penalty("0xabc")
    finally:
        await runner.cleanup()


class _NoopAuthority:
    def slash(self, operator_id):
        pass


@pytest.mark.asyncio
async def test_mutations_require_api_keys(ledger):
    runner, base = await _start_app(ledger, _config())
    try:
        async with aiohttp.ClientSession() as session:
            async with session.post(f"{base}/api/v1/operators/0xabc/register") as resp:
                assert resp.status == 401
            async with session.post(
                f"{base}/api/v1/operators/0xabc/register", headers={"X-API-Key": "wrong"},
            ) as resp:
                assert resp.status == 401
            async with session.post(
                f"{base}/api/v1/operators/0xabc/penalties", headers={"X-API-Key": ADMIN_KEY},
            ) as resp:
                assert resp.status == 401

        async with HttpLedgerClient(base) as client:
            with pytest.raises(LedgerReadError):
                await client.register("0xabc")
    finally:
        await runner.cleanup()

    assert ledger.is_registered("0xabc") is False


@pytest.mark.asyncio
async def test_proof_from_unregistered_operator(ledger):
    runner, base = await _start_app(ledger, _config())
    headers = {"X-Operator-Key": OPERATOR_KEY}
    try:
        async with aiohttp.ClientSession() as session:
            async with session.post(
                f"{base}/api/v1/operators/0xabc/proofs", json={"note": "hi"}, headers=headers,
            ) as resp:
                assert resp.status == 400
                body = await resp.json()
                assert body["success"] is False
                assert body["code"] == "not_eligible"
            async with session.post(
                f"{base}/api/v1/operators/0xabc/proofs", json={"note": 5}, headers=headers,
            ) as resp:
                assert resp.status == 400
            async with session.get(f"{base}/health") as resp:
                assert (await resp.json())["data"] == {"status": "ok"}
    finally:
        await runner.cleanup()


@pytest.mark.asyncio
async def test_unreachable_ledger_raises_read_error():
    port = _find_free_port()
    async with HttpLedgerClient(f"http://127.0.0.1:{port}", timeout=2) as client:
        with pytest.raises(LedgerReadError):
            await client.chain_time()


@pytest.mark.asyncio
async def test_proof_requires_the_operators_own_key(ledger, clock):
    config = _config()
    config.operator_api_keys["0xdef"] = "other-secret"
    ledger.register("0xabc")
    ledger.register("0xdef")
    ledger.register("0x123")
    ledger.submit_proof("0xabc", "ok")
    clock.now = 1045

    runner, base = await _start_app(ledger, config)
    try:
        async with aiohttp.ClientSession() as session:
            rejected = [
                {},
                {"X-Operator-Key": "wrong"},
                {"X-Operator-Key": "other-secret"},
                {"X-API-Key": ADMIN_KEY},
            ]
            for headers in rejected:
                async with session.post(
                    f"{base}/api/v1/operators/0xabc/proofs", json={"note": "forged"}, headers=headers,
                ) as resp:
                    assert resp.status == 401
                    assert (await resp.json())["success"] is False

            # 0x123 has no key configured
            async with session.post(f"{base}/api/v1/operators/0x123/proofs", json={"note": "hi"}) as resp:
                assert resp.status == 401

        async with HttpLedgerClient(base) as client:
            with pytest.raises(LedgerAuthError):
                await client.submit_proof("0xabc", "forged")

        async with HttpLedgerClient(base, operator_key=OPERATOR_KEY) as client:
            assert await client.submit_proof("0xABC", "alive") == 1045
    finally:
        await runner.cleanup()

    assert ledger.last_proof_time("0x123") == 0
    assert [e.note for e in ledger.events() if isinstance(e, ProofSubmitted)] == ["ok", "alive"]


@pytest.mark.asyncio
async def test_mutations_run_off_the_event_loop_thread(clock):
    class ThreadRecordingAuthority:
        def __init__(self):
            self.threads = []

        def slash(self, operator_id):
            self.threads.append(threading.current_thread())

    authority = ThreadRecordingAuthority()
    ledger = LivenessLedger(30, 10, authority, clock=clock)
    ledger.register("0xabc")
    clock.now = 1041

    runner, base = await _start_app(ledger, _config())
    try:
        async with HttpLedgerClient(base, api_key=SLASHER_KEY) as client:
            outcome = await client.apply_penalty("0xabc")
    finally:
        await runner.cleanup()

    assert outcome.penalty_count == 1
    assert authority.threads and authority.threads[0] is not threading.main_thread()
