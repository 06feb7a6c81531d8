from __future__ import annotations

import os
import socket
from contextlib import closing

import pytest

from hbavs.cli import main


def _find_free_port() -> int:
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("HBAVS_"):
            monkeypatch.delenv(key, raising=False)


def test_missing_config_file_exits_2(tmp_path) -> None:
    assert main(["monitor", "run", "--config", str(tmp_path / "missing.yaml")]) == 2


def test_agent_without_operator_exits_2() -> None:
    assert main(["agent", "run"]) == 2


def test_monitor_startup_failure_exits_1(monkeypatch) -> None:
    monkeypatch.setenv("HBAVS_API_URL", f"http://127.0.0.1:{_find_free_port()}")
    monkeypatch.setenv("HBAVS_MONITOR_READ_TIMEOUT_SECONDS", "2")
    assert main(["monitor", "run", "--once", "--operators", "0xabc"]) == 1


def test_status_unreachable_exits_1() -> None:
    assert main(["status", "--url", f"http://127.0.0.1:{_find_free_port()}"]) == 1


def test_status_requires_endpoint() -> None:
    assert main(["status"]) == 2


def test_subcommand_required() -> None:
    with pytest.raises(SystemExit):
        main([])
