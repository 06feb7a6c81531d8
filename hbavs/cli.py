from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

import aiohttp

from .logging import LoggingOptions, configure_logging

logger = logging.getLogger("hbavs.cli")


def _default_config_path() -> Optional[Path]:
    env_path = os.environ.get("HBAVS_CONFIG_PATH")
    if env_path:
        return Path(env_path)
    return None


def _add_config_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to JSON/TOML/YAML config (defaults to HBAVS_CONFIG_PATH)",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hbavs", description="Heartbeat AVS liveness tools")
    subparsers = parser.add_subparsers(dest="component", required=True)

    ledger = subparsers.add_parser("ledger", help="Liveness ledger")
    ledger_sub = ledger.add_subparsers(dest="command", required=True)
    serve = ledger_sub.add_parser("serve", help="Serve the ledger over HTTP")
    _add_config_argument(serve)
    serve.add_argument("--host", type=str, default=None, help="Bind host (overrides api.host)")
    serve.add_argument("--port", type=int, default=None, help="Bind port (overrides api.port)")

    monitor = subparsers.add_parser("monitor", help="Liveness monitor")
    monitor_sub = monitor.add_subparsers(dest="command", required=True)
    run = monitor_sub.add_parser("run", help="Poll the ledger and alert on transitions")
    _add_config_argument(run)
    run.add_argument("--operators", type=str, default=None, help="Comma-separated operators to monitor")
    run.add_argument("--once", action="store_true", help="Run a single check cycle and exit")

    agent = subparsers.add_parser("agent", help="Operator proof agent")
    agent_sub = agent.add_subparsers(dest="command", required=True)
    agent_run = agent_sub.add_parser("run", help="Submit proofs of life on a fixed cadence")
    _add_config_argument(agent_run)
    agent_run.add_argument("--operator", type=str, default=None, help="Operator id (overrides agent.operator)")
    agent_run.add_argument("--register", action="store_true", help="Register the operator before the first proof")

    status = subparsers.add_parser("status", help="Print the monitor's status report")
    _add_config_argument(status)
    status.add_argument("--url", type=str, default=None, help="Monitor status endpoint base URL")

    return parser


def _load_config(config_arg: Optional[str]) -> Any:
    from .liveness.config import HBAVSConfig, set_config

    path = Path(config_arg) if config_arg else _default_config_path()
    config = HBAVSConfig.load(path)
    set_config(config)
    return config


def _setup_logging(config: Any) -> None:
    # HBAVS_LOG_* wins over the config file's logging section.
    redact_env = os.environ.get("HBAVS_LOG_REDACT")
    configure_logging(LoggingOptions(
        level=os.environ.get("HBAVS_LOG_LEVEL") or config.logging.level,
        format=os.environ.get("HBAVS_LOG_FORMAT") or config.logging.format,
        file=os.environ.get("HBAVS_LOG_FILE") or config.logging.file,
        redact=config.logging.redact if redact_env is None else redact_env not in {"0", "false", "FALSE"},
    ))


def _install_stop_handlers(stop_event: asyncio.Event, reasons: List[str]) -> None:
    loop = asyncio.get_running_loop()

    def _make_handler(sig: signal.Signals) -> Callable[[], None]:
        def _request_stop() -> None:
            reasons.append(sig.name)
            stop_event.set()
        return _request_stop

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _make_handler(sig))
        except NotImplementedError:
            pass


async def _close_quietly(resource: Any) -> None:
    close = getattr(resource, "close", None)
    if close is None:
        return
    try:
        await close()
    except Exception:
        logger.exception(f"Failed to close {type(resource).__name__}")


# =============================================================================
# Commands
# =============================================================================

async def _run_ledger_serve(config: Any, host: Optional[str], port: Optional[int]) -> int:
    from .liveness.hooks import LoggingHooks
    from .liveness.ledger import LivenessLedger, RecordingPenaltyAuthority
    from .liveness.network.api import create_ledger_server

    ledger_cfg = config.ledger
    authority = RecordingPenaltyAuthority()
    options = dict(
        hooks=LoggingHooks(),
        one_penalty_per_window=ledger_cfg.one_penalty_per_window,
        snapshot_path=ledger_cfg.snapshot_path,
    )
    if ledger_cfg.snapshot_path and Path(ledger_cfg.snapshot_path).exists():
        ledger = LivenessLedger.load(ledger_cfg.snapshot_path, authority, **options)
        logger.info(f"Loaded ledger snapshot from {ledger_cfg.snapshot_path}")
    else:
        ledger = LivenessLedger(
            ledger_cfg.interval,
            ledger_cfg.grace,
            authority,
            escalation_threshold=ledger_cfg.escalation_threshold,
            **options,
        )

    if host:
        config.api.host = host
    if port is not None:
        config.api.port = port

    server = create_ledger_server(ledger, config.api)
    stop_event = asyncio.Event()
    _install_stop_handlers(stop_event, [])

    await server.start()
    try:
        await stop_event.wait()
    finally:
        await server.stop()
    return 0


async def _run_monitor(config: Any, once: bool) -> int:
    from .liveness.alerts import create_alert_sink
    from .liveness.config import RemediationMode
    from .liveness.monitor import LivenessMonitor, MonitorStartupError
    from .liveness.network.api import create_monitor_server
    from .liveness.network.client import HttpLedgerClient

    monitor_cfg = config.monitor
    sink = create_alert_sink(config.alerts)
    client = HttpLedgerClient(
        config.api.url,
        api_key=config.api.slasher_api_key,
        timeout=monitor_cfg.read_timeout_seconds,
    )
    penalize = monitor_cfg.remediation is RemediationMode.ALERT_AND_PENALIZE
    monitor = LivenessMonitor(client, sink, monitor_cfg, writer=client if penalize else None)
    status_server = None

    try:
        try:
            await monitor.start()
        except MonitorStartupError as exc:
            logger.critical(f"Monitor startup failed: {exc}")
            return 1

        if once:
            await monitor.tick()
            return 0

        if monitor_cfg.status_port:
            status_server = create_monitor_server(monitor, monitor_cfg.status_host, monitor_cfg.status_port)
            await status_server.start()

        stop_event = asyncio.Event()
        reasons: List[str] = []
        _install_stop_handlers(stop_event, reasons)

        await monitor.run_forever(stop_event)
        await monitor.shutdown(reasons[0] if reasons else "stopped")
        return 0
    finally:
        if status_server is not None:
            await status_server.stop()
        await client.close()
        await _close_quietly(sink)


async def _run_agent(config: Any, register: bool) -> int:
    from .liveness.agent import ProofAgent
    from .liveness.network.client import HttpLedgerClient

    agent_cfg = config.agent
    if not agent_cfg.operator:
        logger.error("No operator configured (set agent.operator or pass --operator)")
        return 2

    if not agent_cfg.api_key:
        logger.warning("No agent.api_key configured; the ledger will reject proofs")
    client = HttpLedgerClient(
        config.api.url,
        api_key=config.api.admin_api_key,
        operator_key=agent_cfg.api_key,
    )
    agent = ProofAgent(
        client,
        agent_cfg.operator,
        interval_seconds=agent_cfg.proof_interval_seconds,
        note=agent_cfg.note,
        register_first=register,
    )
    stop_event = asyncio.Event()
    _install_stop_handlers(stop_event, [])
    try:
        await agent.run_forever(stop_event)
    finally:
        await client.close()
    return 0


async def _run_status(config: Any, url: Optional[str]) -> int:
    if url is None:
        if not config.monitor.status_port:
            logger.error("Monitor status endpoint disabled (monitor.status_port is 0); pass --url")
            return 2
        url = f"http://{config.monitor.status_host}:{config.monitor.status_port}"

    timeout = aiohttp.ClientTimeout(total=config.monitor.read_timeout_seconds)
    try:
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(f"{url.rstrip('/')}/status.txt") as resp:
                text = await resp.text()
                status = resp.status
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        logger.error(f"Could not reach monitor at {url}: {exc}")
        return 1

    print(text, end="" if text.endswith("\n") else "\n")
    return 0 if status == 200 else 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        config = _load_config(args.config)
    except (FileNotFoundError, ValueError, TypeError) as exc:
        print(f"hbavs: invalid configuration: {exc}", file=sys.stderr)
        return 2
    _setup_logging(config)

    if args.component == "ledger" and args.command == "serve":
        return asyncio.run(_run_ledger_serve(config, args.host, args.port))

    if args.component == "monitor" and args.command == "run":
        if args.operators is not None:
            # replace() re-runs MonitorConfig validation and CSV splitting
            config.monitor = replace(config.monitor, operators=args.operators)
        return asyncio.run(_run_monitor(config, args.once))

    if args.component == "agent" and args.command == "run":
        if args.operator:
            config.agent.operator = args.operator.strip().lower()
        return asyncio.run(_run_agent(config, args.register))

    if args.component == "status":
        return asyncio.run(_run_status(config, args.url))

    raise ValueError(f"Unknown command: {args.component} {getattr(args, 'command', '')}")


if __name__ == "__main__":
    sys.exit(main())
