"""Command-line entry point for rsysmon.

Usage:
    rsysmon status  -H myhost [-u user] [-P 22]
    rsysmon monitor -H myhost [-u user] [-P 22] [-i 1.0] [--log-file rsysmon.log]
    rsysmon config > ~/.config/rsysmon/config.toml
"""

from __future__ import annotations

import argparse
import getpass
import logging
import signal
import sys
import time
from collections.abc import Callable
from pathlib import Path
from types import FrameType
from typing import Any

from rsysmon.config import dump_default_config, load_config
from rsysmon.dashboard import DashboardLoop
from rsysmon.errors import AuthError, NetworkError, TerminalError
from rsysmon.render import fmt_percent, fmt_usage
from rsysmon.sampler import (
    DIALECTS,
    Dialect,
    MetricSample,
    MetricSampler,
    get_dialect,
    probe_dialect,
)
from rsysmon.transport import Session, connect

logger = logging.getLogger(__name__)


# ── Logging ────────────────────────────────────────────────────────────────


# Loggers whose records must never reach Python's last-resort stderr handler.
_ROUTED_LOGGERS = ("rsysmon", "paramiko")


def _setup_logging(verbose: bool, log_file: Path | None, to_stderr: bool) -> None:
    """Route rsysmon's and paramiko's log records.

    While curses owns the screen anything written to stderr would corrupt
    it, so the dashboard only logs when given a file. Calling this again
    replaces (and closes) the handlers installed by the previous call.
    """
    if log_file is not None:
        handler: logging.Handler = logging.FileHandler(log_file, encoding="utf-8")
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
    elif to_stderr:
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
        handler.setFormatter(logging.Formatter("rsysmon: %(levelname)s: %(message)s"))
    else:
        handler = logging.NullHandler()

    for name in _ROUTED_LOGGERS:
        log = logging.getLogger(name)
        for old in list(log.handlers):
            log.removeHandler(old)
            old.close()
        log.addHandler(handler)
        log.propagate = False

    logging.getLogger("rsysmon").setLevel(logging.DEBUG if verbose else logging.INFO)
    # paramiko logs transport chatter we only want when debugging
    logging.getLogger("paramiko").setLevel(logging.DEBUG if verbose else logging.WARNING)


# ── Credentials ────────────────────────────────────────────────────────────


def _resolve_username(cli_value: str | None, config: dict[str, Any]) -> str:
    username = cli_value or str(config.get("username") or "")
    while not username:
        username = input("Enter username: ").strip()
    return username


def _prompt_password() -> str:
    return getpass.getpass("Enter password: ")


def _connector(
    args: argparse.Namespace,
    config: dict[str, Any],
    password_prompt: Callable[[], str] = _prompt_password,
) -> Callable[[], Session]:
    port = args.port if args.port is not None else int(config["port"])
    command_timeout = float(config["command_timeout"]) or None

    def _connect() -> Session:
        username = _resolve_username(args.username, config)
        return connect(
            args.host,
            port,
            username,
            password_prompt,
            connect_timeout=float(config["connect_timeout"]),
            command_timeout=command_timeout,
            known_hosts=str(config["known_hosts"]) or None,
            strict_host_keys=bool(config["strict_host_keys"]),
        )

    return _connect


# ── Status output ──────────────────────────────────────────────────────────


def format_status(sample: MetricSample, title: str, disk_path: str = "/") -> str:
    """Static summary of one sample."""
    ts = time.strftime("%H:%M:%S", time.localtime(sample.timestamp))
    lines = [f"── rsysmon {title} [{ts}] ──"]

    mem = fmt_usage(sample.memory_used_bytes, sample.memory_total_bytes)
    if sample.memory_percent is not None:
        mem += f"  ({fmt_percent(sample.memory_percent)})"
    disk = fmt_usage(sample.disk_used_bytes, sample.disk_total_bytes)
    if sample.disk_percent is not None:
        disk += f"  ({fmt_percent(sample.disk_percent)})"

    lines.append(f"  {'CPU':12s}  {fmt_percent(sample.cpu_percent)}")
    lines.append(f"  {'Memory':12s}  {mem}")
    lines.append(f"  {'Disk ' + disk_path:12s}  {disk}")
    for mount in sample.mounts:
        usage = fmt_usage(mount.used_bytes, mount.total_bytes)
        if mount.percent is not None:
            usage += f"  ({fmt_percent(mount.percent)})"
        lines.append(f"    {mount.mount:10s}  {usage}")
    for error in sample.errors:
        lines.append(f"  !! {error}")
    return "\n".join(lines)


# ── Subcommands ────────────────────────────────────────────────────────────


def _dialect_for(session: Session, name: str) -> Dialect:
    return probe_dialect(session) if name == "auto" else get_dialect(name)


def cmd_status(args: argparse.Namespace, config: dict[str, Any]) -> int:
    disk_path = str(config["disk_path"])
    with _connector(args, config)() as session:
        sampler = MetricSampler(
            session,
            _dialect_for(session, str(config["dialect"])),
            disk_path=disk_path,
            list_mounts=bool(config["list_mounts"]),
        )
        sample = sampler.sample()
        title = f"{session.username}@{session.host}"
    print(format_status(sample, title, disk_path))
    return 0


def _terminate(signum: int, frame: FrameType | None) -> None:
    # Unwind through the dashboard's cleanup like Ctrl+C does.
    raise SystemExit(128 + signum)


def cmd_monitor(args: argparse.Namespace, config: dict[str, Any]) -> int:
    interval = args.interval if args.interval is not None else float(config["interval"])
    if interval <= 0:
        print("rsysmon: --interval must be positive", file=sys.stderr)
        return 2
    poll_timeout = min(float(config["poll_timeout"]), interval)
    if poll_timeout <= 0:
        print("rsysmon: poll_timeout must be positive", file=sys.stderr)
        return 2

    loop = DashboardLoop(
        _connector(args, config),
        interval=interval,
        poll_timeout=poll_timeout,
        history_cap=int(config["history_cap"]),
        dialect=str(config["dialect"]),
        disk_path=str(config["disk_path"]),
        list_mounts=bool(config["list_mounts"]),
        thresholds=config["thresholds"],
    )
    signal.signal(signal.SIGTERM, _terminate)
    try:
        return loop.run()
    except KeyboardInterrupt:
        return 0


# ── CLI entry point ────────────────────────────────────────────────────────


def _add_connection_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-H", "--host", required=True, help="Remote host")
    parser.add_argument(
        "-u", "--username", default=None, help="Remote user (prompted if omitted)"
    )
    parser.add_argument(
        "-P", "--port", type=int, default=None, help="SSH port (default: 22)"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        metavar="PATH",
        help="Path to TOML config file",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Log debug details"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rsysmon",
        description="Monitor CPU, memory and disk of a remote host over SSH.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    status = sub.add_parser("status", help="Print one sample and exit")
    _add_connection_args(status)

    monitor = sub.add_parser("monitor", help="Live dashboard (press q to quit)")
    _add_connection_args(monitor)
    monitor.add_argument(
        "-i",
        "--interval",
        type=float,
        default=None,
        help="Seconds between samples (default: 1)",
    )
    monitor.add_argument(
        "--log-file",
        type=Path,
        default=None,
        metavar="PATH",
        help="Write log records to this file",
    )

    sub.add_parser("config", help="Print the default configuration as TOML")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "config":
        print(dump_default_config(), end="")
        return 0

    config = load_config(args.config)
    dialect = str(config["dialect"])
    if dialect != "auto" and dialect not in DIALECTS:
        print(
            f"rsysmon: unknown dialect {dialect!r} "
            f"(choose from auto, {', '.join(sorted(DIALECTS))})",
            file=sys.stderr,
        )
        return 2

    _setup_logging(
        args.verbose,
        getattr(args, "log_file", None),
        to_stderr=args.command == "status",
    )

    try:
        if args.command == "status":
            return cmd_status(args, config)
        return cmd_monitor(args, config)
    except (AuthError, NetworkError, TerminalError) as e:
        print(f"rsysmon: {e}", file=sys.stderr)
        return 1
    except EOFError:
        # input()/getpass() with stdin closed, e.g. under cron
        print("rsysmon: cannot prompt for credentials: no input available", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nrsysmon: interrupted.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
