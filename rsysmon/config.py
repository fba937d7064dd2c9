"""Configuration loading for rsysmon.

Loads settings from TOML config files with sensible defaults.
Search order: explicit --config path → ~/.config/rsysmon/config.toml → defaults only.
"""

from __future__ import annotations

import sys
import tomllib
from pathlib import Path
from typing import Any

DEFAULT_CONFIG: dict[str, Any] = {
    "port": 22,
    "username": "",  # empty = prompt
    "interval": 1.0,
    "poll_timeout": 0.2,
    "connect_timeout": 10.0,
    "command_timeout": 10.0,  # 0 = wait forever
    "history_cap": 512,
    "disk_path": "/",
    "list_mounts": True,  # also show every device-backed filesystem
    "dialect": "auto",
    "strict_host_keys": False,
    "known_hosts": "~/.ssh/known_hosts",
    "thresholds": {
        "cpu_percent": {"warning": 80.0, "critical": 95.0},
        "ram_percent": {"warning": 85.0, "critical": 95.0},
        "disk_percent": {"warning": 85.0, "critical": 95.0},
    },
}

_DEFAULT_PATH = Path.home() / ".config" / "rsysmon" / "config.toml"

_SCALAR_KEYS = (
    "port",
    "username",
    "interval",
    "poll_timeout",
    "connect_timeout",
    "command_timeout",
    "history_cap",
    "disk_path",
    "list_mounts",
    "dialect",
    "strict_host_keys",
    "known_hosts",
)


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge overlay into base. Nested dicts are merged at the first level only."""
    merged = dict(base)
    for key, value in overlay.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            # Merge one level: overlay sub-keys into base sub-keys
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def load_config(path: Path | None = None) -> dict[str, Any]:
    """Load configuration, merging user TOML over defaults.

    Args:
        path: Explicit config file path (from --config). If None, tries the
              default location ~/.config/rsysmon/config.toml.

    Returns:
        Merged configuration dict.

    Raises:
        SystemExit: If an explicit path doesn't exist or can't be parsed.
    """
    if path is not None:
        if not path.is_file():
            print(f"rsysmon: config file not found: {path}", file=sys.stderr)
            raise SystemExit(1)
        try:
            user_config = tomllib.loads(path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as e:
            print(f"rsysmon: invalid TOML in {path}: {e}", file=sys.stderr)
            raise SystemExit(1) from e
        return _deep_merge(DEFAULT_CONFIG, user_config)

    # Try default location silently
    if _DEFAULT_PATH.is_file():
        try:
            user_config = tomllib.loads(_DEFAULT_PATH.read_text(encoding="utf-8"))
            return _deep_merge(DEFAULT_CONFIG, user_config)
        except tomllib.TOMLDecodeError:
            print(
                f"rsysmon: warning: ignoring invalid TOML in {_DEFAULT_PATH}",
                file=sys.stderr,
            )

    return dict(DEFAULT_CONFIG)


def _toml_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return f'"{value}"'
    return str(value)


def dump_default_config() -> str:
    """Return the default configuration as a TOML string."""
    lines = [
        "# rsysmon configuration",
        "# Place this file at ~/.config/rsysmon/config.toml",
        "",
    ]
    for key in _SCALAR_KEYS:
        lines.append(f"{key} = {_toml_value(DEFAULT_CONFIG[key])}")
    lines.append("")

    # Thresholds
    for metric, levels in DEFAULT_CONFIG["thresholds"].items():
        lines.append(f"[thresholds.{metric}]")
        lines.append(f"warning = {levels['warning']}")
        lines.append(f"critical = {levels['critical']}")
        lines.append("")

    return "\n".join(lines) + "\n"
