"""Remote metric sampling: run inspection commands, parse their output.

Each remote OS family is a named ``Dialect``: three commands (CPU, memory,
disk) and the parsers that understand their output. The dialect is picked
once per session from ``uname -s`` or forced from config.

All commands run under ``LC_ALL=C`` so numbers use a decimal point and
labels are in English. The expected output shapes are:

procps (Linux)::

    %Cpu(s):  3.1 us,  1.0 sy,  0.0 ni, 95.8 id, ...   (top -bn1)
    Mem:   16323567616  4826361856  ...                 (free -b)
    /dev/sda1  105088212992 45022220288 ... 46% /       (df -P -B1)

darwin (macOS)::

    CPU usage: 5.26% user, 10.52% sys, 84.21% idle      (top -l 1 -n 0)
    17179869184 + vm_stat page counts                   (sysctl; vm_stat)
    /dev/disk3s1  971350180 450123456 ... 47% /         (df -P -k)

With mount listing on, the same ``df`` runs without a path and every row
whose filesystem starts with ``/`` is kept.
"""

from __future__ import annotations

import logging
import re
import shlex
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from rsysmon.errors import CommandError
from rsysmon.transport import Session

logger = logging.getLogger(__name__)

# Sentinel for a metric that could not be sampled this tick.
UNAVAILABLE = None


# ── Data types ─────────────────────────────────────────────────────────────


@dataclass(slots=True, frozen=True)
class DiskUsage:
    """Usage of one mounted filesystem."""

    mount: str
    used_bytes: int
    total_bytes: int

    @property
    def percent(self) -> float | None:
        return _percent(self.used_bytes, self.total_bytes)


@dataclass(slots=True, frozen=True)
class MetricSample:
    """One tick's worth of metrics. ``None`` fields are unavailable.

    ``disk_*`` describe the configured disk path; ``mounts`` lists every
    device-backed filesystem when mount listing is enabled.
    """

    timestamp: float
    cpu_percent: float | None = UNAVAILABLE
    memory_used_bytes: int | None = UNAVAILABLE
    memory_total_bytes: int | None = UNAVAILABLE
    disk_used_bytes: int | None = UNAVAILABLE
    disk_total_bytes: int | None = UNAVAILABLE
    mounts: tuple[DiskUsage, ...] = ()
    errors: tuple[str, ...] = field(default_factory=tuple)

    @property
    def partial(self) -> bool:
        """True when at least one metric failed to sample."""
        return bool(self.errors)

    @property
    def memory_percent(self) -> float | None:
        return _percent(self.memory_used_bytes, self.memory_total_bytes)

    @property
    def disk_percent(self) -> float | None:
        return _percent(self.disk_used_bytes, self.disk_total_bytes)


def _percent(used: int | None, total: int | None) -> float | None:
    if used is None or total is None or total <= 0:
        return None
    return min(100.0, 100.0 * used / total)


class ParseError(ValueError):
    """Command output did not have the expected shape."""


def clamp_percent(value: float) -> float:
    return max(0.0, min(100.0, value))


# ── Parsers ────────────────────────────────────────────────────────────────

_NUMBER = r"-?\d+(?:\.\d+)?"
_PROCPS_FIELD = re.compile(rf"({_NUMBER})\s*%?\s*([a-z]{{2}})\b")
_DARWIN_FIELD = re.compile(rf"({_NUMBER})%\s*(user|sys|idle)\b")
_DF_ROW = re.compile(r"\s(\d+)\s+(\d+)\s+(\d+)\s+(\d+)%\s+(\S.*)$")
_PAGE_SIZE = re.compile(r"page size of (\d+) bytes")


def _non_negative(text: str, what: str) -> int:
    try:
        value = int(text)
    except ValueError as e:
        raise ParseError(f"{what}: not an integer: {text!r}") from e
    if value < 0:
        raise ParseError(f"{what}: negative value {value}")
    return value


def parse_procps_cpu(text: str) -> float:
    """CPU busy percent (user + system) from ``top -bn1`` summary lines."""
    for line in text.splitlines():
        if "Cpu(s)" not in line:
            continue
        summary = line.split(":", 1)[-1]
        fields = {label: float(num) for num, label in _PROCPS_FIELD.findall(summary)}
        if "us" not in fields:
            raise ParseError(f"no user time in {line.strip()!r}")
        return clamp_percent(fields["us"] + fields.get("sy", 0.0))
    raise ParseError("no Cpu(s) line in top output")


def parse_darwin_cpu(text: str) -> float:
    """CPU busy percent (user + sys) from macOS ``top -l 1`` output."""
    for line in text.splitlines():
        if not line.startswith("CPU usage:"):
            continue
        fields = {label: float(num) for num, label in _DARWIN_FIELD.findall(line)}
        if "user" not in fields:
            raise ParseError(f"no user time in {line.strip()!r}")
        return clamp_percent(fields["user"] + fields.get("sys", 0.0))
    raise ParseError("no 'CPU usage:' line in top output")


def parse_free(text: str) -> tuple[int, int]:
    """(used, total) bytes from the ``Mem:`` row of ``free -b``."""
    for line in text.splitlines():
        if line.startswith("Mem:"):
            parts = line.split()
            if len(parts) < 3:
                raise ParseError(f"short Mem: row {line.strip()!r}")
            total = _non_negative(parts[1], "memory total")
            used = _non_negative(parts[2], "memory used")
            return used, total
    raise ParseError("no Mem: row in free output")


def parse_vm_stat(text: str) -> tuple[int, int]:
    """(used, total) bytes from ``sysctl -n hw.memsize; vm_stat``.

    Used memory is active + wired + compressed pages.
    """
    lines = [line for line in text.splitlines() if line.strip()]
    if not lines:
        raise ParseError("empty memory output")
    total = _non_negative(lines[0].strip(), "hw.memsize")

    page_match = _PAGE_SIZE.search(text)
    if page_match is None:
        raise ParseError("no page size in vm_stat output")
    page_size = int(page_match.group(1))

    pages: dict[str, int] = {}
    for line in lines[1:]:
        label, sep, value = line.partition(":")
        if sep and label.startswith("Pages"):
            pages[label.strip()] = _non_negative(value.strip().rstrip("."), label.strip())

    if "Pages active" not in pages or "Pages wired down" not in pages:
        raise ParseError("vm_stat output lacks active/wired page counts")
    used_pages = (
        pages["Pages active"]
        + pages["Pages wired down"]
        + pages.get("Pages occupied by compressor", 0)
    )
    return used_pages * page_size, total


def parse_df(text: str, block_size: int = 1) -> tuple[int, int]:
    """(used, total) bytes from the last row of POSIX ``df -P`` output."""
    rows = [line for line in text.splitlines() if line.strip()]
    if len(rows) < 2:
        raise ParseError("df output has no data row")
    match = _DF_ROW.search(rows[-1])
    if match is None:
        raise ParseError(f"unrecognised df row {rows[-1].strip()!r}")
    total = int(match.group(1)) * block_size
    used = int(match.group(2)) * block_size
    return used, total


def parse_df_mounts(text: str, block_size: int = 1) -> tuple[DiskUsage, ...]:
    """Every device-backed filesystem in POSIX ``df -P`` output.

    Rows whose filesystem does not start with ``/`` (tmpfs, overlay,
    devfs...) are skipped, as are rows that are not in ``df -P`` shape.
    """
    rows = [line for line in text.splitlines() if line.strip()]
    if not rows:
        raise ParseError("empty df output")
    mounts: list[DiskUsage] = []
    for line in rows[1:]:
        if not line.startswith("/"):
            continue
        match = _DF_ROW.search(line)
        if match is None:
            continue
        mounts.append(
            DiskUsage(
                mount=match.group(5),
                used_bytes=int(match.group(2)) * block_size,
                total_bytes=int(match.group(1)) * block_size,
            )
        )
    return tuple(mounts)


# ── Dialects ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Dialect:
    """Commands and parsers for one family of remote systems."""

    name: str
    cpu_command: str
    memory_command: str
    disk_command: str  # formatted with the quoted mount path
    mounts_command: str
    parse_cpu: Callable[[str], float]
    parse_memory: Callable[[str], tuple[int, int]]
    parse_disk: Callable[[str], tuple[int, int]]
    parse_mounts: Callable[[str], tuple[DiskUsage, ...]]


PROCPS = Dialect(
    name="procps",
    cpu_command="top -bn1 | head -n 5",
    memory_command="free -b",
    disk_command="df -P -B1 {path}",
    mounts_command="df -P -B1",
    parse_cpu=parse_procps_cpu,
    parse_memory=parse_free,
    parse_disk=parse_df,
    parse_mounts=parse_df_mounts,
)

DARWIN = Dialect(
    name="darwin",
    cpu_command="top -l 1 -n 0",
    memory_command="sysctl -n hw.memsize; vm_stat",
    disk_command="df -P -k {path}",
    mounts_command="df -P -k",
    parse_cpu=parse_darwin_cpu,
    parse_memory=parse_vm_stat,
    parse_disk=lambda text: parse_df(text, block_size=1024),
    parse_mounts=lambda text: parse_df_mounts(text, block_size=1024),
)

DIALECTS: dict[str, Dialect] = {d.name: d for d in (PROCPS, DARWIN)}

_UNAME_DIALECTS = {"linux": PROCPS, "darwin": DARWIN}


def get_dialect(name: str) -> Dialect:
    try:
        return DIALECTS[name]
    except KeyError:
        raise ValueError(
            f"unknown dialect {name!r} (choose from {', '.join(sorted(DIALECTS))})"
        ) from None


def select_dialect(uname: str) -> Dialect:
    """Map ``uname -s`` output to a dialect; unknown systems get procps."""
    system = uname.strip().lower()
    dialect = _UNAME_DIALECTS.get(system)
    if dialect is None:
        logger.warning("unknown remote system %r, assuming procps", uname.strip())
        return PROCPS
    return dialect


def probe_dialect(session: Session) -> Dialect:
    """Run ``uname -s`` on the remote host and choose a dialect."""
    try:
        result = session.execute("uname -s")
    except CommandError as e:
        logger.warning("dialect probe failed (%s), assuming procps", e)
        return PROCPS
    if not result.ok:
        logger.warning("uname exited %d, assuming procps", result.exit_status)
        return PROCPS
    dialect = select_dialect(result.stdout)
    logger.info("remote dialect: %s", dialect.name)
    return dialect


def _c_locale(command: str) -> str:
    return f"env LC_ALL=C sh -c {shlex.quote(command)}"


# ── Sampler ────────────────────────────────────────────────────────────────


class MetricSampler:
    """Samples CPU, memory and disk through a session.

    A failure in one command (channel error, non-zero exit, bad output)
    only blanks that metric; the others are still returned. With
    ``list_mounts`` every device-backed filesystem is sampled too, using
    one extra ``df`` per tick.
    """

    def __init__(
        self,
        session: Session,
        dialect: Dialect,
        disk_path: str = "/",
        clock: Callable[[], float] = time.time,
        *,
        list_mounts: bool = False,
    ) -> None:
        self.session = session
        self.dialect = dialect
        self.disk_path = disk_path
        self.list_mounts = list_mounts
        self._clock = clock

    def sample(self) -> MetricSample:
        timestamp = self._clock()
        errors: list[str] = []

        cpu = self._measure("cpu", self.dialect.cpu_command, self.dialect.parse_cpu, errors)
        memory = self._measure(
            "memory", self.dialect.memory_command, self.dialect.parse_memory, errors
        )
        disk_command = self.dialect.disk_command.format(path=shlex.quote(self.disk_path))
        disk = self._measure("disk", disk_command, self.dialect.parse_disk, errors)
        mounts: tuple[DiskUsage, ...] = ()
        if self.list_mounts:
            # df exits 1 when a single mount is unreadable; the rest still count
            mounts = self._measure(
                "mounts",
                self.dialect.mounts_command,
                self.dialect.parse_mounts,
                errors,
                accept_failed_output=True,
            ) or ()

        return MetricSample(
            timestamp=timestamp,
            cpu_percent=cpu,
            memory_used_bytes=memory[0] if memory else UNAVAILABLE,
            memory_total_bytes=memory[1] if memory else UNAVAILABLE,
            disk_used_bytes=disk[0] if disk else UNAVAILABLE,
            disk_total_bytes=disk[1] if disk else UNAVAILABLE,
            mounts=mounts,
            errors=tuple(errors),
        )

    def _measure(
        self,
        label: str,
        command: str,
        parse: Callable[[str], Any],
        errors: list[str],
        accept_failed_output: bool = False,
    ) -> Any:
        try:
            result = self.session.execute(_c_locale(command))
        except CommandError as e:
            errors.append(f"{label}: {e}")
            return UNAVAILABLE
        if not result.ok:
            detail = result.stderr.strip().splitlines()
            reason = detail[-1] if detail else "no output"
            if not (accept_failed_output and result.stdout.strip()):
                errors.append(f"{label}: exit {result.exit_status}: {reason}")
                return UNAVAILABLE
            logger.debug("%s: exit %d ignored: %s", label, result.exit_status, reason)
        try:
            return parse(result.stdout)
        except ParseError as e:
            errors.append(f"{label}: {e}")
            return UNAVAILABLE
