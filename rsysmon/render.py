"""Frame rendering for the dashboard.

``render`` is a pure function from the latest sample and the CPU history to
a ``Frame``: positioned, styled text that a terminal can paint. It never
touches curses, so any terminal size (including tiny ones mid-resize) can
be rendered and inspected in tests.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from rsysmon.config import DEFAULT_CONFIG
from rsysmon.sampler import DiskUsage, MetricSample

# ── Constants ──────────────────────────────────────────────────────────────

SPARK = " ▁▂▃▄▅▆▇█"
BAR_FILL = "█"
BAR_EMPTY = "░"
NOT_AVAILABLE = "n/a"
STALE_MARK = "STALE"

MIN_WIDTH = 40
MIN_HEIGHT = 12
MEM_BOX_HEIGHT = 6
MIN_CPU_BOX_HEIGHT = 4

# Style names; the terminal maps them to colour pairs.
S_NORMAL = "normal"
S_WARNING = "warning"
S_CRITICAL = "critical"
S_TITLE = "title"
S_DIM = "dim"
S_GRAPH = "graph"
S_HEADER = "header"
STYLES = (S_NORMAL, S_WARNING, S_CRITICAL, S_TITLE, S_DIM, S_GRAPH, S_HEADER)


# ── Frame ──────────────────────────────────────────────────────────────────


@dataclass(slots=True, frozen=True)
class Segment:
    y: int
    x: int
    text: str
    style: str = S_NORMAL


@dataclass(slots=True)
class Frame:
    """A full screen of styled text segments, clipped to its size."""

    width: int
    height: int
    segments: list[Segment] = field(default_factory=lambda: list[Segment]())

    def put(self, y: int, x: int, text: str, style: str = S_NORMAL) -> int:
        """Add *text* at (y, x), clipped to the frame. Returns the next column."""
        if 0 <= y < self.height and 0 <= x < self.width and text:
            clipped = text[: self.width - x]
            self.segments.append(Segment(y, x, clipped, style))
        return x + len(text)

    def lines(self) -> list[str]:
        """Plain-text rendering, one string per row."""
        grid = [[" "] * self.width for _ in range(self.height)]
        for seg in self.segments:
            for i, ch in enumerate(seg.text):
                grid[seg.y][seg.x + i] = ch
        return ["".join(row) for row in grid]

    def text(self) -> str:
        return "\n".join(self.lines())


# ── Formatting helpers ─────────────────────────────────────────────────────


def fmt_bytes(n: int | float) -> str:
    """Human-readable byte count (binary prefixes)."""
    v = float(n)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if abs(v) < 1024:
            return f"{v:.1f} {unit}"
        v /= 1024
    return f"{v:.1f} TiB"


def fmt_percent(value: float | None) -> str:
    return NOT_AVAILABLE if value is None else f"{value:.1f}%"


def fmt_usage(used: int | None, total: int | None) -> str:
    if used is None or total is None:
        return NOT_AVAILABLE
    return f"{fmt_bytes(used)} / {fmt_bytes(total)}"


def severity_style(value: float | None, metric: str, thresholds: dict[str, Any]) -> str:
    if value is None:
        return S_DIM
    levels = thresholds.get(metric, {})
    if value >= float(levels.get("critical", 95.0)):
        return S_CRITICAL
    if value >= float(levels.get("warning", 80.0)):
        return S_WARNING
    return S_NORMAL


# ── Drawing primitives ─────────────────────────────────────────────────────


def _draw_box(frame: Frame, y: int, x: int, h: int, w: int, title: str, title_style: str) -> None:
    """Draw a bordered box with *title* set into the top edge."""
    frame.put(y, x, "┌" + "─" * (w - 2) + "┐", S_DIM)
    for row in range(y + 1, y + h - 1):
        frame.put(row, x, "│", S_DIM)
        frame.put(row, x + w - 1, "│", S_DIM)
    frame.put(y + h - 1, x, "└" + "─" * (w - 2) + "┘", S_DIM)
    if title and len(title) + 4 < w:
        frame.put(y, x + 2, f" {title} ", title_style)


def _draw_bar(
    frame: Frame,
    y: int,
    x: int,
    width: int,
    pct: float | None,
    label: str,
    style: str,
) -> None:
    """Render ``label ████░░░░ suffix`` on one line."""
    cx = frame.put(y, x, f"{label:>6s} ", S_DIM)
    suffix = f" {fmt_percent(pct):>6s}"
    bar_w = width - (cx - x) - len(suffix)
    if bar_w < 3:
        return
    filled = 0 if pct is None else int(bar_w * min(max(pct, 0.0), 100.0) / 100.0)
    cx = frame.put(y, cx, BAR_FILL * filled, style)
    cx = frame.put(y, cx, BAR_EMPTY * (bar_w - filled), S_DIM)
    frame.put(y, cx, suffix, style)


def graph_rows(history: Sequence[float], width: int, height: int) -> list[str]:
    """Block-character CPU graph, top row first.

    The newest ``width`` values are drawn oldest-left, newest at the right
    edge. 0% is an empty column and 100% fills all ``height`` rows.
    """
    values = list(history)[-width:] if width > 0 else []
    pad = width - len(values)
    steps = len(SPARK) - 1
    levels = [round(min(max(v, 0.0), 100.0) / 100.0 * height * steps) for v in values]
    rows: list[str] = []
    for row in range(height):
        base = (height - 1 - row) * steps
        cells = [SPARK[min(max(level - base, 0), steps)] for level in levels]
        rows.append(" " * pad + "".join(cells))
    return rows


# ── Panels ─────────────────────────────────────────────────────────────────


def _draw_header(frame: Frame, title: str, now: float) -> None:
    w = frame.width
    ts = time.strftime("%H:%M:%S", time.localtime(now))
    frame.put(0, 0, " " * w, S_HEADER)
    frame.put(0, 1, title, S_HEADER)
    hint = "q: quit"
    frame.put(0, max(0, w - len(hint) - 2), hint, S_HEADER)
    frame.put(0, (w - len(ts)) // 2, ts, S_HEADER)


def _draw_status(frame: Frame, latest: MetricSample | None, stale: bool, error: str) -> None:
    if stale:
        x = frame.put(1, 1, f" {STALE_MARK} ", S_CRITICAL)
        if error:
            frame.put(1, x + 1, error, S_WARNING)
        return
    if latest is None:
        frame.put(1, 1, "waiting for first sample...", S_DIM)
        return
    ts = time.strftime("%H:%M:%S", time.localtime(latest.timestamp))
    frame.put(1, 1, f"updated {ts}", S_DIM)


def _draw_cpu_panel(
    frame: Frame,
    y: int,
    h: int,
    latest: MetricSample | None,
    history: Sequence[float],
    thresholds: dict[str, Any],
) -> None:
    cpu = latest.cpu_percent if latest is not None else None
    style = severity_style(cpu, "cpu_percent", thresholds)
    _draw_box(frame, y, 0, h, frame.width, f"CPU Usage: {fmt_percent(cpu)}", style)
    for i, row in enumerate(graph_rows(history, frame.width - 2, h - 2)):
        frame.put(y + 1 + i, 1, row, S_GRAPH)


def _draw_mem_panel(
    frame: Frame,
    y: int,
    latest: MetricSample | None,
    thresholds: dict[str, Any],
) -> None:
    w = frame.width
    _draw_box(frame, y, 0, MEM_BOX_HEIGHT, w, "Memory & Disk", S_TITLE)

    mem_pct = latest.memory_percent if latest is not None else None
    mem_style = severity_style(mem_pct, "ram_percent", thresholds)
    _draw_bar(frame, y + 1, 1, w - 2, mem_pct, "RAM", mem_style)
    mem = (
        fmt_usage(latest.memory_used_bytes, latest.memory_total_bytes)
        if latest is not None
        else NOT_AVAILABLE
    )
    frame.put(y + 2, 1, f"       {mem}", S_DIM)

    disk_pct = latest.disk_percent if latest is not None else None
    disk_style = severity_style(disk_pct, "disk_percent", thresholds)
    _draw_bar(frame, y + 3, 1, w - 2, disk_pct, "Disk", disk_style)
    disk = (
        fmt_usage(latest.disk_used_bytes, latest.disk_total_bytes)
        if latest is not None
        else NOT_AVAILABLE
    )
    frame.put(y + 4, 1, f"       {disk}", S_DIM)


def _draw_mounts_panel(
    frame: Frame,
    y: int,
    h: int,
    mounts: Sequence[DiskUsage],
    thresholds: dict[str, Any],
) -> None:
    """One ``mount: used / total (pct)`` line per filesystem that fits."""
    _draw_box(frame, y, 0, h, frame.width, "Disk Usage", S_TITLE)
    for i, mount in enumerate(mounts[: h - 2]):
        style = severity_style(mount.percent, "disk_percent", thresholds)
        usage = fmt_usage(mount.used_bytes, mount.total_bytes)
        text = f"{mount.mount}: {usage} ({fmt_percent(mount.percent)})"
        frame.put(y + 1 + i, 2, text[: frame.width - 4], style)


def mounts_box_height(mount_count: int, height: int) -> int:
    """Rows given to the mounts box; 0 when there is nothing to show or no room.

    The CPU box always keeps at least ``MIN_CPU_BOX_HEIGHT`` rows.
    """
    if mount_count == 0:
        return 0
    spare = height - 2 - MEM_BOX_HEIGHT - MIN_CPU_BOX_HEIGHT
    h = min(mount_count + 2, spare)
    return h if h >= 3 else 0


# ── Entry point ────────────────────────────────────────────────────────────


def render(
    latest: MetricSample | None,
    history: Sequence[float],
    width: int,
    height: int,
    *,
    stale: bool = False,
    error: str = "",
    title: str = "rsysmon",
    thresholds: dict[str, Any] | None = None,
    now: float | None = None,
) -> Frame:
    """Build one dashboard frame.

    Args:
        latest: Sample to display; None before the first tick. Unavailable
            fields are shown as ``n/a``.
            Its ``mounts`` get a "Disk Usage" box under the memory box
            when the terminal is tall enough.
        history: CPU percentages, oldest first.
        width, height: Terminal size in cells.
        stale: Show the stale indicator (the last tick failed and *latest*
            is an older sample).
        error: Reason shown next to the stale indicator.
        title: Header text, usually ``user@host``.
        thresholds: Warning/critical levels per metric.
        now: Clock for the header; defaults to the current time.
    """
    frame = Frame(max(0, width), max(0, height))
    if width < MIN_WIDTH or height < MIN_HEIGHT:
        frame.put(0, 0, f"Terminal too small (need {MIN_WIDTH}x{MIN_HEIGHT}+)")
        if stale:
            frame.put(1, 0, STALE_MARK, S_CRITICAL)
        return frame

    if thresholds is None:
        thresholds = DEFAULT_CONFIG["thresholds"]
    if now is None:
        now = time.time()

    _draw_header(frame, title, now)
    _draw_status(frame, latest, stale, error)
    mounts = latest.mounts if latest is not None else ()
    mounts_h = mounts_box_height(len(mounts), height)
    cpu_h = height - 2 - MEM_BOX_HEIGHT - mounts_h
    _draw_cpu_panel(frame, 2, cpu_h, latest, history, thresholds)
    _draw_mem_panel(frame, 2 + cpu_h, latest, thresholds)
    if mounts_h:
        _draw_mounts_panel(frame, 2 + cpu_h + MEM_BOX_HEIGHT, mounts_h, mounts, thresholds)
    return frame
