"""Interactive terminal dashboard for a remote host.

The ``DashboardLoop`` owns the SSH session, the CPU history and the run
state. A single thread alternates between waiting for a key and sampling
on a fixed cadence: each wait lasts until the next tick deadline or
``poll_timeout``, whichever is nearer, so ``q`` is noticed quickly even with
long intervals.

Usage:
    rsysmon monitor -H myhost
    rsysmon monitor -H myhost --interval 2 --config path/to/config.toml
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from enum import Enum
from typing import Any

from rsysmon.config import DEFAULT_CONFIG
from rsysmon.errors import CommandError
from rsysmon.history import HARD_CAP, HistoryBuffer, history_capacity
from rsysmon.render import render
from rsysmon.sampler import MetricSample, MetricSampler, get_dialect, probe_dialect
from rsysmon.terminal import KEY_RESIZE, CursesTerminal
from rsysmon.transport import Session

logger = logging.getLogger(__name__)

QUIT_KEYS = (ord("q"), ord("Q"))


class RunState(Enum):
    CONNECTING = "connecting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class DashboardLoop:
    """Connect, then sample and redraw until the quit key is pressed.

    Args:
        connect: Opens the SSH session; may raise AuthError/NetworkError.
        terminal_factory: Returns a context manager that owns the screen.
        interval: Seconds between samples.
        poll_timeout: Longest single wait for a key press.
        history_cap: Upper bound on the CPU history length.
        dialect: Remote command dialect name, or "auto" to probe.
        disk_path: Mount point whose usage is shown.
        list_mounts: Also sample and show every mounted filesystem.
        thresholds: Warning/critical colour levels per metric.
        title: Header text; defaults to the session's user@host.
        clock: Monotonic time source.
    """

    def __init__(
        self,
        connect: Callable[[], Session],
        terminal_factory: Callable[[], CursesTerminal] = CursesTerminal,
        *,
        interval: float = 1.0,
        poll_timeout: float = 0.2,
        history_cap: int = HARD_CAP,
        dialect: str = "auto",
        disk_path: str = "/",
        list_mounts: bool = False,
        thresholds: dict[str, Any] | None = None,
        title: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        if poll_timeout <= 0:
            raise ValueError(f"poll_timeout must be positive, got {poll_timeout}")
        self._connect = connect
        self._terminal_factory = terminal_factory
        self.interval = interval
        self.poll_timeout = poll_timeout
        self.history_cap = history_cap
        self.dialect = dialect
        self.disk_path = disk_path
        self.list_mounts = list_mounts
        self.thresholds = thresholds if thresholds is not None else DEFAULT_CONFIG["thresholds"]
        self.title = title
        self._clock = clock

        self.state = RunState.CONNECTING
        self.history: HistoryBuffer | None = None
        self.latest: MetricSample | None = None
        self.last_good: MetricSample | None = None
        self.stale = False
        self.error = ""
        self.ticks = 0
        self.failed_ticks = 0

    # ── State machine ──────────────────────────────────────────────────────

    def run(self) -> int:
        """Run until quit. Returns the process exit code.

        Raises:
            AuthError, NetworkError: Connecting failed; the loop is STOPPED.
            TerminalError: The screen could not be set up or restored.
        """
        self.state = RunState.CONNECTING
        try:
            session = self._connect()
        except BaseException:
            self.state = RunState.STOPPED
            raise
        if self.title is None:
            self.title = f"rsysmon {session.username}@{session.host}"

        try:
            sampler = self._make_sampler(session)
            with self._terminal_factory() as terminal:
                cols, _rows = terminal.size()
                self.history = HistoryBuffer(history_capacity(cols, self.history_cap))
                self.state = RunState.RUNNING
                logger.info(
                    "monitoring every %.1fs, history of %d samples",
                    self.interval,
                    self.history.capacity,
                )
                self._loop(terminal, sampler)
        finally:
            self.state = RunState.STOPPING
            session.close()
            self.state = RunState.STOPPED
        return 0

    def _make_sampler(self, session: Session) -> MetricSampler:
        if self.dialect == "auto":
            dialect = probe_dialect(session)
        else:
            dialect = get_dialect(self.dialect)
        return MetricSampler(
            session, dialect, disk_path=self.disk_path, list_mounts=self.list_mounts
        )

    def _loop(self, terminal: CursesTerminal, sampler: MetricSampler) -> None:
        next_tick = self._clock()
        while self.state is RunState.RUNNING:
            if self._clock() >= next_tick:
                self._tick(terminal, sampler)
                next_tick += self.interval
                now = self._clock()
                if next_tick <= now:
                    # The sample overran one or more ticks; skip them.
                    next_tick = now + self.interval

            wait = min(self.poll_timeout, max(0.0, next_tick - self._clock()))
            key = terminal.wait_key(wait)
            if key is None:
                continue
            if key in QUIT_KEYS:
                logger.info("quit requested after %d ticks", self.ticks)
                self.state = RunState.STOPPING
            elif key == KEY_RESIZE:
                terminal.clear()
                self._redraw(terminal)

    # ── Ticks ──────────────────────────────────────────────────────────────

    def _tick(self, terminal: CursesTerminal, sampler: MetricSampler) -> None:
        assert self.history is not None
        self.ticks += 1
        try:
            sample = sampler.sample()
        except CommandError as e:
            self._fail(str(e))
        else:
            if sample.partial or sample.cpu_percent is None:
                if self.last_good is None:
                    # Nothing better to show yet; render what did parse.
                    self.latest = sample
                self._fail("; ".join(sample.errors) or "cpu unavailable")
            else:
                self.history.push(sample.cpu_percent)
                self.latest = self.last_good = sample
                self.stale = False
                self.error = ""
        self._redraw(terminal)

    def _fail(self, error: str) -> None:
        self.failed_ticks += 1
        self.stale = True
        self.error = error
        logger.warning("tick %d failed: %s", self.ticks, error)

    def _redraw(self, terminal: CursesTerminal) -> None:
        assert self.history is not None
        cols, rows = terminal.size()
        frame = render(
            self.latest,
            self.history.as_sequence(),
            cols,
            rows,
            stale=self.stale,
            error=self.error,
            title=self.title or "rsysmon",
            thresholds=self.thresholds,
        )
        terminal.draw(frame)
