"""Curses screen as a scoped resource.

``CursesTerminal`` puts the terminal into cbreak/no-echo mode with a hidden
cursor on ``__enter__`` and puts everything back on ``__exit__``, whatever
the exit path. It is the only module that talks to curses.
"""

from __future__ import annotations

import curses
import logging
from typing import Any

from rsysmon.errors import TerminalError
from rsysmon.render import (
    S_CRITICAL,
    S_DIM,
    S_GRAPH,
    S_HEADER,
    S_NORMAL,
    S_TITLE,
    S_WARNING,
    Frame,
)

logger = logging.getLogger(__name__)

KEY_RESIZE = curses.KEY_RESIZE

# Curses colour-pair IDs
C_NORMAL = 1
C_WARNING = 2
C_CRITICAL = 3
C_TITLE = 4
C_DIM = 5
C_BLUE = 6


def _init_colors() -> None:
    curses.start_color()
    curses.use_default_colors()
    curses.init_pair(C_NORMAL, curses.COLOR_GREEN, -1)
    curses.init_pair(C_WARNING, curses.COLOR_YELLOW, -1)
    curses.init_pair(C_CRITICAL, curses.COLOR_RED, -1)
    curses.init_pair(C_TITLE, curses.COLOR_CYAN, -1)
    curses.init_pair(C_DIM, curses.COLOR_WHITE, -1)
    curses.init_pair(C_BLUE, curses.COLOR_BLUE, -1)


def _style_attrs() -> dict[str, int]:
    return {
        S_NORMAL: curses.color_pair(C_NORMAL),
        S_WARNING: curses.color_pair(C_WARNING) | curses.A_BOLD,
        S_CRITICAL: curses.color_pair(C_CRITICAL) | curses.A_BOLD,
        S_TITLE: curses.color_pair(C_TITLE) | curses.A_BOLD,
        S_DIM: curses.color_pair(C_DIM),
        S_GRAPH: curses.color_pair(C_BLUE),
        S_HEADER: curses.color_pair(C_TITLE) | curses.A_REVERSE,
    }


def _safe(win: Any, *args: Any) -> None:
    """addstr wrapper that swallows out-of-bounds errors."""
    try:
        win.addstr(*args)
    except curses.error:
        pass


class CursesTerminal:
    """Context manager owning the curses screen."""

    def __init__(self) -> None:
        self._stdscr: Any = None
        self._attrs: dict[str, int] = {}

    def __enter__(self) -> CursesTerminal:
        try:
            self._stdscr = curses.initscr()
            curses.noecho()
            curses.cbreak()
            self._stdscr.keypad(True)
        except curses.error as e:
            self._restore(suppress=True)
            raise TerminalError(f"cannot initialise terminal: {e}") from e

        try:
            _init_colors()
            self._attrs = _style_attrs()
        except curses.error:
            logger.debug("terminal has no colour support")
            self._attrs = {}
        try:
            curses.curs_set(0)
        except curses.error:
            logger.debug("terminal cannot hide the cursor")
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        # Only raise a restore failure when nothing else is propagating.
        self._restore(suppress=exc_type is not None)

    def _restore(self, suppress: bool) -> None:
        if self._stdscr is None:
            return
        stdscr, self._stdscr = self._stdscr, None
        try:
            stdscr.keypad(False)
            curses.echo()
            curses.nocbreak()
            try:
                curses.curs_set(1)
            except curses.error:
                pass
            curses.endwin()
        except curses.error as e:
            if suppress:
                logger.error("terminal restore failed: %s", e)
                return
            raise TerminalError(f"cannot restore terminal: {e}") from e

    # ── Screen operations ──────────────────────────────────────────────────

    def size(self) -> tuple[int, int]:
        """(columns, rows) of the screen."""
        max_y, max_x = self._stdscr.getmaxyx()
        return max_x, max_y

    def wait_key(self, timeout: float) -> int | None:
        """Block until a key arrives or *timeout* seconds pass."""
        self._stdscr.timeout(max(0, int(timeout * 1000)))
        key = self._stdscr.getch()
        return None if key == -1 else key

    def clear(self) -> None:
        self._stdscr.clear()

    def draw(self, frame: Frame) -> None:
        self._stdscr.erase()
        for seg in frame.segments:
            _safe(self._stdscr, seg.y, seg.x, seg.text, self._attrs.get(seg.style, 0))
        self._stdscr.refresh()
