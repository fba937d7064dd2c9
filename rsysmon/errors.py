"""Exception types raised by rsysmon.

Startup failures (``AuthError``, ``NetworkError``) are fatal. A
``CommandError`` only affects the tick it happened in. ``TerminalError`` is
fatal but raised after the terminal has been restored.
"""

from __future__ import annotations


class RsysmonError(Exception):
    """Base class for all rsysmon errors."""


class AuthError(RsysmonError):
    """Neither agent nor password authentication succeeded."""


class NetworkError(RsysmonError):
    """The SSH transport could not be established."""


class CommandError(RsysmonError):
    """A remote command could not be run or its channel failed."""


class TerminalError(RsysmonError):
    """The curses screen could not be initialised or restored."""
