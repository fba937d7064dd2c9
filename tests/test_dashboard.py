"""Tests for the dashboard loop, driven by a fake terminal and clock."""

from __future__ import annotations

from collections.abc import Callable

import pytest
from conftest import FakeSession, ok, procps_responder

from rsysmon.dashboard import DashboardLoop, RunState
from rsysmon.errors import AuthError
from rsysmon.render import STALE_MARK, Frame
from rsysmon.terminal import KEY_RESIZE
from rsysmon.transport import CommandResult

Q = ord("q")


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTerminal:
    """Records frames; *keys* decides what each wait returns."""

    def __init__(
        self,
        clock: FakeClock,
        keys: Callable[[FakeTerminal], int | None],
        size: tuple[int, int] = (80, 24),
    ) -> None:
        self.clock = clock
        self.keys = keys
        self.cols, self.rows = size
        self.frames: list[Frame] = []
        self.waits: list[float] = []
        self.clears = 0
        self.entered = False
        self.exited = False

    def __enter__(self) -> FakeTerminal:
        self.entered = True
        return self

    def __exit__(self, *exc: object) -> None:
        self.exited = True

    def size(self) -> tuple[int, int]:
        return self.cols, self.rows

    def wait_key(self, timeout: float) -> int | None:
        self.waits.append(timeout)
        self.clock.advance(timeout)
        return self.keys(self)

    def clear(self) -> None:
        self.clears += 1

    def draw(self, frame: Frame) -> None:
        self.frames.append(frame)


def quit_after(n: int) -> Callable[[FakeTerminal], int | None]:
    return lambda term: Q if len(term.frames) >= n else None


def top_output(cpu: float) -> str:
    return f"%Cpu(s): {cpu:.1f} us,  0.0 sy,  0.0 ni, {100 - cpu:.1f} id\n"


def scripted_cpu(outputs: list[str]) -> Callable[[str], CommandResult]:
    """procps responder whose top output changes on every call."""
    base = procps_responder()
    calls = iter(outputs)

    def respond(command: str) -> CommandResult:
        if "top" in command:
            return ok(next(calls))
        return base(command)

    return respond


def make_loop(
    session: FakeSession,
    terminal: FakeTerminal,
    clock: FakeClock,
    **kwargs: object,
) -> DashboardLoop:
    kwargs.setdefault("dialect", "procps")
    return DashboardLoop(
        lambda: session,  # type: ignore[arg-type, return-value]
        lambda: terminal,  # type: ignore[arg-type, return-value]
        clock=clock,
        **kwargs,  # type: ignore[arg-type]
    )


# ── Scenario: one malformed tick among five ───────────────────────────────


class TestStaleTick:
    def setup_method(self) -> None:
        outputs = [top_output(10.0), top_output(20.0), "garbage\n", top_output(40.0), top_output(50.0)]
        self.session = FakeSession(scripted_cpu(outputs))
        self.clock = FakeClock()
        self.terminal = FakeTerminal(self.clock, quit_after(5))
        self.loop = make_loop(self.session, self.terminal, self.clock, interval=1.0)
        self.exit_code = self.loop.run()

    def test_exits_cleanly(self) -> None:
        assert self.exit_code == 0
        assert self.loop.state is RunState.STOPPED
        assert self.loop.ticks == 5
        assert self.loop.failed_ticks == 1

    def test_fresh_frames(self) -> None:
        frames = [f.text() for f in self.terminal.frames]
        assert len(frames) == 5
        for i, cpu in ((0, "10.0"), (1, "20.0"), (3, "40.0"), (4, "50.0")):
            assert f"CPU Usage: {cpu}%" in frames[i]
            assert STALE_MARK not in frames[i]

    def test_stale_frame_repeats_previous_values(self) -> None:
        frame = self.terminal.frames[2].lines()
        text = "\n".join(frame)
        assert "CPU Usage: 20.0%" in text
        assert STALE_MARK in frame[1]
        assert "cpu:" in frame[1]

    def test_failed_tick_leaves_history_alone(self) -> None:
        assert self.loop.history is not None
        assert self.loop.history.as_sequence() == (10.0, 20.0, 40.0, 50.0)

    def test_cleanup(self) -> None:
        assert self.session.close_calls == 1
        assert self.terminal.entered and self.terminal.exited

    def test_ticks_follow_interval(self) -> None:
        assert self.clock.now == pytest.approx(4.2, abs=0.01)


# ── State machine ──────────────────────────────────────────────────────────


class TestRunState:
    def test_initial_state(self, session: FakeSession) -> None:
        clock = FakeClock()
        loop = make_loop(session, FakeTerminal(clock, quit_after(1)), clock)
        assert loop.state is RunState.CONNECTING

    def test_connect_failure_stops_without_terminal(self) -> None:
        clock = FakeClock()
        terminal = FakeTerminal(clock, quit_after(1))

        def refuse() -> FakeSession:
            raise AuthError("authentication failed for ops@db1")

        loop = DashboardLoop(refuse, lambda: terminal, clock=clock)  # type: ignore[arg-type, return-value]
        with pytest.raises(AuthError):
            loop.run()
        assert loop.state is RunState.STOPPED
        assert not terminal.entered

    def test_running_while_looping(self, session: FakeSession) -> None:
        clock = FakeClock()
        seen: list[RunState] = []

        def keys(term: FakeTerminal) -> int | None:
            seen.append(loop.state)
            return Q

        loop = make_loop(session, FakeTerminal(clock, keys), clock)
        loop.run()
        assert seen == [RunState.RUNNING]
        assert loop.state is RunState.STOPPED

    def test_uppercase_quit(self, session: FakeSession) -> None:
        clock = FakeClock()
        loop = make_loop(session, FakeTerminal(clock, lambda t: ord("Q")), clock)
        assert loop.run() == 0

    def test_error_still_restores_and_closes(self, session: FakeSession) -> None:
        clock = FakeClock()

        def explode(term: FakeTerminal) -> int | None:
            raise RuntimeError("boom")

        terminal = FakeTerminal(clock, explode)
        loop = make_loop(session, terminal, clock)
        with pytest.raises(RuntimeError):
            loop.run()
        assert terminal.exited
        assert session.close_calls == 1
        assert loop.state is RunState.STOPPED

    def test_interrupt_still_restores_and_closes(self, session: FakeSession) -> None:
        clock = FakeClock()

        def interrupt(term: FakeTerminal) -> int | None:
            raise KeyboardInterrupt

        terminal = FakeTerminal(clock, interrupt)
        with pytest.raises(KeyboardInterrupt):
            make_loop(session, terminal, clock).run()
        assert terminal.exited
        assert session.close_calls == 1

    @pytest.mark.parametrize("interval", [0.0, -1.0])
    def test_rejects_bad_interval(self, session: FakeSession, interval: float) -> None:
        clock = FakeClock()
        with pytest.raises(ValueError):
            make_loop(session, FakeTerminal(clock, quit_after(1)), clock, interval=interval)


# ── Ticks and input ────────────────────────────────────────────────────────


class TestTicks:
    def test_quit_is_responsive_with_long_interval(self, session: FakeSession) -> None:
        clock = FakeClock()
        terminal = FakeTerminal(clock, quit_after(1))
        make_loop(session, terminal, clock, interval=30.0, poll_timeout=0.2).run()
        assert terminal.waits == [0.2]
        assert clock.now == pytest.approx(0.2)

    def test_waits_never_exceed_poll_timeout(self, session: FakeSession) -> None:
        clock = FakeClock()
        terminal = FakeTerminal(clock, quit_after(3))
        make_loop(session, terminal, clock, interval=1.0, poll_timeout=0.3).run()
        assert terminal.waits
        assert max(terminal.waits) <= 0.3

    def test_slow_sample_skips_missed_ticks(self) -> None:
        clock = FakeClock()
        base = procps_responder()
        tick_times: list[float] = []

        def slow(command: str) -> CommandResult:
            if "top" in command:
                tick_times.append(clock.now)
                clock.advance(3.5)
            return base(command)

        terminal = FakeTerminal(clock, quit_after(2))
        loop = make_loop(FakeSession(slow), terminal, clock, interval=1.0)
        loop.run()
        assert loop.ticks == 2
        assert tick_times[0] == 0.0
        assert tick_times[1] == pytest.approx(4.5)

    def test_all_commands_failing_first(self) -> None:
        base = procps_responder(cpu=top_output(30.0))
        calls = {"n": 0}

        def respond(command: str) -> CommandResult:
            calls["n"] += 1
            if calls["n"] <= 3:
                return CommandResult("", "broken pipe", 1)
            return base(command)

        clock = FakeClock()
        terminal = FakeTerminal(clock, quit_after(2))
        loop = make_loop(FakeSession(respond), terminal, clock)
        loop.run()

        first = terminal.frames[0].text()
        assert STALE_MARK in first
        assert "CPU Usage: n/a" in first
        assert "CPU Usage: 30.0%" in terminal.frames[1].text()
        assert loop.history is not None
        assert loop.history.as_sequence() == (30.0,)

    def test_probe_when_dialect_is_auto(self, session: FakeSession) -> None:
        clock = FakeClock()
        make_loop(session, FakeTerminal(clock, quit_after(1)), clock, dialect="auto").run()
        assert session.commands[0] == "uname -s"

    def test_default_title(self, session: FakeSession) -> None:
        clock = FakeClock()
        terminal = FakeTerminal(clock, quit_after(1))
        make_loop(session, terminal, clock).run()
        assert "rsysmon ops@db1" in terminal.frames[0].lines()[0]

    def test_mount_listing(self, session: FakeSession) -> None:
        clock = FakeClock()
        terminal = FakeTerminal(clock, quit_after(1))
        make_loop(session, terminal, clock, list_mounts=True).run()
        assert session.commands[-1] == "env LC_ALL=C sh -c 'df -P -B1'"
        text = terminal.frames[0].text()
        assert "Disk Usage" in text
        assert "/: 187.2 GiB / 467.9 GiB (40.0%)" in text

    def test_mounts_off_by_default(self, session: FakeSession) -> None:
        clock = FakeClock()
        terminal = FakeTerminal(clock, quit_after(1))
        make_loop(session, terminal, clock).run()
        assert "Disk Usage" not in terminal.frames[0].text()


# ── Resize ─────────────────────────────────────────────────────────────────


class TestResize:
    def test_resize_redraws_without_touching_history(self, session: FakeSession) -> None:
        clock = FakeClock()
        resized = {"done": False}

        def keys(term: FakeTerminal) -> int | None:
            if len(term.frames) == 1 and not resized["done"]:
                resized["done"] = True
                term.cols, term.rows = 50, 15
                return KEY_RESIZE
            return quit_after(3)(term)

        terminal = FakeTerminal(clock, keys)
        loop = make_loop(session, terminal, clock)
        loop.run()

        assert loop.history is not None
        assert loop.history.capacity == 78
        assert terminal.clears == 1
        assert terminal.frames[0].width == 80
        assert terminal.frames[1].width == 50
        assert terminal.frames[1].height == 15
        assert loop.ticks == 2

    def test_shrink_below_minimum(self, session: FakeSession) -> None:
        clock = FakeClock()

        def keys(term: FakeTerminal) -> int | None:
            if len(term.frames) == 1:
                term.cols, term.rows = 20, 5
                return KEY_RESIZE
            return Q

        terminal = FakeTerminal(clock, keys)
        loop = make_loop(session, terminal, clock)
        assert loop.run() == 0
        assert terminal.frames[-1].lines()[0].startswith("Terminal too small")
        assert loop.history is not None
        assert loop.history.capacity == 78
