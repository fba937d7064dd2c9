"""Shared fakes: a scripted SSH session and remote command output."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from rsysmon.errors import CommandError
from rsysmon.transport import CommandResult

TOP_PROCPS = """\
top - 10:15:01 up 3 days,  2:11,  1 user,  load average: 0.31, 0.25, 0.20
Tasks: 212 total,   1 running, 211 sleeping,   0 stopped,   0 zombie
%Cpu(s): 12.5 us,  4.2 sy,  0.0 ni, 82.9 id,  0.4 wa,  0.0 hi,  0.0 si,  0.0 st
MiB Mem :  15567.4 total,   2741.3 free,   4602.7 used,   8223.4 buff/cache
MiB Swap:   2048.0 total,   2048.0 free,      0.0 used.  10612.5 avail Mem
"""

FREE_B = """\
               total        used        free      shared  buff/cache   available
Mem:     16323567616  4826361856  2874466304   398127104  8622739456 11116834816
Swap:     2147479552           0  2147479552
"""

DF_B1 = """\
Filesystem        1-blocks        Used   Available Capacity Mounted on
/dev/nvme0n1p2 502392610816 201024000000 275738374144      43% /
"""

MEM_USED = 4826361856
MEM_TOTAL = 16323567616
DISK_USED = 201024000000
DISK_TOTAL = 502392610816


Responder = Callable[[str], CommandResult]


def ok(stdout: str) -> CommandResult:
    return CommandResult(stdout=stdout, stderr="", exit_status=0)


def procps_responder(
    cpu: str = TOP_PROCPS,
    memory: str = FREE_B,
    disk: str = DF_B1,
    mounts: str = DF_B1,
) -> Responder:
    """Answer the procps dialect's commands with fixed output.

    The mount listing is the ``df`` run without a path.
    """

    def respond(command: str) -> CommandResult:
        if "uname" in command:
            return ok("Linux\n")
        if "top" in command:
            return ok(cpu)
        if "free" in command:
            return ok(memory)
        if command.endswith("'df -P -B1'"):
            return ok(mounts)
        if "df" in command:
            return ok(disk)
        raise AssertionError(f"unexpected command {command!r}")

    return respond


class FakeSession:
    """Stands in for rsysmon.transport.Session."""

    def __init__(self, respond: Responder | None = None) -> None:
        self.respond = respond or procps_responder()
        self.commands: list[str] = []
        self.close_calls = 0
        self.host = "db1"
        self.port = 22
        self.username = "ops"

    @property
    def closed(self) -> bool:
        return self.close_calls > 0

    def execute(self, command: str) -> CommandResult:
        if self.closed:
            raise CommandError("session is closed")
        self.commands.append(command)
        return self.respond(command)

    def close(self) -> None:
        self.close_calls += 1

    def __enter__(self) -> FakeSession:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()
