"""SSH transport session: one authenticated connection, one command at a time.

Authentication is tried in a fixed order: every key the local SSH agent
offers, then a password from the caller-supplied prompt. Agent failures are
only logged; the user sees an error only when both methods fail.
"""

from __future__ import annotations

import logging
import os
import socket
import time
from collections.abc import Callable
from dataclasses import dataclass

import paramiko

from rsysmon.errors import AuthError, CommandError, NetworkError

logger = logging.getLogger(__name__)

_CHUNK = 32768
# Pause between polls when neither output stream has data.
_POLL_INTERVAL = 0.01


@dataclass(slots=True, frozen=True)
class CommandResult:
    """Output of one remote command."""

    stdout: str
    stderr: str
    exit_status: int

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


class Session:
    """An authenticated SSH connection to one host.

    Commands run synchronously; the caller blocks until the remote side
    closes the channel or ``command_timeout`` expires.
    """

    def __init__(
        self,
        transport: paramiko.Transport,
        host: str,
        port: int,
        username: str,
        command_timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._transport = transport
        self.host = host
        self.port = port
        self.username = username
        self.command_timeout = command_timeout
        self._clock = clock
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def execute(self, command: str) -> CommandResult:
        """Run *command* remotely and collect its output.

        Raises:
            CommandError: The session is closed, the channel failed, or the
                command did not finish within ``command_timeout``.
        """
        if self._closed:
            raise CommandError("session is closed")
        logger.debug("exec %s@%s: %s", self.username, self.host, command)
        try:
            channel = self._transport.open_session(timeout=self.command_timeout)
        except (paramiko.SSHException, OSError) as e:
            raise CommandError(f"cannot open channel: {e}") from e
        try:
            channel.settimeout(self.command_timeout)
            channel.exec_command(command)
            stdout, stderr = self._drain(channel, command)
            status = channel.recv_exit_status()
        except socket.timeout as e:
            raise CommandError(
                f"command timed out after {self.command_timeout}s: {command}"
            ) from e
        except (paramiko.SSHException, OSError) as e:
            raise CommandError(f"command failed: {command}: {e}") from e
        finally:
            channel.close()
        return CommandResult(
            stdout=stdout.decode("utf-8", "replace"),
            stderr=stderr.decode("utf-8", "replace"),
            exit_status=status,
        )

    def _drain(self, channel: paramiko.Channel, command: str) -> tuple[bytes, bytes]:
        """Read stdout and stderr in turn until the command has exited.

        Both streams are consumed as data arrives; a command that fills its
        stderr window while stdout is still open would otherwise block.
        """
        out: list[bytes] = []
        err: list[bytes] = []
        deadline = (
            None if self.command_timeout is None else self._clock() + self.command_timeout
        )
        while True:
            pushed = False
            if channel.recv_ready():
                out.append(channel.recv(_CHUNK))
                pushed = True
            if channel.recv_stderr_ready():
                err.append(channel.recv_stderr(_CHUNK))
                pushed = True
            if (
                channel.exit_status_ready()
                and not channel.recv_ready()
                and not channel.recv_stderr_ready()
            ):
                return b"".join(out), b"".join(err)
            if not pushed:
                if deadline is not None and self._clock() >= deadline:
                    raise CommandError(
                        f"command timed out after {self.command_timeout}s: {command}"
                    )
                time.sleep(_POLL_INTERVAL)

    def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        logger.debug("closing session to %s:%d", self.host, self.port)
        self._transport.close()

    def __enter__(self) -> Session:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


# ── Host keys ──────────────────────────────────────────────────────────────


def _host_key_name(host: str, port: int) -> str:
    return host if port == 22 else f"[{host}]:{port}"


def _check_host_key(
    transport: paramiko.Transport,
    host: str,
    port: int,
    known_hosts: str | None,
    strict: bool,
) -> None:
    key = transport.get_remote_server_key()
    name = _host_key_name(host, port)
    host_keys = paramiko.HostKeys()
    if known_hosts:
        path = os.path.expanduser(known_hosts)
        if os.path.isfile(path):
            try:
                host_keys.load(path)
            except OSError as e:
                logger.warning("cannot read %s: %s", path, e)

    known = host_keys.lookup(name)
    if known is not None and key.get_name() in known:
        if known[key.get_name()] != key:
            raise NetworkError(f"host key for {name} does not match {known_hosts}")
        return
    if strict:
        raise NetworkError(f"unknown host key for {name} ({key.get_name()})")
    logger.warning(
        "accepting unknown %s host key for %s (%s)",
        key.get_name(),
        name,
        key.get_fingerprint().hex(),
    )


# ── Authentication ─────────────────────────────────────────────────────────


def _auth_agent(transport: paramiko.Transport, username: str) -> bool:
    """Try every agent key in turn. Returns True once authenticated."""
    try:
        agent = paramiko.Agent()
    except paramiko.SSHException as e:
        logger.debug("ssh agent unavailable: %s", e)
        return False
    try:
        keys = agent.get_keys()
        if not keys:
            logger.debug("ssh agent has no keys")
            return False
        for key in keys:
            try:
                transport.auth_publickey(username, key)
            except paramiko.AuthenticationException:
                logger.debug("agent key %s rejected", key.get_name())
                continue
            except paramiko.SSHException as e:
                if not transport.is_active():
                    raise
                logger.debug("agent key %s unusable: %s", key.get_name(), e)
                continue
            if transport.is_authenticated():
                logger.debug("authenticated with agent key %s", key.get_name())
                return True
        return False
    finally:
        agent.close()


def _auth_password(
    transport: paramiko.Transport,
    host: str,
    username: str,
    password_prompt: Callable[[], str],
) -> None:
    password = password_prompt()
    try:
        transport.auth_password(username, password)
    except paramiko.AuthenticationException as e:
        raise AuthError(f"authentication failed for {username}@{host}") from e
    if not transport.is_authenticated():
        raise AuthError(f"authentication failed for {username}@{host}")


# ── Connect ────────────────────────────────────────────────────────────────


def connect(
    host: str,
    port: int,
    username: str,
    password_prompt: Callable[[], str],
    *,
    connect_timeout: float = 10.0,
    command_timeout: float | None = None,
    known_hosts: str | None = "~/.ssh/known_hosts",
    strict_host_keys: bool = False,
) -> Session:
    """Open and authenticate an SSH session.

    Args:
        host: Remote host name or address.
        port: SSH port.
        username: Remote login name.
        password_prompt: Called at most once, only if agent auth fails.
        connect_timeout: TCP connect and handshake timeout (seconds).
        command_timeout: Per-command timeout; None waits forever.
        known_hosts: known_hosts file used to verify the server key.
        strict_host_keys: Reject servers whose key is not in known_hosts.

    Raises:
        NetworkError: TCP connect, handshake or host key check failed.
        AuthError: Agent and password authentication both failed.
    """
    try:
        sock = socket.create_connection((host, port), timeout=connect_timeout)
    except OSError as e:
        raise NetworkError(f"cannot connect to {host}:{port}: {e}") from e

    transport = paramiko.Transport(sock)
    try:
        try:
            transport.start_client(timeout=connect_timeout)
        except (paramiko.SSHException, OSError) as e:
            raise NetworkError(f"SSH handshake with {host}:{port} failed: {e}") from e

        _check_host_key(transport, host, port, known_hosts, strict_host_keys)

        try:
            if not _auth_agent(transport, username):
                _auth_password(transport, host, username, password_prompt)
        except paramiko.SSHException as e:
            raise NetworkError(f"connection to {host}:{port} lost: {e}") from e
    except BaseException:
        transport.close()
        raise

    logger.info("connected to %s@%s:%d", username, host, port)
    return Session(transport, host, port, username, command_timeout)
