"""RouterOS SSH command channel.

Every call opens its own SSH session; sessions are never pooled or shared
between polls. A session reaches a host either directly (the control gateway)
or through the gateway's destination-NAT port, in which case the radio's own
credentials are used and the gateway forwards the TCP stream transparently.
"""

from __future__ import annotations

import logging
import re
import socket
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

import paramiko

from linkwatch.core.models import GatewayConfig, RadioAccess

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10.0
COMMAND_TIMEOUT = 30.0
OPERATION_TIMEOUT = 45.0

# RouterOS exit codes are unreliable; stderr markers decide failure.
FAILURE_MARKERS = ("failure", "error", "invalid")

IDENTITY_COMMAND = "/system identity print"


class ChannelError(RuntimeError):
    """Base exception for command channel errors."""


class ConnectTimeout(ChannelError):
    """Raised when the SSH session cannot be established in time."""


class AuthFailure(ChannelError):
    """Raised when SSH authentication fails."""


class NetworkError(ChannelError):
    """Raised for any other failure while establishing the session."""


class CommandTimeout(ChannelError):
    """Raised when a command or the whole operation exceeds its time budget."""


class CommandError(ChannelError):
    """Raised when a command cannot be executed or reports a failure."""


@dataclass(slots=True)
class SSHTarget:
    """Where and as whom to open an SSH session."""

    host: str
    port: int
    username: str
    password: str = field(default="", repr=False)


@dataclass(slots=True)
class CommandResult:
    """Raw output of one remote command."""

    stdout: str
    stderr: str
    exit_status: int


@dataclass(slots=True)
class RouterOSSession:
    """An open SSH session and the deadline of the operation it belongs to."""

    client: paramiko.SSHClient
    target: SSHTarget
    deadline: float
    tunneled: bool = False
    log_extra: dict[str, Any] = field(default_factory=dict)


def gateway_target(gateway: GatewayConfig) -> SSHTarget:
    """Target for a direct session to the control gateway."""

    return SSHTarget(host=gateway.control_ip, port=gateway.port, username=gateway.username, password=gateway.password)


def tunnel_target(gateway: GatewayConfig, radio: RadioAccess) -> SSHTarget:
    """Target for a session to ``radio`` through the gateway's NAT port."""

    return SSHTarget(
        host=gateway.control_ip,
        port=radio.tunnel_port,
        username=radio.username,
        password=radio.password,
    )


def interface_print_command(interface_name: str) -> str:
    return f'/interface print where name="{interface_name}"'


def has_failure_marker(stderr: str) -> bool:
    return any(marker in stderr for marker in FAILURE_MARKERS)


def _is_timeout(exc: Exception) -> bool:
    """paramiko reports banner and auth timeouts as SSHException text."""

    message = str(exc).lower()
    return "timeout" in message or "timed out" in message or "protocol banner" in message


class RouterOSChannel:
    """Stateless executor of RouterOS CLI commands over SSH."""

    def __init__(
        self,
        connect_timeout: float = CONNECT_TIMEOUT,
        command_timeout: float = COMMAND_TIMEOUT,
        operation_timeout: float = OPERATION_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.operation_timeout = operation_timeout
        self._clock = clock

    def open(
        self, target: SSHTarget, log_extra: dict[str, Any] | None = None, tunneled: bool = False
    ) -> RouterOSSession:
        """Open an SSH session to ``target``.

        TCP connect, banner exchange and authentication share a single
        ``connect_timeout`` budget.
        """

        log_extra = log_extra or {}
        started = self._clock()
        deadline = started + self.operation_timeout
        connect_deadline = started + min(self.connect_timeout, self.operation_timeout)

        logger.debug("opening ssh session host=%s port=%s", target.host, target.port, extra=log_extra)
        try:
            sock = socket.create_connection((target.host, target.port), timeout=connect_deadline - started)
        except (socket.timeout, TimeoutError) as exc:
            raise ConnectTimeout(f"Connection timeout to {target.host}:{target.port}") from exc
        except OSError as exc:
            raise NetworkError(f"SSH connection to {target.host}:{target.port} failed: {exc}") from exc

        remaining = connect_deadline - self._clock()
        if remaining <= 0:
            sock.close()
            raise ConnectTimeout(f"Connection timeout to {target.host}:{target.port}")
        # paramiko waits for the handshake and the authentication one after the other
        handshake_timeout = remaining / 2

        ssh = paramiko.SSHClient()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            ssh.connect(
                target.host,
                port=target.port,
                username=target.username,
                password=target.password,
                sock=sock,
                look_for_keys=False,
                allow_agent=False,
                timeout=handshake_timeout,
                banner_timeout=handshake_timeout,
                auth_timeout=remaining - handshake_timeout,
            )
        except (socket.timeout, TimeoutError) as exc:
            self._abandon(ssh, sock)
            raise ConnectTimeout(f"Connection timeout to {target.host}:{target.port}") from exc
        except paramiko.AuthenticationException as exc:
            self._abandon(ssh, sock)
            if _is_timeout(exc):
                raise ConnectTimeout(f"Authentication timeout to {target.host}:{target.port}") from exc
            raise AuthFailure(f"SSH authentication failed for {target.username}@{target.host}:{target.port}") from exc
        except (paramiko.SSHException, OSError) as exc:
            self._abandon(ssh, sock)
            if _is_timeout(exc):
                raise ConnectTimeout(f"Connection timeout to {target.host}:{target.port}: {exc}") from exc
            raise NetworkError(f"SSH connection to {target.host}:{target.port} failed: {exc}") from exc

        logger.debug("ssh ok host=%s port=%s", target.host, target.port, extra=log_extra)
        return RouterOSSession(client=ssh, target=target, deadline=deadline, tunneled=tunneled, log_extra=log_extra)

    @staticmethod
    def _abandon(ssh: paramiko.SSHClient, sock: socket.socket) -> None:
        ssh.close()
        sock.close()

    def open_tunneled(
        self, gateway: GatewayConfig, radio: RadioAccess, log_extra: dict[str, Any] | None = None
    ) -> RouterOSSession:
        """Open a session to ``radio`` through the gateway's forwarded port.

        The gateway's destination-NAT rule maps ``radio.tunnel_port`` to the
        radio's SSH port, so the radio's own credentials are presented.
        """

        return self.open(tunnel_target(gateway, radio), log_extra=log_extra, tunneled=True)

    def close(self, session: RouterOSSession | None) -> None:
        if session is not None:
            session.client.close()

    def run(self, session: RouterOSSession, command: str) -> CommandResult:
        """Execute ``command`` and apply the RouterOS success heuristic.

        A zero exit status on a gateway session is success. Otherwise stderr
        containing a failure marker raises :class:`CommandError`; a non-zero
        exit with benign stderr is still treated as success.
        """

        log_extra = session.log_extra
        remaining = session.deadline - self._clock()
        if remaining <= 0:
            raise CommandTimeout(f"Operation deadline exceeded before command '{command}'")
        timeout = min(self.command_timeout, remaining)

        logger.debug("executing routeros command='%s'", command, extra=log_extra)
        try:
            _, stdout, stderr = session.client.exec_command(command, timeout=timeout)
            output = stdout.read().decode("utf-8", errors="replace")
            error_output = stderr.read().decode("utf-8", errors="replace")
            exit_status = stdout.channel.recv_exit_status()
        except (socket.timeout, TimeoutError) as exc:
            raise CommandTimeout(f"Command execution timeout: {command}") from exc
        except (paramiko.SSHException, OSError) as exc:
            raise CommandError(f"Unable to execute command '{command}': {exc}") from exc

        result = CommandResult(stdout=output, stderr=error_output, exit_status=exit_status)
        if exit_status == 0 and not session.tunneled:
            return result

        if has_failure_marker(error_output):
            logger.debug("command failed command='%s' status=%s", command, exit_status, extra=log_extra)
            raise CommandError(f"Command failed: {error_output.strip() or output.strip()}")

        if exit_status != 0:
            logger.warning(
                "command returned exit_status=%s without error output, treating as success command='%s'",
                exit_status,
                command,
                extra=log_extra,
            )
        return result

    @contextmanager
    def session(self, target: SSHTarget, log_extra: dict[str, Any] | None = None) -> Iterator[RouterOSSession]:
        """Open a direct session that is closed on every exit path."""

        session = self.open(target, log_extra=log_extra)
        try:
            yield session
        finally:
            self.close(session)

    @contextmanager
    def tunneled_session(
        self, gateway: GatewayConfig, radio: RadioAccess, log_extra: dict[str, Any] | None = None
    ) -> Iterator[RouterOSSession]:
        """Open a tunneled session that is closed on every exit path."""

        session = self.open_tunneled(gateway, radio, log_extra=log_extra)
        try:
            yield session
        finally:
            self.close(session)

    def execute(self, target: SSHTarget, command: str, log_extra: dict[str, Any] | None = None) -> CommandResult:
        """Open a session, run one command and close the session."""

        with self.session(target, log_extra=log_extra) as session:
            return self.run(session, command)

    def test_connection(self, gateway: GatewayConfig) -> tuple[bool, str]:
        """Check that the gateway accepts a session and has the radio interface.

        Returns ``(True, identity output)`` or ``(False, reason)``.
        """

        try:
            with self.session(gateway_target(gateway)) as session:
                identity = self.run(session, IDENTITY_COMMAND).stdout
                if not self.interface_exists(session, gateway.device_interface):
                    message = f"Interface {gateway.device_interface} not found on control router"
                    logger.warning("gateway check failed host=%s error=%s", gateway.control_ip, message)
                    return False, message
        except ChannelError as exc:
            logger.warning("gateway connection test failed host=%s error=%s", gateway.control_ip, exc)
            return False, str(exc)
        return True, identity

    def interface_exists(self, session: RouterOSSession, interface_name: str) -> bool:
        """Return whether the gateway knows ``interface_name``."""

        try:
            result = self.run(session, interface_print_command(interface_name))
        except ChannelError:
            return False
        return re.search(rf"\s{re.escape(interface_name)}(\s|$)", result.stdout, re.MULTILINE) is not None
