import socket
import sys
import unittest
from pathlib import Path
from unittest import mock

import paramiko

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from linkwatch.core.models import GatewayConfig, RadioAccess
from linkwatch.mikrotik.client import (
    IDENTITY_COMMAND,
    AuthFailure,
    CommandError,
    CommandResult,
    CommandTimeout,
    ConnectTimeout,
    NetworkError,
    RouterOSChannel,
    RouterOSSession,
    SSHTarget,
    interface_print_command,
    tunnel_target,
)


class _Stream:
    def __init__(self, data: str, exit_status: int = 0) -> None:
        self._data = data.encode("utf-8")
        self.channel = mock.Mock()
        self.channel.recv_exit_status.return_value = exit_status

    def read(self) -> bytes:
        return self._data


class _FakeClient:
    def __init__(self, stdout: str = "", stderr: str = "", exit_status: int = 0, error: Exception | None = None) -> None:
        self.stdout = stdout
        self.stderr = stderr
        self.exit_status = exit_status
        self.error = error
        self.commands: list[tuple[str, float]] = []
        self.closed = False

    def exec_command(self, command: str, timeout: float):
        self.commands.append((command, timeout))
        if self.error is not None:
            raise self.error
        return None, _Stream(self.stdout, self.exit_status), _Stream(self.stderr)

    def close(self) -> None:
        self.closed = True


class _Clock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _session(client: _FakeClient, tunneled: bool = False, deadline: float = 145.0) -> RouterOSSession:
    target = SSHTarget(host="203.0.113.5", port=22, username="admin", password="secret")
    return RouterOSSession(client=client, target=target, deadline=deadline, tunneled=tunneled)


class CommandHeuristicTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = _Clock()
        self.channel = RouterOSChannel(clock=self.clock)

    def test_zero_exit_on_gateway_is_success(self) -> None:
        client = _FakeClient(stdout="name: core-gw\n", stderr="error text ignored", exit_status=0)

        result = self.channel.run(_session(client), "/system identity print")

        self.assertEqual("name: core-gw\n", result.stdout)
        self.assertEqual(0, result.exit_status)

    def test_failure_marker_raises(self) -> None:
        client = _FakeClient(stderr="failure: already have such address", exit_status=1)

        with self.assertRaises(CommandError):
            self.channel.run(_session(client), '/ip address add address="10.0.0.1/24" interface="ether5"')

    def test_markers_are_case_sensitive(self) -> None:
        client = _FakeClient(stdout="ok", stderr="Warning: Error Level Low", exit_status=1)

        result = self.channel.run(_session(client), "/system identity print")

        self.assertEqual(1, result.exit_status)

    def test_nonzero_exit_with_benign_stderr_is_success(self) -> None:
        client = _FakeClient(stdout="done", stderr="", exit_status=1)

        with self.assertLogs("linkwatch.mikrotik.client", level="WARNING"):
            result = self.channel.run(_session(client), "/ip address print")

        self.assertEqual("done", result.stdout)

    def test_tunneled_session_checks_markers_on_zero_exit(self) -> None:
        client = _FakeClient(stderr="expected end of command (line 1 column 5) invalid", exit_status=0)

        with self.assertRaises(CommandError):
            self.channel.run(_session(client, tunneled=True), "/interface w60g monitor [find] once")

    def test_command_timeout_bounded_by_operation_deadline(self) -> None:
        client = _FakeClient(stdout="ok")
        self.clock.now = 135.0

        self.channel.run(_session(client, deadline=145.0), "/system identity print")

        self.assertEqual(10.0, client.commands[0][1])

    def test_expired_deadline_raises_before_sending(self) -> None:
        client = _FakeClient(stdout="ok")
        self.clock.now = 150.0

        with self.assertRaises(CommandTimeout):
            self.channel.run(_session(client, deadline=145.0), "/system identity print")
        self.assertEqual([], client.commands)

    def test_socket_timeout_maps_to_command_timeout(self) -> None:
        client = _FakeClient(error=socket.timeout("timed out"))

        with self.assertRaises(CommandTimeout):
            self.channel.run(_session(client), "/system identity print")

    def test_transport_error_maps_to_command_error(self) -> None:
        client = _FakeClient(error=paramiko.SSHException("channel closed"))

        with self.assertRaises(CommandError):
            self.channel.run(_session(client), "/system identity print")


class ConnectErrorMappingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.target = SSHTarget(host="203.0.113.5", port=60001, username="radio", password="secret")
        socket_patch = mock.patch("linkwatch.mikrotik.client.socket.create_connection")
        self.create_connection = socket_patch.start()
        self.addCleanup(socket_patch.stop)

    def _open_with_error(self, error: Exception):
        with mock.patch("linkwatch.mikrotik.client.paramiko.SSHClient") as client_class:
            client = client_class.return_value
            client.connect.side_effect = error
            try:
                RouterOSChannel().open(self.target)
            finally:
                client.close.assert_called_once()
                self.create_connection.return_value.close.assert_called_once()

    def test_authentication_failure(self) -> None:
        with self.assertRaises(AuthFailure):
            self._open_with_error(paramiko.AuthenticationException("bad password"))

    def test_connect_timeout(self) -> None:
        with self.assertRaises(ConnectTimeout):
            self._open_with_error(socket.timeout("timed out"))

    def test_banner_timeout_is_a_connect_timeout(self) -> None:
        with self.assertRaises(ConnectTimeout):
            self._open_with_error(paramiko.SSHException("Error reading SSH protocol banner"))

    def test_auth_timeout_is_a_connect_timeout(self) -> None:
        with self.assertRaises(ConnectTimeout):
            self._open_with_error(paramiko.AuthenticationException("Authentication timeout."))

    def test_negotiation_failure(self) -> None:
        with self.assertRaises(NetworkError):
            self._open_with_error(paramiko.SSHException("Incompatible ssh peer (no acceptable kex algorithm)"))

    def test_refused_connection(self) -> None:
        self.create_connection.side_effect = ConnectionRefusedError("refused")

        with mock.patch("linkwatch.mikrotik.client.paramiko.SSHClient") as client_class:
            with self.assertRaises(NetworkError):
                RouterOSChannel().open(self.target)

        client_class.assert_not_called()

    def test_tcp_timeout(self) -> None:
        self.create_connection.side_effect = socket.timeout("timed out")

        with self.assertRaises(ConnectTimeout):
            RouterOSChannel().open(self.target)

    def test_connect_phases_share_one_budget(self) -> None:
        clock = _Clock(100.0)

        def slow_tcp(address, timeout):
            clock.now += 4.0
            return mock.Mock()

        self.create_connection.side_effect = slow_tcp
        with mock.patch("linkwatch.mikrotik.client.paramiko.SSHClient") as client_class:
            RouterOSChannel(connect_timeout=10.0, clock=clock).open(self.target)

        self.assertEqual(10.0, self.create_connection.call_args.kwargs["timeout"])
        _, kwargs = client_class.return_value.connect.call_args
        self.assertAlmostEqual(3.0, kwargs["banner_timeout"])
        self.assertAlmostEqual(3.0, kwargs["timeout"])
        self.assertAlmostEqual(3.0, kwargs["auth_timeout"])

    def test_budget_spent_on_tcp_connect(self) -> None:
        clock = _Clock(100.0)

        def slow_tcp(address, timeout):
            clock.now += 10.5
            return mock.Mock()

        self.create_connection.side_effect = slow_tcp
        with mock.patch("linkwatch.mikrotik.client.paramiko.SSHClient") as client_class:
            with self.assertRaises(ConnectTimeout):
                RouterOSChannel(connect_timeout=10.0, clock=clock).open(self.target)

        client_class.return_value.connect.assert_not_called()

    def test_open_passes_credentials_and_socket(self) -> None:
        with mock.patch("linkwatch.mikrotik.client.paramiko.SSHClient") as client_class:
            session = RouterOSChannel(connect_timeout=7.0).open(self.target, tunneled=True)

        self.assertEqual(("203.0.113.5", 60001), self.create_connection.call_args.args[0])
        self.assertAlmostEqual(7.0, self.create_connection.call_args.kwargs["timeout"])
        client_class.return_value.connect.assert_called_once()
        _, kwargs = client_class.return_value.connect.call_args
        self.assertEqual(60001, kwargs["port"])
        self.assertEqual("radio", kwargs["username"])
        self.assertEqual("secret", kwargs["password"])
        self.assertIs(self.create_connection.return_value, kwargs["sock"])
        self.assertLessEqual(kwargs["banner_timeout"] + kwargs["auth_timeout"], 7.0)
        self.assertTrue(session.tunneled)

    def test_session_closed_when_command_fails(self) -> None:
        channel = RouterOSChannel()
        with mock.patch("linkwatch.mikrotik.client.paramiko.SSHClient") as client_class:
            client = client_class.return_value
            client.exec_command.side_effect = paramiko.SSHException("broken pipe")

            with self.assertRaises(CommandError):
                channel.execute(self.target, "/system identity print")

        client.close.assert_called_once()


class GatewayCheckTests(unittest.TestCase):
    GATEWAY = GatewayConfig(
        control_ip="203.0.113.5", username="admin", password="gw-secret", device_interface="ether5-radios"
    )

    def _channel(self, responses: dict[str, object]) -> RouterOSChannel:
        class _ScriptedChannel(RouterOSChannel):
            def open(self, target, log_extra=None, tunneled=False):
                return RouterOSSession(client=None, target=target, deadline=float("inf"), tunneled=tunneled)

            def close(self, session) -> None:
                pass

            def run(self, session, command):
                response = responses[command]
                if isinstance(response, Exception):
                    raise response
                return CommandResult(response, "", 0)

        return _ScriptedChannel()

    def test_gateway_with_radio_interface(self) -> None:
        channel = self._channel(
            {
                IDENTITY_COMMAND: "  name: core-gw\n",
                interface_print_command("ether5-radios"): (
                    "Flags: D - dynamic, X - disabled, R - running\n"
                    " #     NAME            TYPE       ACTUAL-MTU L2MTU\n"
                    " 4  R  ether5-radios   ether            1500  1598\n"
                ),
            }
        )

        self.assertEqual((True, "  name: core-gw\n"), channel.test_connection(self.GATEWAY))

    def test_missing_radio_interface(self) -> None:
        channel = self._channel(
            {
                IDENTITY_COMMAND: "  name: core-gw\n",
                interface_print_command("ether5-radios"): "Flags: D - dynamic, X - disabled, R - running\n",
            }
        )

        with self.assertLogs("linkwatch.mikrotik.client", level="WARNING"):
            ok, message = channel.test_connection(self.GATEWAY)

        self.assertFalse(ok)
        self.assertEqual("Interface ether5-radios not found on control router", message)

    def test_interface_match_is_whole_name(self) -> None:
        channel = self._channel(
            {interface_print_command("ether5"): " 4  R  ether5-radios   ether            1500  1598\n"}
        )
        session = channel.open(SSHTarget(host="203.0.113.5", port=22, username="admin"))

        self.assertFalse(channel.interface_exists(session, "ether5"))

    def test_unreachable_gateway(self) -> None:
        channel = self._channel({IDENTITY_COMMAND: AuthFailure("SSH authentication failed for admin@203.0.113.5:22")})

        with self.assertLogs("linkwatch.mikrotik.client", level="WARNING"):
            ok, message = channel.test_connection(self.GATEWAY)

        self.assertFalse(ok)
        self.assertIn("authentication failed", message)


class TargetTests(unittest.TestCase):
    def test_tunnel_target_uses_gateway_host_and_radio_credentials(self) -> None:
        gateway = GatewayConfig(
            control_ip="203.0.113.5", username="admin", password="gw-secret", device_interface="ether5"
        )
        radio = RadioAccess(
            inner_ip="10.20.30.11", tunnel_port=60003, username="radio", tunnel_ip="10.20.30.1", password="r-secret"
        )

        target = tunnel_target(gateway, radio)

        self.assertEqual("203.0.113.5", target.host)
        self.assertEqual(60003, target.port)
        self.assertEqual("radio", target.username)
        self.assertEqual("r-secret", target.password)
        self.assertNotIn("r-secret", repr(target))


if __name__ == "__main__":
    unittest.main()
