import sys
import unittest
from pathlib import Path

import httpx

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from linkwatch.core.config import SmsConfig
from linkwatch.core.models import (
    DeviceDescriptor,
    MonitoringResult,
    NotificationSettings,
    NotificationState,
    OnuAccess,
    PollingSettings,
)
from linkwatch.monitoring.notifications import NotificationService, threshold_alerts
from linkwatch.monitoring.sms import SmsSender


class MemoryStateStore:
    def __init__(self) -> None:
        self.states: dict[int, NotificationState] = {}

    def get_notification_state(self, device_id: int) -> NotificationState:
        return self.states.get(device_id, NotificationState())

    def update_notification_state(self, device_id: int, consecutive_failures: int, offline_notified: bool) -> None:
        self.states[device_id] = NotificationState(consecutive_failures, offline_notified)


class RecordingSender:
    def __init__(self) -> None:
        self.messages: list[str] = []

    def send_to_all(self, message: str) -> bool:
        self.messages.append(message)
        return True


def _terminal(**notifications) -> DeviceDescriptor:
    return DeviceDescriptor(
        id=1,
        name="Flat 4",
        family="onu_blue",
        onu=OnuAccess(host="192.168.100.1", username="root"),
        polling=PollingSettings(retry_attempts=3),
        notifications=NotificationSettings(**notifications),
        group="Block A",
    )


class ThresholdAlertTests(unittest.TestCase):
    def test_low_rx_power(self) -> None:
        device = _terminal(notify_rx_power=True, rx_power_threshold=-25.0)

        alerts = threshold_alerts(device, {"rx_power_dbm": -26.1, "rx_power_text": "-26.10 dBm"})

        self.assertEqual(["rx_power"], [alert.type for alert in alerts])
        self.assertIn("Block A - Flat 4", alerts[0].message)

    def test_missing_optical_signal(self) -> None:
        device = _terminal(notify_rx_power=True)

        alerts = threshold_alerts(device, {"rx_power_dbm": None, "rx_power_text": "-- dBm"})

        self.assertEqual(["rx_power_none"], [alert.type for alert in alerts])

    def test_temperature_bounds(self) -> None:
        device = _terminal(notify_temp_high=True, notify_temp_low=True)

        self.assertEqual(["temp_high"], [alert.type for alert in threshold_alerts(device, {"temperature_c": 71.0})])
        self.assertEqual(["temp_low"], [alert.type for alert in threshold_alerts(device, {"temperature_c": -4.0})])
        self.assertEqual([], threshold_alerts(device, {"temperature_c": 40.0}))

    def test_radio_thresholds(self) -> None:
        device = _terminal(notify_rssi=True, notify_port_speed=True)

        alerts = threshold_alerts(device, {"rssi_dbm": -70, "port_speed_mbps": 100})

        self.assertEqual(["rssi", "port_speed"], [alert.type for alert in alerts])

    def test_disabled_checks_stay_silent(self) -> None:
        device = _terminal()

        alerts = threshold_alerts(
            device, {"rx_power_dbm": -40.0, "rx_power_text": "-40 dBm", "temperature_c": 99.0, "rssi_dbm": -90}
        )

        self.assertEqual([], alerts)


class NotificationServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = MemoryStateStore()
        self.sender = RecordingSender()
        self.service = NotificationService(self.store, self.sender)
        self.device = _terminal(notify_offline=True)

    def test_offline_alert_after_retry_attempts_failures_and_only_once(self) -> None:
        failure = MonitoringResult.failed("Connection timeout to 192.168.100.1")

        self.assertEqual([], self.service.evaluate(self.device, failure))
        self.assertEqual([], self.service.evaluate(self.device, failure))
        alerts = self.service.evaluate(self.device, failure)
        again = self.service.evaluate(self.device, failure)

        self.assertEqual(["offline"], [alert.type for alert in alerts])
        self.assertEqual([], again)
        self.assertEqual(
            ["Device Offline: Block A - Flat 4 at 192.168.100.1 is not responding after 3 attempts."],
            self.sender.messages,
        )

    def test_recovery_sends_online_alert_and_resets_state(self) -> None:
        self.store.update_notification_state(1, 3, True)

        alerts = self.service.evaluate(self.device, MonitoringResult.ok({}))

        self.assertEqual(["online"], [alert.type for alert in alerts])
        self.assertEqual(NotificationState(0, False), self.store.get_notification_state(1))

    def test_success_resets_failure_count_without_alert(self) -> None:
        self.store.update_notification_state(1, 2, False)

        alerts = self.service.evaluate(self.device, MonitoringResult.ok({}))

        self.assertEqual([], alerts)
        self.assertEqual(0, self.store.get_notification_state(1).consecutive_failures)

    def test_offline_notifications_disabled(self) -> None:
        device = _terminal()

        self.service.evaluate(device, MonitoringResult.failed("down"))

        self.assertEqual({}, self.store.states)
        self.assertEqual([], self.sender.messages)


class SmsSenderTests(unittest.TestCase):
    def _sender(self, handler, phone_numbers=None, enabled: bool = True) -> SmsSender:
        config = SmsConfig(
            api_url="https://sms.example/send?to={phone}&text={message}",
            phone_numbers=phone_numbers if phone_numbers is not None else ["+15550001", "15550002"],
            enabled=enabled,
        )
        return SmsSender(config, transport=httpx.MockTransport(handler))

    def test_build_url_strips_plus_and_encodes_message(self) -> None:
        sender = self._sender(lambda request: httpx.Response(200))

        url = sender.build_url("+15550001", "Device Online: A & B")

        self.assertEqual("https://sms.example/send?to=15550001&text=Device%20Online%3A%20A%20%26%20B", url)

    def test_send_to_all_succeeds_when_any_recipient_does(self) -> None:
        requested: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requested.append(request.url.params["to"])
            return httpx.Response(200 if request.url.params["to"] == "15550002" else 500)

        self.assertTrue(self._sender(handler).send_to_all("hello"))
        self.assertEqual(["15550001", "15550002"], requested)

    def test_transport_errors_are_failures(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("unreachable", request=request)

        self.assertFalse(self._sender(handler).send("+15550001", "hello"))

    def test_disabled_sender_sends_nothing(self) -> None:
        calls: list[httpx.Request] = []

        sender = self._sender(lambda request: calls.append(request) or httpx.Response(200), enabled=False)

        self.assertFalse(sender.send_to_all("hello"))
        self.assertEqual([], calls)

    def test_no_recipients(self) -> None:
        self.assertFalse(self._sender(lambda request: httpx.Response(200), phone_numbers=[]).send_to_all("hi"))


if __name__ == "__main__":
    unittest.main()
