import logging
import sys
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from linkwatch.core.config import (
    DevicesConfigError,
    SettingsError,
    load_inventory,
    load_settings,
    parse_device,
)

DEVICES_YML = """gateway:
  control_ip: 203.0.113.5
  username: admin
  password_encrypted: gAAAAgateway
  device_interface: ether5-radios
devices:
  - id: 1
    name: Tower North
    family: mikrotik_lhg60g
    inner_ip: 10.20.30.11
    tunnel_ip: 10.20.30.1
    tunnel_port: 60001
    username: radio
    password_encrypted: gAAAAradio
    group: North
    polling:
      interval: 300
      retry_attempts: 2
    notifications:
      notify_rssi: true
      rssi_threshold: -70
    state:
      consecutive_failures: 2
      offline_notified: true
  - id: 2
    name: Flat 4
    family: onu_blue
    host: 192.168.100.1
    username: root
  - id: 2
    name: Duplicate
    family: onu_red
    host: 192.168.100.2
    username: root
  - id: 3
    name: Broken
    family: mikrotik_lhg60g
    username: radio
"""


class InventoryTests(unittest.TestCase):
    def test_loads_gateway_devices_and_state(self) -> None:
        with TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "devices.yml"
            path.write_text(DEVICES_YML, encoding="utf-8")

            with self.assertLogs("linkwatch.config.test", level="ERROR") as captured:
                inventory = load_inventory(path, logging.getLogger("linkwatch.config.test"))

        self.assertEqual("203.0.113.5", inventory.gateway.control_ip)
        self.assertEqual(22, inventory.gateway.port)
        self.assertEqual(60001, inventory.gateway.base_port)
        self.assertEqual([1, 2], [device.id for device in inventory.devices])
        self.assertEqual(2, len(captured.records))

        radio = inventory.devices[0]
        self.assertEqual(60001, radio.radio.tunnel_port)
        self.assertEqual("gAAAAradio", radio.radio.password)
        self.assertEqual(300, radio.polling.interval)
        self.assertEqual(2, radio.polling.retry_attempts)
        self.assertEqual(3.0, radio.polling.retry_delay)
        self.assertTrue(radio.notifications.notify_rssi)
        self.assertEqual(-70.0, radio.notifications.rssi_threshold)
        self.assertEqual("North - Tower North", radio.display_name)
        self.assertTrue(inventory.states[1].offline_notified)
        self.assertEqual(2, inventory.states[1].consecutive_failures)

        terminal = inventory.devices[1]
        self.assertEqual("192.168.100.1", terminal.onu.host)
        self.assertEqual("", terminal.onu.password)
        self.assertEqual(0, inventory.states[2].consecutive_failures)

    def test_missing_file_is_empty_inventory(self) -> None:
        with TemporaryDirectory() as tmpdir:
            inventory = load_inventory(Path(tmpdir) / "devices.yml")

        self.assertEqual([], inventory.devices)
        self.assertIsNone(inventory.gateway)

    def test_devices_must_be_a_list(self) -> None:
        with TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "devices.yml"
            path.write_text("devices: {}\n", encoding="utf-8")

            with self.assertRaises(DevicesConfigError):
                load_inventory(path)

    def test_falsy_non_list_devices_are_rejected(self) -> None:
        for raw in ("0", '""', "false"):
            with self.subTest(raw=raw), TemporaryDirectory() as tmpdir:
                path = Path(tmpdir) / "devices.yml"
                path.write_text(f"devices: {raw}\n", encoding="utf-8")

                with self.assertRaises(DevicesConfigError):
                    load_inventory(path)

    def test_empty_devices_key_is_empty_inventory(self) -> None:
        with TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "devices.yml"
            path.write_text("devices:\n", encoding="utf-8")

            inventory = load_inventory(path)

        self.assertEqual([], inventory.devices)


class ParseDeviceTests(unittest.TestCase):
    def test_plaintext_password_is_rejected(self) -> None:
        raw = {"id": 1, "name": "Flat 4", "family": "onu_red", "host": "192.168.100.1", "username": "root", "password": "x"}

        with self.assertRaises(DevicesConfigError):
            parse_device(raw, "device #1")

    def test_unknown_family_is_rejected(self) -> None:
        raw = {"id": 1, "name": "Switch", "family": "cisco", "host": "192.168.1.2", "username": "root"}

        with self.assertRaises(DevicesConfigError):
            parse_device(raw, "device #1")

    def test_radio_needs_valid_addresses(self) -> None:
        raw = {
            "id": 1,
            "name": "Tower North",
            "family": "mikrotik_lhg60g",
            "inner_ip": "10.20.30.300",
            "tunnel_ip": "10.20.30.1",
            "tunnel_port": 60001,
            "username": "radio",
        }

        with self.assertRaises(DevicesConfigError):
            parse_device(raw, "device #1")

    def test_unknown_notification_setting_is_rejected(self) -> None:
        raw = {
            "id": 1,
            "name": "Flat 4",
            "family": "onu_red",
            "host": "192.168.100.1",
            "username": "root",
            "notifications": {"notify_everything": True},
        }

        with self.assertRaises(DevicesConfigError):
            parse_device(raw, "device #1")


class SettingsTests(unittest.TestCase):
    def test_defaults_without_file(self) -> None:
        with TemporaryDirectory() as tmpdir:
            settings = load_settings(Path(tmpdir) / "local.yml")

        self.assertEqual(10, settings.monitoring.max_concurrent)
        self.assertEqual(2.0, settings.monitoring.stagger_seconds)
        self.assertFalse(settings.sms.enabled)

    def test_reads_monitoring_and_sms_sections(self) -> None:
        with TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "local.yml"
            path.write_text(
                "monitoring:\n  max_concurrent: 4\n  stagger_seconds: 0.5\n"
                "sms:\n  enabled: true\n  api_url: https://sms.example/send?to={phone}&text={message}\n"
                "  phone_numbers: '+15550001, +15550002'\n",
                encoding="utf-8",
            )
            settings = load_settings(path)

        self.assertEqual(4, settings.monitoring.max_concurrent)
        self.assertEqual(0.5, settings.monitoring.stagger_seconds)
        self.assertEqual(10.0, settings.monitoring.reload_interval)
        self.assertTrue(settings.sms.enabled)
        self.assertEqual(["+15550001", "+15550002"], settings.sms.phone_numbers)

    def test_invalid_concurrency(self) -> None:
        with TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "local.yml"
            path.write_text("monitoring:\n  max_concurrent: 0\n", encoding="utf-8")

            with self.assertRaises(SettingsError):
                load_settings(path)


if __name__ == "__main__":
    unittest.main()
