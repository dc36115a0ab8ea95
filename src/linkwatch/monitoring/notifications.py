"""Alert evaluation for poll outcomes.

Two kinds of alerts exist. Availability alerts fire once when a device has
failed ``retry_attempts`` consecutive polls and once more when it comes back.
Threshold alerts fire on every successful poll whose metrics cross a
configured limit.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from linkwatch.core.models import Alert, DeviceDescriptor, MonitoringResult, NotificationState

logger = logging.getLogger(__name__)


class StateStore(Protocol):
    def get_notification_state(self, device_id: int) -> NotificationState: ...

    def update_notification_state(self, device_id: int, consecutive_failures: int, offline_notified: bool) -> None: ...


class MessageSender(Protocol):
    def send_to_all(self, message: str) -> bool: ...


def threshold_alerts(device: DeviceDescriptor, metrics: dict[str, Any]) -> list[Alert]:
    """Alerts for metrics outside the device's configured limits."""

    settings = device.notifications
    name = device.display_name
    alerts: list[Alert] = []

    rx_text = metrics.get("rx_power_text")
    if settings.notify_rx_power and rx_text:
        rx_power = metrics.get("rx_power_dbm")
        if "--" in rx_text:
            alerts.append(
                Alert("rx_power_none", f"No RX Power Alert: {name} - No optical signal detected ({rx_text})")
            )
        elif rx_power is not None and rx_power < settings.rx_power_threshold:
            alerts.append(
                Alert(
                    "rx_power",
                    f"Low RX Power Alert: {name} - Current: {rx_text}, "
                    f"Threshold: {settings.rx_power_threshold} dBm",
                )
            )

    temperature = metrics.get("temperature_c")
    if temperature is not None:
        temperature_text = metrics.get("temperature_text", f"{temperature} ℃")
        if settings.notify_temp_high and temperature > settings.temp_high_threshold:
            alerts.append(
                Alert(
                    "temp_high",
                    f"High Temperature Alert: {name} - Current: {temperature_text}, "
                    f"Threshold: {settings.temp_high_threshold}°C",
                )
            )
        if settings.notify_temp_low and temperature < settings.temp_low_threshold:
            alerts.append(
                Alert(
                    "temp_low",
                    f"Low Temperature Alert: {name} - Current: {temperature_text}, "
                    f"Threshold: {settings.temp_low_threshold}°C",
                )
            )

    rssi = metrics.get("rssi_dbm")
    if settings.notify_rssi and rssi is not None and rssi < settings.rssi_threshold:
        alerts.append(
            Alert("rssi", f"Low RSSI Alert: {name} - Current: {rssi} dBm, Threshold: {settings.rssi_threshold} dBm")
        )

    speed = metrics.get("port_speed_mbps")
    if settings.notify_port_speed and speed is not None and speed < settings.port_speed_threshold:
        alerts.append(
            Alert(
                "port_speed",
                f"Port Speed Alert: {name} - Ethernet speed ({speed} Mbps) is below "
                f"threshold ({settings.port_speed_threshold} Mbps)",
            )
        )

    return alerts


class NotificationService:
    """Evaluate each poll outcome and deliver the resulting alerts."""

    def __init__(self, store: StateStore, sender: MessageSender | None = None) -> None:
        self._store = store
        self._sender = sender

    def evaluate(self, device: DeviceDescriptor, result: MonitoringResult) -> list[Alert]:
        """Update availability state, compute alerts and send them."""

        log_extra = {"device": device.name}
        if result.success:
            alerts = self._availability_on_success(device) + threshold_alerts(device, result.metrics)
        else:
            alerts = self._availability_on_failure(device)

        for alert in alerts:
            logger.info("alert triggered type=%s", alert.type, extra=log_extra)
            if self._sender is not None:
                self._sender.send_to_all(alert.message)
        return alerts

    def _availability_on_failure(self, device: DeviceDescriptor) -> list[Alert]:
        if not device.notifications.notify_offline:
            return []

        state = self._store.get_notification_state(device.id)
        failures = state.consecutive_failures + 1
        if failures >= device.polling.retry_attempts and not state.offline_notified:
            self._store.update_notification_state(device.id, failures, True)
            return [
                Alert(
                    "offline",
                    f"Device Offline: {device.display_name} at {device.address} is not responding "
                    f"after {failures} attempts.",
                )
            ]

        self._store.update_notification_state(device.id, failures, state.offline_notified)
        return []

    def _availability_on_success(self, device: DeviceDescriptor) -> list[Alert]:
        state = self._store.get_notification_state(device.id)
        if device.notifications.notify_offline and state.offline_notified:
            self._store.update_notification_state(device.id, 0, False)
            return [Alert("online", f"Device Online: {device.display_name} at {device.address} is back online.")]
        if state.consecutive_failures > 0:
            self._store.update_notification_state(device.id, 0, False)
        return []
