"""Telemetry extraction for MikroTik LHG60G radios behind the control gateway."""

from __future__ import annotations

import logging
from typing import Callable

from linkwatch.core.models import DeviceDescriptor, GatewayConfig, MonitoringResult
from linkwatch.mikrotik.client import IDENTITY_COMMAND, ChannelError, RouterOSChannel
from linkwatch.mikrotik.parsers import format_link_speed, parse_link_speed, parse_rssi

logger = logging.getLogger(__name__)

RSSI_COMMAND = "/interface w60g monitor [find] once"
LINK_SPEED_COMMAND = "/interface ethernet monitor [find] once"

GatewayProvider = Callable[[], GatewayConfig | None]


class RadioMonitor:
    """Collect RSSI and ethernet link speed from a tunneled radio."""

    def __init__(self, gateway_provider: GatewayProvider, channel: RouterOSChannel | None = None) -> None:
        self._gateway_provider = gateway_provider
        self._channel = channel or RouterOSChannel()

    def extract(self, device: DeviceDescriptor) -> MonitoringResult:
        log_extra = {"device": device.name}
        if device.radio is None:
            return MonitoringResult.failed("Device has no radio access configuration")

        gateway = self._gateway_provider()
        if gateway is None:
            logger.error("control gateway configuration not found", extra=log_extra)
            return MonitoringResult.failed("Control router configuration not found")

        logger.debug(
            "polling radio via %s:%s target=%s",
            gateway.control_ip,
            device.radio.tunnel_port,
            device.radio.inner_ip,
            extra=log_extra,
        )
        rssi, rssi_error = self._query(gateway, device, RSSI_COMMAND, parse_rssi, "RSSI")
        speed, speed_error = self._query(gateway, device, LINK_SPEED_COMMAND, parse_link_speed, "port speed")

        if rssi is None and speed is None:
            error = "; ".join(message for message in (rssi_error, speed_error) if message)
            logger.warning("radio poll failed error=%s", error, extra=log_extra)
            return MonitoringResult.failed(error or "Failed to retrieve monitoring data")

        logger.info("radio poll ok rssi=%s speed=%s", rssi, format_link_speed(speed), extra=log_extra)
        return MonitoringResult.ok(
            {
                "rssi_dbm": rssi,
                "port_speed_mbps": speed,
                "port_speed_text": format_link_speed(speed),
            }
        )

    def _query(
        self,
        gateway: GatewayConfig,
        device: DeviceDescriptor,
        command: str,
        parser: Callable[[str], int | None],
        label: str,
    ) -> tuple[int | None, str | None]:
        log_extra = {"device": device.name}
        try:
            with self._channel.tunneled_session(gateway, device.radio, log_extra=log_extra) as session:
                output = self._channel.run(session, command).stdout
        except ChannelError as exc:
            logger.warning("%s query failed error=%s", label, exc, extra=log_extra)
            return None, f"{label}: {exc}"

        value = parser(output)
        if value is None:
            logger.warning("%s not found in output", label, extra=log_extra)
            return None, f"{label}: not found in output"
        return value, None

    def check_connectivity(self, device: DeviceDescriptor) -> bool:
        """Whether the radio answers an identity query through its tunnel."""

        gateway = self._gateway_provider()
        if gateway is None or device.radio is None:
            return False
        try:
            with self._channel.tunneled_session(gateway, device.radio) as session:
                self._channel.run(session, IDENTITY_COMMAND)
        except ChannelError:
            return False
        return True
