"""Telemetry extraction for HTTP-reachable optical network terminals."""

from __future__ import annotations

import logging

import httpx

from linkwatch.core.models import DeviceDescriptor, MonitoringResult
from linkwatch.onu.client import OnuClientError, OnuWebClient
from linkwatch.onu.parsers import TEMPERATURE_RANGE, parse_measurement, parse_optical_info, reference_range

logger = logging.getLogger(__name__)


class OnuMonitor:
    """Log in, fetch the optical info page and parse the module readings."""

    def __init__(self, timeout: float = 10.0, transport: httpx.BaseTransport | None = None) -> None:
        self._timeout = timeout
        self._transport = transport

    def extract(self, device: DeviceDescriptor) -> MonitoringResult:
        log_extra = {"device": device.name}
        if device.onu is None:
            return MonitoringResult.failed("Device has no web access configuration")

        client = OnuWebClient(
            host=device.onu.host,
            username=device.onu.username,
            password=device.onu.password,
            timeout=self._timeout,
            transport=self._transport,
        )
        try:
            page = client.fetch_optical_page(log_extra)
        except OnuClientError as exc:
            logger.warning("optical page fetch failed error=%s", exc, extra=log_extra)
            return MonitoringResult.failed(str(exc))

        reading = parse_optical_info(page)
        if reading is None:
            logger.warning("opticInfos not found in page length=%d", len(page), extra=log_extra)
            return MonitoringResult.failed("Failed to extract optical information")

        metrics = {
            "rx_power_dbm": parse_measurement(reading.rx_power),
            "tx_power_dbm": parse_measurement(reading.tx_power),
            "voltage_mv": parse_measurement(reading.voltage),
            "temperature_c": parse_measurement(reading.temperature),
            "rx_power_text": f"{reading.rx_power} dBm",
            "tx_power_text": f"{reading.tx_power} dBm",
            "voltage_text": f"{reading.voltage} mV",
            "temperature_text": f"{reading.temperature} ℃",
            "reference_range": reference_range(page),
            "temperature_range": TEMPERATURE_RANGE,
            "encoding": reading.encoding,
        }
        logger.info(
            "optical poll ok rx=%s tx=%s temp=%s encoding=%s",
            reading.rx_power,
            reading.tx_power,
            reading.temperature,
            reading.encoding,
            extra=log_extra,
        )
        return MonitoringResult.ok(metrics)

    def check_connectivity(self, device: DeviceDescriptor) -> bool:
        """Whether the terminal's web interface answers at all; no login."""

        if device.onu is None:
            return False
        client = OnuWebClient(
            host=device.onu.host,
            username=device.onu.username,
            password=device.onu.password,
            timeout=self._timeout,
            transport=self._transport,
        )
        return client.check_connectivity()
