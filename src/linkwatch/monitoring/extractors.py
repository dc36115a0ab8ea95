"""Family-based dispatch to the telemetry extractors."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Protocol

from linkwatch.core.models import ONU_FAMILIES, RADIO_FAMILY, DeviceDescriptor, GatewayConfig, MonitoringResult
from linkwatch.mikrotik.client import RouterOSChannel
from linkwatch.mikrotik.monitor import RadioMonitor
from linkwatch.onu.monitor import OnuMonitor


class Extractor(Protocol):
    def extract(self, device: DeviceDescriptor) -> MonitoringResult: ...

    def check_connectivity(self, device: DeviceDescriptor) -> bool: ...


@dataclass(slots=True)
class ExtractorSet:
    """One extractor per device family."""

    onu: Extractor
    radio: Extractor

    def for_family(self, family: str) -> Extractor:
        if family in ONU_FAMILIES:
            return self.onu
        if family == RADIO_FAMILY:
            return self.radio
        raise ValueError(f"Unsupported device family: {family}")

    def extract(self, device: DeviceDescriptor) -> MonitoringResult:
        return self.for_family(device.family).extract(device)

    def check_connectivity(self, device: DeviceDescriptor) -> bool:
        return self.for_family(device.family).check_connectivity(device)


def build_extractors(
    gateway_provider: Callable[[], GatewayConfig | None], channel: RouterOSChannel | None = None
) -> ExtractorSet:
    return ExtractorSet(onu=OnuMonitor(), radio=RadioMonitor(gateway_provider, channel))
