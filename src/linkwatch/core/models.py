"""Data models for monitored devices, the control gateway and poll outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal


DeviceFamily = Literal["onu_blue", "onu_red", "mikrotik_lhg60g"]
DeviceStatus = Literal["online", "offline", "error"]

ONU_FAMILIES: tuple[str, ...] = ("onu_blue", "onu_red")
RADIO_FAMILY = "mikrotik_lhg60g"
DEVICE_FAMILIES: tuple[str, ...] = (*ONU_FAMILIES, RADIO_FAMILY)


@dataclass(slots=True)
class OnuAccess:
    """HTTP access details for an optical network terminal."""

    host: str
    username: str
    password: str = ""


@dataclass(slots=True)
class RadioAccess:
    """Access details for a radio reachable through the control gateway.

    ``inner_ip`` is the radio's own address behind the gateway, ``tunnel_port``
    the external port the gateway forwards to the radio's SSH port and
    ``tunnel_ip`` the address the gateway holds on the radio-facing interface.
    """

    inner_ip: str
    tunnel_port: int
    username: str
    tunnel_ip: str
    password: str = ""


@dataclass(slots=True)
class PollingSettings:
    """Polling cadence and retry policy for a device."""

    interval: int = 900
    retry_attempts: int = 3
    retry_delay: float = 3.0


@dataclass(slots=True)
class NotificationSettings:
    """Per-metric notification toggles and thresholds."""

    notify_offline: bool = False
    notify_rx_power: bool = False
    rx_power_threshold: float = -27.0
    notify_temp_high: bool = False
    temp_high_threshold: float = 70.0
    notify_temp_low: bool = False
    temp_low_threshold: float = 0.0
    notify_rssi: bool = False
    rssi_threshold: float = -66.0
    notify_port_speed: bool = False
    port_speed_threshold: int = 1000


@dataclass(slots=True)
class NotificationState:
    """Offline-alert bookkeeping kept between polls."""

    consecutive_failures: int = 0
    offline_notified: bool = False


@dataclass(slots=True)
class DeviceDescriptor:
    """Identity and configuration of one monitored endpoint."""

    id: int
    name: str
    family: DeviceFamily
    onu: OnuAccess | None = None
    radio: RadioAccess | None = None
    polling: PollingSettings = field(default_factory=PollingSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    group: str | None = None
    enabled: bool = True

    @property
    def is_gateway_reachable(self) -> bool:
        return self.family == RADIO_FAMILY

    @property
    def display_name(self) -> str:
        """Device name prefixed with its group, as used in alert texts."""

        if self.group:
            return f"{self.group} - {self.name}"
        return self.name

    @property
    def address(self) -> str:
        """Human-readable address used in logs and alert messages."""

        if self.radio is not None:
            return self.radio.inner_ip
        if self.onu is not None:
            return self.onu.host
        return "-"


@dataclass(slots=True)
class GatewayConfig:
    """Control router that NATs traffic to gateway-reachable devices."""

    control_ip: str
    username: str
    password: str
    device_interface: str
    wireguard_interface: str = ""
    port: int = 22
    base_port: int = 60001


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(slots=True)
class MonitoringResult:
    """Outcome of one poll attempt."""

    success: bool
    metrics: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_utcnow)
    error: str | None = None

    @classmethod
    def ok(cls, metrics: dict[str, Any]) -> MonitoringResult:
        return cls(success=True, metrics=metrics)

    @classmethod
    def failed(cls, error: str) -> MonitoringResult:
        return cls(success=False, error=error)

    @property
    def status(self) -> DeviceStatus:
        return "online" if self.success else "offline"

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "metrics": dict(self.metrics),
            "timestamp": self.timestamp,
            "error": self.error,
        }


@dataclass(slots=True)
class ReconcileOutcome:
    """Structured report of a provisioning or deprovisioning run."""

    success: bool = False
    steps: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    message: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "success": self.success,
            "steps": list(self.steps),
            "warnings": list(self.warnings),
            "message": self.message,
            "error": self.error,
        }


@dataclass(slots=True)
class Alert:
    """A notification produced by threshold evaluation."""

    type: str
    message: str
