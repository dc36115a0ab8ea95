"""Configuration helpers for LinkWatch.

Two YAML files drive the application:

``config/devices.yml``
    The device inventory and the control gateway. Passwords are stored
    encrypted (``password_encrypted``) and are decrypted by the device store.
``config/local.yml``
    Optional local settings: ``logging``, ``monitoring`` and ``sms`` sections.
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from linkwatch.core.models import (
    DEVICE_FAMILIES,
    RADIO_FAMILY,
    DeviceDescriptor,
    DeviceFamily,
    GatewayConfig,
    NotificationSettings,
    NotificationState,
    OnuAccess,
    PollingSettings,
    RadioAccess,
)

PROJECT_ROOT = Path(__file__).resolve().parents[3]


@dataclass(slots=True)
class ConfigPaths:
    """Paths used by the application."""

    devices: Path
    local: Path
    key: Path


DEFAULT_CONFIG = ConfigPaths(
    devices=PROJECT_ROOT / "config" / "devices.yml",
    local=PROJECT_ROOT / "config" / "local.yml",
    key=PROJECT_ROOT / "config" / "secret.key",
)


class DevicesConfigError(ValueError):
    """Raised when devices.yml cannot be parsed or validated."""


class SettingsError(ValueError):
    """Raised when local.yml contains invalid values."""


@dataclass(slots=True)
class MonitoringSettings:
    """Scheduler tuning values."""

    max_concurrent: int = 10
    stagger_seconds: float = 2.0
    reload_interval: float = 10.0


@dataclass(slots=True)
class SmsConfig:
    """Text-message gateway settings."""

    api_url: str = ""
    phone_numbers: list[str] = field(default_factory=list)
    enabled: bool = False


@dataclass(slots=True)
class Settings:
    """Values loaded from local.yml or defaults."""

    monitoring: MonitoringSettings = field(default_factory=MonitoringSettings)
    sms: SmsConfig = field(default_factory=SmsConfig)


@dataclass(slots=True)
class Inventory:
    """Parsed contents of devices.yml.

    Passwords on the contained descriptors and gateway are still ciphertext.
    """

    devices: list[DeviceDescriptor] = field(default_factory=list)
    gateway: GatewayConfig | None = None
    states: dict[int, NotificationState] = field(default_factory=dict)


def _require_string(mapping: Mapping[str, Any], field_name: str, context: str) -> str:
    value = mapping.get(field_name)
    if value is None or value == "":
        raise DevicesConfigError(f"{context}: missing required field '{field_name}'.")
    if not isinstance(value, str):
        raise DevicesConfigError(f"{context}: field '{field_name}' must be a string.")
    return value


def _validate_ipv4(value: str, field_name: str, context: str) -> str:
    try:
        ipaddress.IPv4Address(value)
    except ValueError as exc:
        raise DevicesConfigError(f"{context}: field '{field_name}' must be an IPv4 address.") from exc
    return value


def _validate_port(value: Any, context: str, default: int | None = None) -> int:
    if value is None:
        if default is None:
            raise DevicesConfigError(f"{context}: port is required.")
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise DevicesConfigError(f"{context}: port must be an integer.")
    if value <= 0 or value > 65535:
        raise DevicesConfigError(f"{context}: port must be between 1 and 65535.")
    return value


def _validate_family(value: str, context: str) -> DeviceFamily:
    if value not in DEVICE_FAMILIES:
        raise DevicesConfigError(
            f"{context}: invalid family '{value}'. Allowed values: {', '.join(DEVICE_FAMILIES)}."
        )
    return value  # type: ignore[return-value]


def _positive_number(value: Any, field_name: str, context: str, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise DevicesConfigError(f"{context}: {field_name} must be a number.")
    if value <= 0:
        raise DevicesConfigError(f"{context}: {field_name} must be greater than zero.")
    return value


def _parse_polling(raw: Any, context: str) -> PollingSettings:
    if raw is None:
        return PollingSettings()
    if not isinstance(raw, Mapping):
        raise DevicesConfigError(f"{context}: polling must be a mapping.")

    defaults = PollingSettings()
    return PollingSettings(
        interval=int(_positive_number(raw.get("interval"), "polling.interval", context, defaults.interval)),
        retry_attempts=int(
            _positive_number(raw.get("retry_attempts"), "polling.retry_attempts", context, defaults.retry_attempts)
        ),
        retry_delay=float(
            _positive_number(raw.get("retry_delay"), "polling.retry_delay", context, defaults.retry_delay)
        ),
    )


def _parse_notifications(raw: Any, context: str) -> NotificationSettings:
    if raw is None:
        return NotificationSettings()
    if not isinstance(raw, Mapping):
        raise DevicesConfigError(f"{context}: notifications must be a mapping.")

    settings = NotificationSettings()
    for key, value in raw.items():
        if key not in NotificationSettings.__dataclass_fields__:
            raise DevicesConfigError(f"{context}: unknown notification setting '{key}'.")
        current = getattr(settings, key)
        if isinstance(current, bool):
            if not isinstance(value, bool):
                raise DevicesConfigError(f"{context}: notifications.{key} must be true or false.")
        elif isinstance(value, bool) or not isinstance(value, (int, float)):
            raise DevicesConfigError(f"{context}: notifications.{key} must be a number.")
        setattr(settings, key, type(current)(value))
    return settings


def _parse_state(raw: Any) -> NotificationState:
    if not isinstance(raw, Mapping):
        return NotificationState()
    return NotificationState(
        consecutive_failures=int(raw.get("consecutive_failures") or 0),
        offline_notified=bool(raw.get("offline_notified", False)),
    )


def parse_device(raw_device: Mapping[str, Any], context: str) -> DeviceDescriptor:
    """Validate one inventory entry and build its descriptor."""

    device_id = raw_device.get("id")
    if isinstance(device_id, bool) or not isinstance(device_id, int) or device_id <= 0:
        raise DevicesConfigError(f"{context}: id must be a positive integer.")

    name = _require_string(raw_device, "name", context)
    device_context = f"{context} '{name}'"
    family = _validate_family(_require_string(raw_device, "family", device_context), device_context)
    username = _require_string(raw_device, "username", device_context)
    password = raw_device.get("password_encrypted") or ""
    if "password" in raw_device:
        raise DevicesConfigError(
            f"{device_context}: plaintext 'password' is not allowed in devices.yml. "
            "Use 'password_encrypted'."
        )

    group = raw_device.get("group")
    if group is not None and not isinstance(group, str):
        raise DevicesConfigError(f"{device_context}: group must be a string when provided.")

    onu: OnuAccess | None = None
    radio: RadioAccess | None = None
    if family == RADIO_FAMILY:
        inner_ip = _validate_ipv4(_require_string(raw_device, "inner_ip", device_context), "inner_ip", device_context)
        tunnel_ip = _validate_ipv4(
            _require_string(raw_device, "tunnel_ip", device_context), "tunnel_ip", device_context
        )
        tunnel_port = _validate_port(raw_device.get("tunnel_port"), f"{device_context} tunnel_port")
        radio = RadioAccess(
            inner_ip=inner_ip,
            tunnel_port=tunnel_port,
            username=username,
            tunnel_ip=tunnel_ip,
            password=password,
        )
    else:
        host = _require_string(raw_device, "host", device_context)
        onu = OnuAccess(host=host, username=username, password=password)

    return DeviceDescriptor(
        id=device_id,
        name=name,
        family=family,
        onu=onu,
        radio=radio,
        polling=_parse_polling(raw_device.get("polling"), device_context),
        notifications=_parse_notifications(raw_device.get("notifications"), device_context),
        group=group,
        enabled=bool(raw_device.get("enabled", True)),
    )


def parse_gateway(raw_gateway: Mapping[str, Any]) -> GatewayConfig:
    """Validate the ``gateway`` section of devices.yml."""

    context = "gateway"
    control_ip = _validate_ipv4(_require_string(raw_gateway, "control_ip", context), "control_ip", context)
    return GatewayConfig(
        control_ip=control_ip,
        username=_require_string(raw_gateway, "username", context),
        password=raw_gateway.get("password_encrypted") or "",
        device_interface=_require_string(raw_gateway, "device_interface", context),
        wireguard_interface=str(raw_gateway.get("wireguard_interface") or ""),
        port=_validate_port(raw_gateway.get("port"), f"{context} port", default=22),
        base_port=_validate_port(raw_gateway.get("base_port"), f"{context} base_port", default=60001),
    )


def device_to_mapping(device: DeviceDescriptor, state: NotificationState | None = None) -> dict[str, Any]:
    """Serialize a descriptor back to its devices.yml form.

    ``device`` must carry ciphertext in its password fields.
    """

    data: dict[str, Any] = {"id": device.id, "name": device.name, "family": device.family}
    if device.radio is not None:
        data.update(
            {
                "inner_ip": device.radio.inner_ip,
                "tunnel_port": device.radio.tunnel_port,
                "tunnel_ip": device.radio.tunnel_ip,
                "username": device.radio.username,
                "password_encrypted": device.radio.password,
            }
        )
    elif device.onu is not None:
        data.update(
            {
                "host": device.onu.host,
                "username": device.onu.username,
                "password_encrypted": device.onu.password,
            }
        )
    if device.group:
        data["group"] = device.group
    data["enabled"] = device.enabled
    data["polling"] = {
        "interval": device.polling.interval,
        "retry_attempts": device.polling.retry_attempts,
        "retry_delay": device.polling.retry_delay,
    }
    data["notifications"] = {
        name: getattr(device.notifications, name) for name in NotificationSettings.__dataclass_fields__
    }
    if state is not None:
        data["state"] = {
            "consecutive_failures": state.consecutive_failures,
            "offline_notified": state.offline_notified,
        }
    return data


def gateway_to_mapping(gateway: GatewayConfig) -> dict[str, Any]:
    """Serialize the gateway section; ``gateway.password`` must be ciphertext."""

    return {
        "control_ip": gateway.control_ip,
        "port": gateway.port,
        "username": gateway.username,
        "password_encrypted": gateway.password,
        "device_interface": gateway.device_interface,
        "wireguard_interface": gateway.wireguard_interface,
        "base_port": gateway.base_port,
    }


def load_inventory(path: Path, logger: logging.Logger | None = None) -> Inventory:
    """Load and validate devices.yml.

    Invalid device entries are logged and skipped so one bad record does not
    stop monitoring of the others. A missing file yields an empty inventory.
    """

    logger = logger or logging.getLogger(__name__)

    if not path.exists():
        logger.info("device inventory not found path=%s, starting empty", path, extra={"device": "-"})
        return Inventory()

    with path.open("r", encoding="utf-8") as handle:
        raw_data = yaml.safe_load(handle) or {}

    if not isinstance(raw_data, dict):
        raise DevicesConfigError("Top-level devices.yml structure must be a mapping.")

    raw_devices = raw_data.get("devices")
    if raw_devices is None:
        raw_devices = []
    if not isinstance(raw_devices, list):
        raise DevicesConfigError("The 'devices' field must be a list of device entries.")

    inventory = Inventory()
    raw_gateway = raw_data.get("gateway")
    if raw_gateway is not None:
        if not isinstance(raw_gateway, Mapping):
            raise DevicesConfigError("The 'gateway' field must be a mapping.")
        inventory.gateway = parse_gateway(raw_gateway)

    seen_ids: set[int] = set()
    for index, raw_device in enumerate(raw_devices, start=1):
        context = f"device #{index}"
        if not isinstance(raw_device, dict):
            logger.error("%s: each device must be a mapping.", context, extra={"device": "-"})
            continue

        log_extra = {"device": raw_device.get("name") or "-"}
        try:
            device = parse_device(raw_device, context)
        except DevicesConfigError as exc:
            logger.error("%s", exc, extra=log_extra)
            continue

        if device.id in seen_ids:
            logger.error("%s: device id %d must be unique. Duplicate ignored.", context, device.id, extra=log_extra)
            continue

        seen_ids.add(device.id)
        inventory.devices.append(device)
        inventory.states[device.id] = _parse_state(raw_device.get("state"))
        logger.debug(
            "device loaded id=%d family=%s address=%s",
            device.id,
            device.family,
            device.address,
            extra={"device": device.name},
        )

    return inventory


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, Mapping):
        raise SettingsError(f"local.yml section '{name}' must be a mapping.")
    return section


def load_settings(path: Path | None = None, logger: logging.Logger | None = None) -> Settings:
    """Load the ``monitoring`` and ``sms`` sections of local.yml."""

    logger = logger or logging.getLogger(__name__)
    config_file = path or DEFAULT_CONFIG.local
    if not config_file.exists():
        logger.debug("local config not found at %s, using defaults", config_file)
        return Settings()

    try:
        with config_file.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
        raise SettingsError(f"Unable to parse {config_file}") from exc

    if not isinstance(data, Mapping):
        raise SettingsError("Top-level local.yml structure must be a mapping.")

    monitoring_raw = _section(data, "monitoring")
    defaults = MonitoringSettings()
    try:
        monitoring = MonitoringSettings(
            max_concurrent=int(monitoring_raw.get("max_concurrent", defaults.max_concurrent)),
            stagger_seconds=float(monitoring_raw.get("stagger_seconds", defaults.stagger_seconds)),
            reload_interval=float(monitoring_raw.get("reload_interval", defaults.reload_interval)),
        )
    except (TypeError, ValueError) as exc:
        raise SettingsError(f"Invalid monitoring settings in {config_file}") from exc
    if monitoring.max_concurrent < 1:
        raise SettingsError("monitoring.max_concurrent must be at least 1.")
    if monitoring.stagger_seconds < 0 or monitoring.reload_interval <= 0:
        raise SettingsError("monitoring.stagger_seconds and reload_interval must not be negative.")

    sms_raw = _section(data, "sms")
    phone_numbers = sms_raw.get("phone_numbers") or []
    if isinstance(phone_numbers, str):
        phone_numbers = [number.strip() for number in phone_numbers.split(",")]
    if not isinstance(phone_numbers, list):
        raise SettingsError("sms.phone_numbers must be a list or a comma-separated string.")

    sms = SmsConfig(
        api_url=str(sms_raw.get("api_url") or ""),
        phone_numbers=[str(number) for number in phone_numbers if str(number).strip()],
        enabled=bool(sms_raw.get("enabled", False)),
    )
    return Settings(monitoring=monitoring, sms=sms)
