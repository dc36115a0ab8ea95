"""YAML-backed device store.

The store owns the device inventory (``config/devices.yml``), the control
gateway record and the in-memory monitoring cache. Everything handed out is a
copy: callers never mutate the store's records directly. Passwords stay
encrypted at rest and are only decrypted by :meth:`DeviceStore.get_device_with_credentials`
and :meth:`DeviceStore.get_gateway`.
"""

from __future__ import annotations

import copy
import logging
import os
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

import yaml

from linkwatch.core.config import (
    Inventory,
    device_to_mapping,
    gateway_to_mapping,
    load_inventory,
)
from linkwatch.core.models import (
    RADIO_FAMILY,
    DeviceDescriptor,
    DeviceStatus,
    GatewayConfig,
    NotificationState,
)
from linkwatch.core.secrets import CredentialCodec

logger = logging.getLogger(__name__)


class DeviceNotFoundError(KeyError):
    """Raised when a device id is not present in the store."""


class DeviceUpdateError(ValueError):
    """Raised when an update would change immutable device attributes."""


@dataclass(slots=True)
class CacheEntry:
    """Last known monitoring status of a device."""

    status: DeviceStatus
    metrics: dict[str, Any] | None
    updated_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


def _strip_password(device: DeviceDescriptor) -> DeviceDescriptor:
    clone = copy.deepcopy(device)
    if clone.onu is not None:
        clone.onu.password = ""
    if clone.radio is not None:
        clone.radio.password = ""
    return clone


def next_free_port(devices: Iterable[DeviceDescriptor], base_port: int) -> int:
    """Return the lowest tunnel port >= ``base_port`` not used by any radio."""

    used = {device.radio.tunnel_port for device in devices if device.radio is not None}
    port = base_port
    while port in used:
        port += 1
    if port > 65535:
        raise ValueError("No free tunnel port left above base_port.")
    return port


class DeviceStore:
    """Thread-safe device inventory persisted as YAML."""

    def __init__(
        self,
        path: Path | None,
        codec: CredentialCodec,
        inventory: Inventory | None = None,
    ) -> None:
        self._path = path
        self._codec = codec
        self._lock = threading.RLock()
        if inventory is None:
            inventory = load_inventory(path) if path is not None else Inventory()
        self._devices: dict[int, DeviceDescriptor] = {device.id: device for device in inventory.devices}
        self._states: dict[int, NotificationState] = dict(inventory.states)
        self._gateway = inventory.gateway
        self._cache: dict[int, CacheEntry] = {}

    @classmethod
    def in_memory(cls, codec: CredentialCodec) -> DeviceStore:
        """Build a store that never touches disk."""

        return cls(path=None, codec=codec, inventory=Inventory())

    # ------------------------------------------------------------------ queries

    def list_devices(self, include_disabled: bool = False) -> list[DeviceDescriptor]:
        """Return enabled devices ordered by name, without credentials."""

        with self._lock:
            devices = [
                _strip_password(device)
                for device in self._devices.values()
                if include_disabled or device.enabled
            ]
        return sorted(devices, key=lambda device: (device.name.lower(), device.id))

    def get_device(self, device_id: int) -> DeviceDescriptor | None:
        with self._lock:
            device = self._devices.get(device_id)
            return _strip_password(device) if device is not None else None

    def get_device_with_credentials(self, device_id: int) -> DeviceDescriptor | None:
        """Return a copy of the device with decrypted passwords."""

        with self._lock:
            device = self._devices.get(device_id)
            if device is None:
                return None
            clone = copy.deepcopy(device)

        if clone.onu is not None:
            clone.onu.password = self._codec.decrypt(clone.onu.password)
        if clone.radio is not None:
            clone.radio.password = self._codec.decrypt(clone.radio.password)
        return clone

    def get_gateway(self) -> GatewayConfig | None:
        """Return the control gateway with its password decrypted."""

        with self._lock:
            if self._gateway is None:
                return None
            gateway = replace(self._gateway)
        gateway.password = self._codec.decrypt(gateway.password)
        return gateway

    def next_tunnel_port(self) -> int:
        with self._lock:
            base_port = self._gateway.base_port if self._gateway is not None else 60001
            return next_free_port(self._devices.values(), base_port)

    # ---------------------------------------------------------------- mutations

    def save_gateway(self, gateway: GatewayConfig) -> None:
        """Store the gateway; ``gateway.password`` is plaintext."""

        with self._lock:
            self._gateway = replace(gateway, password=self._codec.encrypt(gateway.password))
            self._persist()
        logger.info("gateway configuration saved control_ip=%s", gateway.control_ip)

    def add_device(self, device: DeviceDescriptor) -> DeviceDescriptor:
        """Insert a device; passwords on ``device`` are plaintext.

        An id of 0 or below is replaced by the next free id.
        """

        record = copy.deepcopy(device)
        self._encrypt_passwords(record)
        with self._lock:
            if record.id <= 0:
                record.id = max(self._devices, default=0) + 1
            if record.id in self._devices:
                raise DeviceUpdateError(f"Device id {record.id} already exists.")
            self._devices[record.id] = record
            self._states[record.id] = NotificationState()
            self._persist()
        logger.info("device added id=%d family=%s", record.id, record.family, extra={"device": record.name})
        return _strip_password(record)

    def update_device(self, device: DeviceDescriptor) -> DeviceDescriptor:
        """Replace a device's configuration.

        The family is immutable. Empty passwords keep the stored value.
        """

        record = copy.deepcopy(device)
        with self._lock:
            current = self._devices.get(record.id)
            if current is None:
                raise DeviceNotFoundError(record.id)
            if current.family != record.family:
                raise DeviceUpdateError(
                    f"Device family cannot change ({current.family} -> {record.family})."
                )
            if record.onu is not None:
                record.onu.password = (
                    self._codec.encrypt(record.onu.password)
                    if record.onu.password
                    else (current.onu.password if current.onu else "")
                )
            if record.radio is not None:
                record.radio.password = (
                    self._codec.encrypt(record.radio.password)
                    if record.radio.password
                    else (current.radio.password if current.radio else "")
                )
            self._devices[record.id] = record
            self._persist()
        logger.info("device updated id=%d", record.id, extra={"device": record.name})
        return _strip_password(record)

    def delete_device(self, device_id: int) -> bool:
        with self._lock:
            removed = self._devices.pop(device_id, None)
            self._states.pop(device_id, None)
            self._cache.pop(device_id, None)
            if removed is None:
                return False
            self._persist()
        logger.info("device deleted id=%d", device_id, extra={"device": removed.name})
        return True

    def remaining_radios(self, excluding_id: int) -> list[DeviceDescriptor]:
        """Gateway-reachable devices other than ``excluding_id``."""

        return [
            device
            for device in self.list_devices(include_disabled=True)
            if device.id != excluding_id and device.family == RADIO_FAMILY
        ]

    # ------------------------------------------------------------ cache & state

    def update_cache(self, device_id: int, status: DeviceStatus, metrics: dict[str, Any] | None) -> None:
        with self._lock:
            if device_id not in self._devices:
                logger.debug("cache update ignored for unknown device id=%d", device_id)
                return
            self._cache[device_id] = CacheEntry(status=status, metrics=copy.deepcopy(metrics))

    def get_cache(self, device_id: int) -> CacheEntry | None:
        with self._lock:
            entry = self._cache.get(device_id)
            return copy.deepcopy(entry) if entry is not None else None

    def get_notification_state(self, device_id: int) -> NotificationState:
        with self._lock:
            return replace(self._states.get(device_id) or NotificationState())

    def update_notification_state(self, device_id: int, consecutive_failures: int, offline_notified: bool) -> None:
        with self._lock:
            if device_id not in self._devices:
                return
            self._states[device_id] = NotificationState(
                consecutive_failures=consecutive_failures, offline_notified=offline_notified
            )
            self._persist()

    # ---------------------------------------------------------------- internals

    def _encrypt_passwords(self, device: DeviceDescriptor) -> None:
        if device.onu is not None:
            device.onu.password = self._codec.encrypt(device.onu.password)
        if device.radio is not None:
            device.radio.password = self._codec.encrypt(device.radio.password)

    def _persist(self) -> None:
        if self._path is None:
            return

        data: dict[str, Any] = {}
        if self._gateway is not None:
            data["gateway"] = gateway_to_mapping(self._gateway)
        data["devices"] = [
            device_to_mapping(device, self._states.get(device.id))
            for device in sorted(self._devices.values(), key=lambda item: item.id)
        ]

        self._path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        with temp_path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(data, handle, sort_keys=False, allow_unicode=True)
        os.replace(temp_path, self._path)
