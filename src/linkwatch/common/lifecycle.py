"""Inventory changes that must be mirrored on the control gateway.

Adding a radio bridge provisions its tunnel address and NAT rule; deleting one
removes them again. The inventory record is always written first, so a gateway
outage never blocks an inventory change: the reconcile outcome is returned
alongside the device for the caller to report.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass

from linkwatch.core.models import RADIO_FAMILY, DeviceDescriptor, ReconcileOutcome
from linkwatch.core.storage import DeviceNotFoundError, DeviceStore
from linkwatch.mikrotik.provisioning import GatewayReconciler

logger = logging.getLogger(__name__)


def _tunnel_key(device: DeviceDescriptor) -> tuple[str, int, str]:
    return device.radio.inner_ip, device.radio.tunnel_port, device.radio.tunnel_ip


@dataclass(slots=True)
class LifecycleResult:
    device: DeviceDescriptor
    outcome: ReconcileOutcome | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.device.id,
            "name": self.device.name,
            "family": self.device.family,
            "reconcile": self.outcome.to_dict() if self.outcome is not None else None,
        }


class DeviceService:
    def __init__(self, store: DeviceStore, reconciler: GatewayReconciler | None = None) -> None:
        self._store = store
        self._reconciler = reconciler or GatewayReconciler(store.get_gateway)

    def add_device(self, device: DeviceDescriptor) -> LifecycleResult:
        """Save ``device`` and provision it when it sits behind the gateway.

        A radio without a tunnel port gets the first free one.
        """

        record = copy.deepcopy(device)
        if record.radio is not None and record.radio.tunnel_port <= 0:
            record.radio.tunnel_port = self._store.next_tunnel_port()
            logger.info("assigned tunnel port=%d", record.radio.tunnel_port, extra={"device": record.name})

        saved = self._store.add_device(record)
        if saved.family != RADIO_FAMILY:
            return LifecycleResult(saved)

        full = self._store.get_device_with_credentials(saved.id)
        outcome = self._reconciler.provision(full)
        if not outcome.success:
            logger.warning(
                "device saved but gateway provisioning failed error=%s", outcome.error, extra={"device": saved.name}
            )
        return LifecycleResult(saved, outcome)

    def update_device(self, device: DeviceDescriptor) -> LifecycleResult:
        """Replace the stored configuration of ``device``.

        The family cannot change and an empty password keeps the stored one.
        The gateway is left alone: a radio whose tunnel settings changed has
        to be provisioned again.
        """

        current = self._store.get_device(device.id)
        if current is None:
            raise DeviceNotFoundError(device.id)

        saved = self._store.update_device(device)
        if current.radio is not None and saved.radio is not None and _tunnel_key(current) != _tunnel_key(saved):
            logger.warning(
                "tunnel settings changed %s -> %s, gateway rules need provisioning",
                _tunnel_key(current),
                _tunnel_key(saved),
                extra={"device": saved.name},
            )
        return LifecycleResult(saved)

    def provision(self, device_id: int) -> ReconcileOutcome:
        """Re-run provisioning for an existing radio."""

        device = self._store.get_device_with_credentials(device_id)
        if device is None:
            raise DeviceNotFoundError(device_id)
        return self._reconciler.provision(device)

    def delete_device(self, device_id: int) -> LifecycleResult:
        """Delete the record, then clean up the gateway for radios."""

        device = self._store.get_device_with_credentials(device_id)
        if device is None:
            raise DeviceNotFoundError(device_id)

        remaining = self._store.remaining_radios(excluding_id=device_id)
        if not self._store.delete_device(device_id):
            raise DeviceNotFoundError(device_id)

        if device.family != RADIO_FAMILY:
            return LifecycleResult(device)

        outcome = self._reconciler.deprovision(device, remaining)
        for warning in outcome.warnings:
            logger.warning("cleanup warning: %s", warning, extra={"device": device.name})
        return LifecycleResult(device, outcome)
