"""Control gateway provisioning for gateway-reachable radios.

Provisioning gives a new radio a gateway-side address on the radio-facing
interface and a destination-NAT rule forwarding its tunnel port to the radio's
SSH port. Deprovisioning removes the rule and, when no other radio still sits
in the same /24, the address.

The gateway is the only source of truth: every run lists the current state
before changing anything, so repeated runs converge on the same state and only
add "already exists" / "already absent" entries to the outcome. Callers must
serialize runs for the same device; runs for different devices may overlap.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable

from linkwatch.core.models import RADIO_FAMILY, DeviceDescriptor, GatewayConfig, ReconcileOutcome
from linkwatch.mikrotik.client import (
    ChannelError,
    CommandError,
    RouterOSChannel,
    RouterOSSession,
    gateway_target,
)
from linkwatch.mikrotik.parsers import nat_rule_present, parse_address_listing, subnet_prefix

logger = logging.getLogger(__name__)

ADDRESS_PREFIX_LENGTH = 24
TUNNEL_SSH_PORT = 22
NOT_FOUND_MARKER = "no such item"


def address_list_command(interface: str) -> str:
    return f'/ip address print where interface="{interface}"'


def address_add_command(address: str, interface: str) -> str:
    return f'/ip address add address="{address}/{ADDRESS_PREFIX_LENGTH}" interface="{interface}"'


def address_remove_command(address: str, interface: str) -> str:
    return f'/ip address remove [find where address="{address}/{ADDRESS_PREFIX_LENGTH}" and interface="{interface}"]'


def nat_list_command(port: int) -> str:
    return f"/ip firewall nat print where dst-port={port}"


def nat_add_command(comment: str, gateway_ip: str, port: int, target_ip: str) -> str:
    return (
        f'/ip firewall nat add action=dst-nat chain=dstnat comment="{comment}" '
        f"dst-address={gateway_ip} dst-port={port} protocol=tcp "
        f"to-addresses={target_ip} to-ports={TUNNEL_SSH_PORT}"
    )


def nat_remove_command(port: int, target_ip: str) -> str:
    return f"/ip firewall nat remove [find where dst-port={port} and to-addresses={target_ip}]"


def subnet_users(tunnel_ip: str, remaining_devices: Iterable[DeviceDescriptor]) -> list[DeviceDescriptor]:
    """Radios from ``remaining_devices`` sharing the /24 of ``tunnel_ip``.

    A radio shares the network when either its inner address or its tunnel
    address has the same first three octets.
    """

    prefix = subnet_prefix(tunnel_ip)
    if prefix is None:
        return []

    users: list[DeviceDescriptor] = []
    for device in remaining_devices:
        if device.family != RADIO_FAMILY or device.radio is None:
            continue
        prefixes = {subnet_prefix(device.radio.inner_ip), subnet_prefix(device.radio.tunnel_ip)}
        if prefix in prefixes:
            users.append(device)
    return users


class GatewayReconciler:
    """Provision and deprovision radios on the control gateway."""

    def __init__(
        self,
        gateway_provider: Callable[[], GatewayConfig | None],
        channel: RouterOSChannel | None = None,
    ) -> None:
        self._gateway_provider = gateway_provider
        self._channel = channel or RouterOSChannel()

    def provision(self, device: DeviceDescriptor) -> ReconcileOutcome:
        """Ensure the gateway address and NAT rule for ``device`` exist.

        Only a missing gateway configuration or a failed gateway connection
        makes the outcome unsuccessful; step failures become warnings.
        """

        outcome = ReconcileOutcome()
        log_extra = {"device": device.name}
        if device.radio is None:
            return self._abort(outcome, "Device is not reachable through the control gateway", log_extra)

        gateway = self._gateway_provider()
        if gateway is None:
            return self._abort(
                outcome, "Control router configuration not found. Please configure it first.", log_extra
            )
        outcome.steps.append("Retrieved control router configuration")

        try:
            session = self._channel.open(gateway_target(gateway), log_extra=log_extra)
        except ChannelError as exc:
            return self._abort(outcome, str(exc), log_extra)

        try:
            outcome.steps.append("Connected to control router")
            self._ensure_address(session, gateway, device, outcome)
            self._ensure_nat_rule(session, gateway, device, outcome)
        finally:
            self._channel.close(session)

        outcome.success = True
        outcome.message = (
            "Device provisioned with warnings" if outcome.warnings else "Device provisioned successfully"
        )
        logger.info(
            "provision finished steps=%d warnings=%d", len(outcome.steps), len(outcome.warnings), extra=log_extra
        )
        return outcome

    def deprovision(
        self, device: DeviceDescriptor, remaining_devices: Iterable[DeviceDescriptor]
    ) -> ReconcileOutcome:
        """Remove the NAT rule and, when safe, the gateway address of ``device``.

        ``remaining_devices`` must not contain ``device``. The outcome is always
        successful so the caller can proceed with deleting the record.
        """

        outcome = ReconcileOutcome()
        log_extra = {"device": device.name}
        remaining = [item for item in remaining_devices if item.id != device.id]

        if device.radio is None:
            outcome.warnings.append("Device is not reachable through the control gateway, nothing to clean up")
            outcome.success = True
            return outcome

        gateway = self._gateway_provider()
        if gateway is None:
            outcome.warnings.append("Control router configuration not found, skipping cleanup")
            outcome.success = True
            return outcome
        outcome.steps.append("Retrieved control router configuration")

        try:
            session = self._channel.open(gateway_target(gateway), log_extra=log_extra)
        except ChannelError as exc:
            logger.warning("gateway unreachable, cleanup skipped error=%s", exc, extra=log_extra)
            outcome.warnings.append(f"Cleanup error: {exc}")
            outcome.success = True
            return outcome

        try:
            outcome.steps.append("Connected to control router")
            self._remove_nat_rule(session, device, outcome)

            users = subnet_users(device.radio.tunnel_ip, remaining)
            if users:
                names = ", ".join(user.name for user in users)
                logger.info("subnet still in use by %s", names, extra=log_extra)
                outcome.steps.append(
                    f"IP address {device.radio.tunnel_ip}/{ADDRESS_PREFIX_LENGTH} preserved "
                    f"(used by other devices: {names})"
                )
            else:
                self._remove_address(session, gateway, device, outcome)
        finally:
            self._channel.close(session)

        outcome.success = True
        outcome.message = (
            "Device deprovisioned with warnings" if outcome.warnings else "Device deprovisioned successfully"
        )
        logger.info(
            "deprovision finished steps=%d warnings=%d", len(outcome.steps), len(outcome.warnings), extra=log_extra
        )
        return outcome

    # ------------------------------------------------------------------- steps

    def _abort(self, outcome: ReconcileOutcome, error: str, log_extra: dict[str, str]) -> ReconcileOutcome:
        logger.error("provision aborted error=%s", error, extra=log_extra)
        outcome.success = False
        outcome.error = error
        outcome.steps.append(f"Error: {error}")
        return outcome

    def _ensure_address(
        self, session: RouterOSSession, gateway: GatewayConfig, device: DeviceDescriptor, outcome: ReconcileOutcome
    ) -> None:
        interface = gateway.device_interface
        address = device.radio.tunnel_ip
        try:
            listing = self._channel.run(session, address_list_command(interface)).stdout
        except ChannelError as exc:
            outcome.warnings.append(f"Failed to check IP addresses on {interface}: {exc}")
            return

        if address in parse_address_listing(listing):
            outcome.steps.append(f"IP address {address}/{ADDRESS_PREFIX_LENGTH} already exists on {interface}")
            return

        try:
            self._channel.run(session, address_add_command(address, interface))
        except ChannelError as exc:
            outcome.warnings.append(f"Failed to add IP address: {exc}")
            return
        outcome.steps.append(f"Added IP address {address}/{ADDRESS_PREFIX_LENGTH} to {interface}")

    def _ensure_nat_rule(
        self, session: RouterOSSession, gateway: GatewayConfig, device: DeviceDescriptor, outcome: ReconcileOutcome
    ) -> None:
        port = device.radio.tunnel_port
        target = device.radio.inner_ip
        try:
            listing = self._channel.run(session, nat_list_command(port)).stdout
        except ChannelError as exc:
            outcome.warnings.append(f"Failed to check NAT rules for port {port}: {exc}")
            return

        if nat_rule_present(listing, target, port):
            outcome.steps.append(f"NAT rule for port {port} already exists")
            return

        try:
            self._channel.run(session, nat_add_command(device.name, gateway.control_ip, port, target))
        except ChannelError as exc:
            outcome.warnings.append(f"Failed to add NAT rule: {exc}")
            return
        outcome.steps.append(f"Added NAT rule for SSH port {port}")

    def _remove_nat_rule(self, session: RouterOSSession, device: DeviceDescriptor, outcome: ReconcileOutcome) -> None:
        port = device.radio.tunnel_port
        target = device.radio.inner_ip
        try:
            listing = self._channel.run(session, nat_list_command(port)).stdout
        except ChannelError as exc:
            logger.debug("NAT listing failed, removing blindly error=%s", exc, extra={"device": device.name})
        else:
            if not nat_rule_present(listing, target, port):
                outcome.warnings.append(f"NAT rule for port {port} not found, may have been already removed")
                return

        try:
            self._channel.run(session, nat_remove_command(port, target))
        except CommandError as exc:
            if NOT_FOUND_MARKER in str(exc):
                outcome.warnings.append(f"NAT rule for port {port} not found, may have been already removed")
            else:
                outcome.warnings.append(f"Failed to remove NAT rule: {exc}")
            return
        except ChannelError as exc:
            outcome.warnings.append(f"Failed to remove NAT rule: {exc}")
            return
        outcome.steps.append(f"Removed NAT rule for port {port}")

    def _remove_address(
        self, session: RouterOSSession, gateway: GatewayConfig, device: DeviceDescriptor, outcome: ReconcileOutcome
    ) -> None:
        interface = gateway.device_interface
        address = device.radio.tunnel_ip
        try:
            listing = self._channel.run(session, address_list_command(interface)).stdout
        except ChannelError as exc:
            logger.debug("address listing failed, removing blindly error=%s", exc, extra={"device": device.name})
        else:
            if address not in parse_address_listing(listing):
                outcome.warnings.append(
                    f"IP address {address}/{ADDRESS_PREFIX_LENGTH} not found on {interface}, "
                    "may have been already removed"
                )
                return

        try:
            self._channel.run(session, address_remove_command(address, interface))
        except CommandError as exc:
            if NOT_FOUND_MARKER in str(exc):
                outcome.warnings.append(
                    f"IP address {address}/{ADDRESS_PREFIX_LENGTH} not found on {interface}, "
                    "may have been already removed"
                )
            else:
                outcome.warnings.append(f"Failed to remove IP address: {exc}")
            return
        except ChannelError as exc:
            outcome.warnings.append(f"Failed to remove IP address: {exc}")
            return
        outcome.steps.append(f"Removed IP address {address}/{ADDRESS_PREFIX_LENGTH} from {interface}")
