#!/usr/bin/env python3
"""Entry point for LinkWatch."""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import signal
import sys
import threading
from dataclasses import replace
from pathlib import Path

# Ensure src/ is on sys.path for local imports when running as a script
ROOT_DIR = Path(__file__).resolve().parent.parent
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from linkwatch.common.lifecycle import DeviceService  # noqa: E402
from linkwatch.core.config import (  # noqa: E402
    DevicesConfigError,
    Settings,
    SettingsError,
    load_settings,
)
from linkwatch.core.logging import setup_logging  # noqa: E402
from linkwatch.core.models import (  # noqa: E402
    ONU_FAMILIES,
    RADIO_FAMILY,
    DeviceDescriptor,
    GatewayConfig,
    OnuAccess,
    PollingSettings,
    RadioAccess,
)
from linkwatch.core.secrets import CredentialError, load_codec  # noqa: E402
from linkwatch.core.storage import DeviceNotFoundError, DeviceStore, DeviceUpdateError  # noqa: E402
from linkwatch.mikrotik.client import RouterOSChannel  # noqa: E402
from linkwatch.monitoring.extractors import build_extractors  # noqa: E402
from linkwatch.monitoring.notifications import NotificationService  # noqa: E402
from linkwatch.monitoring.scheduler import MonitoringScheduler  # noqa: E402
from linkwatch.monitoring.sms import SmsSender  # noqa: E402


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        description=(
            "Monitoring and provisioning for optical terminals and 60 GHz radio bridges. "
            "Use this CLI to run the monitoring loop and manage the device inventory."
        ),
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=ROOT_DIR / "config" / "devices.yml",
        help="Path to the devices inventory file (YAML)",
    )
    parser.add_argument(
        "--local-config",
        type=Path,
        default=ROOT_DIR / "config" / "local.yml",
        help="Path to local settings (logging, monitoring, sms)",
    )
    parser.add_argument(
        "--key-file",
        type=Path,
        default=ROOT_DIR / "config" / "secret.key",
        help="Path to the credential encryption key. LINKWATCH_ENCRYPTION_KEY takes precedence.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug-level logging for troubleshooting. Overrides config/local.yml logging.level.",
    )

    subcommands = parser.add_subparsers(dest="command", title="commands")

    subcommands.add_parser("monitor", help="Poll all enabled devices until interrupted")
    subcommands.add_parser("list", help="List devices in the inventory")

    poll_parser = subcommands.add_parser("poll", help="Poll devices once and print the results")
    poll_target = poll_parser.add_mutually_exclusive_group(required=True)
    poll_target.add_argument("--device", type=int, help="Device id")
    poll_target.add_argument(
        "--all", action="store_true", help="Every enabled device, bounded by monitoring.max_concurrent"
    )

    check_parser = subcommands.add_parser("check", help="Check that a device answers, without collecting telemetry")
    check_parser.add_argument("--device", type=int, required=True, help="Device id")

    onu_parser = subcommands.add_parser("add-onu", help="Add an optical network terminal")
    onu_parser.add_argument("--name", required=True)
    onu_parser.add_argument("--family", choices=ONU_FAMILIES, required=True)
    onu_parser.add_argument("--host", required=True, help="Terminal address reachable over HTTP")
    onu_parser.add_argument("--username", required=True)
    onu_parser.add_argument("--group", default=None)
    onu_parser.add_argument("--interval", type=int, default=PollingSettings().interval, help="Poll interval (s)")

    radio_parser = subcommands.add_parser("add-radio", help="Add a radio bridge and provision the gateway")
    radio_parser.add_argument("--name", required=True)
    radio_parser.add_argument("--inner-ip", required=True, help="Radio address behind the gateway")
    radio_parser.add_argument("--tunnel-ip", required=True, help="Gateway address on the radio interface")
    radio_parser.add_argument(
        "--tunnel-port", type=int, default=0, help="External SSH port on the gateway (0 picks the next free one)"
    )
    radio_parser.add_argument("--username", required=True)
    radio_parser.add_argument("--group", default=None)
    radio_parser.add_argument("--interval", type=int, default=PollingSettings().interval, help="Poll interval (s)")

    update_parser = subcommands.add_parser("update", help="Change a device; omitted options keep their value")
    update_parser.add_argument("--device", type=int, required=True, help="Device id")
    update_parser.add_argument("--name")
    update_parser.add_argument("--family", help="Family changes are rejected")
    update_parser.add_argument("--group")
    update_parser.add_argument("--host", help="Terminal address (optical terminals)")
    update_parser.add_argument("--username")
    update_parser.add_argument("--inner-ip", help="Radio address behind the gateway (radios)")
    update_parser.add_argument("--tunnel-ip", help="Gateway address on the radio interface (radios)")
    update_parser.add_argument("--tunnel-port", type=int, help="External SSH port on the gateway (radios)")
    update_parser.add_argument("--interval", type=int, help="Poll interval (s)")
    update_parser.add_argument("--password", action="store_true", help="Prompt for a new device password")
    update_state = update_parser.add_mutually_exclusive_group()
    update_state.add_argument("--enable", dest="enabled", action="store_true", default=None)
    update_state.add_argument("--disable", dest="enabled", action="store_false")

    delete_parser = subcommands.add_parser("delete", help="Delete a device and clean up the gateway")
    delete_parser.add_argument("--device", type=int, required=True, help="Device id")

    provision_parser = subcommands.add_parser("provision", help="Re-run gateway provisioning for a radio")
    provision_parser.add_argument("--device", type=int, required=True, help="Device id")

    gateway_parser = subcommands.add_parser("set-gateway", help="Store the control gateway configuration")
    gateway_parser.add_argument("--control-ip", required=True)
    gateway_parser.add_argument("--username", required=True)
    gateway_parser.add_argument("--device-interface", required=True, help="Interface facing the radios")
    gateway_parser.add_argument("--wireguard-interface", default="")
    gateway_parser.add_argument("--port", type=int, default=22)
    gateway_parser.add_argument("--base-port", type=int, default=60001)

    subcommands.add_parser("test-gateway", help="Check SSH access to the control gateway")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Run the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = setup_logging(args.local_config, cli_level=logging.DEBUG if args.debug else None)

    if args.command is None:
        parser.print_help()
        return 0

    try:
        settings = load_settings(args.local_config, logger)
        store = DeviceStore(args.config, load_codec(args.key_file))
    except (DevicesConfigError, SettingsError, CredentialError):
        logger.exception("Failed to load configuration.")
        return 1

    handlers = {
        "monitor": _run_monitor,
        "list": _run_list,
        "poll": _run_poll,
        "check": _run_check,
        "add-onu": _run_add_onu,
        "add-radio": _run_add_radio,
        "update": _run_update,
        "delete": _run_delete,
        "provision": _run_provision,
        "set-gateway": _run_set_gateway,
        "test-gateway": _run_test_gateway,
    }
    handler = handlers.get(args.command)
    if handler is None:
        parser.error(f"Unknown command: {args.command}")
        return 2

    try:
        return handler(args, store, settings, logger)
    except DeviceNotFoundError as exc:
        logger.error("Device %s not found.", exc.args[0])
        return 1
    except DeviceUpdateError as exc:
        logger.error("%s", exc)
        return 1


def _build_scheduler(store: DeviceStore, settings: Settings) -> MonitoringScheduler:
    sender = SmsSender(settings.sms)
    notifier = NotificationService(store, sender if sender.enabled else None)
    return MonitoringScheduler(
        store,
        build_extractors(store.get_gateway),
        notifier,
        settings.monitoring,
    )


def _run_monitor(args: argparse.Namespace, store: DeviceStore, settings: Settings, logger: logging.Logger) -> int:
    scheduler = _build_scheduler(store, settings)
    stop_event = threading.Event()

    def _handle_signal(signum, _frame) -> None:
        logger.info("Received signal %s, stopping.", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    logger.info("LinkWatch monitoring started for %d device(s).", len(store.list_devices()))
    scheduler.start()
    try:
        stop_event.wait()
    finally:
        scheduler.stop()
    logger.info("LinkWatch monitoring finished.")
    return 0


def _run_list(args: argparse.Namespace, store: DeviceStore, settings: Settings, logger: logging.Logger) -> int:
    for device in store.list_devices(include_disabled=True):
        port = f":{device.radio.tunnel_port}" if device.radio is not None else ""
        state = "enabled" if device.enabled else "disabled"
        print(f"{device.id:>4}  {device.family:<16} {device.display_name:<32} {device.address}{port}  {state}")
    return 0


def _run_poll(args: argparse.Namespace, store: DeviceStore, settings: Settings, logger: logging.Logger) -> int:
    scheduler = _build_scheduler(store, settings)
    if args.all:
        results = scheduler.trigger_all()
        payload = {str(device_id): result.to_dict() for device_id, result in sorted(results.items())}
        print(json.dumps(payload, indent=2, ensure_ascii=False))
        return 0 if all(result.success for result in results.values()) else 1

    result = scheduler.trigger(args.device)
    print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    return 0 if result.success else 1


def _run_check(args: argparse.Namespace, store: DeviceStore, settings: Settings, logger: logging.Logger) -> int:
    device = store.get_device_with_credentials(args.device)
    if device is None:
        raise DeviceNotFoundError(args.device)

    online = build_extractors(store.get_gateway).check_connectivity(device)
    print(json.dumps({"id": device.id, "name": device.name, "online": online}, indent=2, ensure_ascii=False))
    return 0 if online else 1


def _run_add_onu(args: argparse.Namespace, store: DeviceStore, settings: Settings, logger: logging.Logger) -> int:
    device = DeviceDescriptor(
        id=0,
        name=args.name,
        family=args.family,
        onu=OnuAccess(host=args.host, username=args.username, password=getpass.getpass("Terminal password: ")),
        polling=PollingSettings(interval=args.interval),
        group=args.group,
    )
    result = DeviceService(store).add_device(device)
    print(json.dumps(result.to_dict(), indent=2))
    return 0


def _run_add_radio(args: argparse.Namespace, store: DeviceStore, settings: Settings, logger: logging.Logger) -> int:
    device = DeviceDescriptor(
        id=0,
        name=args.name,
        family=RADIO_FAMILY,
        radio=RadioAccess(
            inner_ip=args.inner_ip,
            tunnel_port=args.tunnel_port,
            username=args.username,
            tunnel_ip=args.tunnel_ip,
            password=getpass.getpass("Radio SSH password: "),
        ),
        polling=PollingSettings(interval=args.interval),
        group=args.group,
    )
    result = DeviceService(store).add_device(device)
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.outcome is None or result.outcome.success else 1


def _apply_updates(device: DeviceDescriptor, args: argparse.Namespace) -> DeviceDescriptor:
    """Copy of ``device`` with every option given on the command line applied."""

    options = {"name": args.name, "family": args.family, "group": args.group, "enabled": args.enabled}
    changes = {key: value for key, value in options.items() if value is not None}
    password = getpass.getpass("New device password: ") if args.password else ""

    if device.onu is not None:
        changes["onu"] = replace(
            device.onu,
            host=args.host or device.onu.host,
            username=args.username or device.onu.username,
            password=password,
        )
    if device.radio is not None:
        changes["radio"] = replace(
            device.radio,
            inner_ip=args.inner_ip or device.radio.inner_ip,
            tunnel_ip=args.tunnel_ip or device.radio.tunnel_ip,
            tunnel_port=args.tunnel_port or device.radio.tunnel_port,
            username=args.username or device.radio.username,
            password=password,
        )
    if args.interval is not None:
        changes["polling"] = replace(device.polling, interval=args.interval)
    return replace(device, **changes)


def _run_update(args: argparse.Namespace, store: DeviceStore, settings: Settings, logger: logging.Logger) -> int:
    device = store.get_device(args.device)
    if device is None:
        raise DeviceNotFoundError(args.device)

    result = DeviceService(store).update_device(_apply_updates(device, args))
    print(json.dumps(result.to_dict(), indent=2))
    return 0


def _run_delete(args: argparse.Namespace, store: DeviceStore, settings: Settings, logger: logging.Logger) -> int:
    result = DeviceService(store).delete_device(args.device)
    print(json.dumps(result.to_dict(), indent=2))
    return 0


def _run_provision(args: argparse.Namespace, store: DeviceStore, settings: Settings, logger: logging.Logger) -> int:
    outcome = DeviceService(store).provision(args.device)
    print(json.dumps(outcome.to_dict(), indent=2))
    return 0 if outcome.success else 1


def _run_set_gateway(args: argparse.Namespace, store: DeviceStore, settings: Settings, logger: logging.Logger) -> int:
    gateway = GatewayConfig(
        control_ip=args.control_ip,
        username=args.username,
        password=getpass.getpass("Gateway password: "),
        device_interface=args.device_interface,
        wireguard_interface=args.wireguard_interface,
        port=args.port,
        base_port=args.base_port,
    )
    store.save_gateway(gateway)

    ok, message = RouterOSChannel().test_connection(gateway)
    if not ok:
        logger.warning("Gateway saved, but the check failed: %s", message)
    return 0


def _run_test_gateway(args: argparse.Namespace, store: DeviceStore, settings: Settings, logger: logging.Logger) -> int:
    gateway = store.get_gateway()
    if gateway is None:
        logger.error("Control router configuration not found. Use set-gateway first.")
        return 1

    ok, message = RouterOSChannel().test_connection(gateway)
    if ok:
        logger.info("Gateway reachable: %s", message)
        return 0
    logger.error("Gateway check failed: %s", message)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
