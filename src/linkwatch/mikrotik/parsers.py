"""Parsers for RouterOS command output.

All functions are pure and return ``None`` (or an empty collection) when the
expected field is not present.
"""

from __future__ import annotations

import re

RSSI_PATTERN = re.compile(r"rssi:\s*(-?\d+)")
RATE_PATTERN = re.compile(r"rate:\s*(\d+(?:\.\d+)?)\s*(Mbps|Gbps)", re.IGNORECASE)
ADDRESS_PATTERN = re.compile(r"(?<![\d.])(\d{1,3}(?:\.\d{1,3}){3})/\d{1,2}\b")
RULE_START_PATTERN = re.compile(r"^\s*(\d+)\s")
KEY_VALUE_PATTERN = re.compile(r'([a-z][a-z0-9-]*)=("[^"]*"|\S+)')
COMMENT_PATTERN = re.compile(r";;;\s*(.*)$")


def parse_rssi(output: str) -> int | None:
    """Return the ``rssi:`` value of a w60g monitor printout."""

    match = RSSI_PATTERN.search(output)
    if match is None:
        return None
    return int(match.group(1))


def parse_link_speed(output: str) -> int | None:
    """Return the ethernet ``rate:`` in whole megabits per second."""

    match = RATE_PATTERN.search(output)
    if match is None:
        return None
    value = float(match.group(1))
    if match.group(2).lower() == "gbps":
        value *= 1000
    return int(round(value))


def format_link_speed(speed_mbps: int | None) -> str:
    if speed_mbps is None:
        return "--"
    if speed_mbps >= 1000:
        gigabits = speed_mbps / 1000
        return f"{gigabits:g}Gbps"
    return f"{speed_mbps}Mbps"


def parse_address_listing(output: str) -> set[str]:
    """Return bare addresses from ``/ip address print`` output."""

    return set(ADDRESS_PATTERN.findall(output))


def parse_nat_rules(output: str) -> list[dict[str, str]]:
    """Split ``/ip firewall nat print`` output into one mapping per rule.

    A rule starts at a line beginning with its index and may continue on the
    following indented lines. The ``;;;`` comment is stored under ``comment``.
    """

    rules: list[dict[str, str]] = []
    current: dict[str, str] | None = None
    for line in output.splitlines():
        if line.lstrip().startswith("Flags:"):
            continue
        if RULE_START_PATTERN.match(line):
            current = {}
            rules.append(current)
        if current is None:
            continue

        comment = COMMENT_PATTERN.search(line)
        if comment is not None:
            current["comment"] = comment.group(1).strip()
            continue

        for key, value in KEY_VALUE_PATTERN.findall(line):
            current[key] = value.strip('"')
    return rules


def nat_rule_present(output: str, target_address: str, port: int | None = None) -> bool:
    """Return whether a listed NAT rule forwards to ``target_address``.

    When ``port`` is given the rule's ``dst-port`` must match as well.
    """

    for rule in parse_nat_rules(output):
        if rule.get("to-addresses") != target_address:
            continue
        if port is not None and rule.get("dst-port") not in (None, str(port)):
            continue
        return True
    return False


def subnet_prefix(ip: str | None) -> str | None:
    """First three octets of an IPv4 address, or ``None`` when malformed."""

    if not ip:
        return None
    parts = ip.strip().split(".")
    if len(parts) != 4 or not all(part.isdigit() for part in parts):
        return None
    return ".".join(parts[:3])
