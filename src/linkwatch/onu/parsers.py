"""Parsers for the optical terminal web UI.

The telemetry page embeds the optical module readings in a JavaScript array
literal::

    var opticInfos = new Array(new stOpticInfo("domain","2.21","-23.87","3280","45",...),null);

The "blue" UI generation escapes every character as ``\\xNN``; the "red"
generation prints the decimals directly. Both decode to the same reading.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

Encoding = Literal["hex", "plain"]

TOKEN_PATTERN = re.compile(r"function GetRandCnt\(\)\s*{\s*return\s*'([^']+)'", re.IGNORECASE)
OPTIC_INFO_PATTERN = re.compile(
    r"var\s+opticInfos\s*=\s*new\s+Array\(new\s+stOpticInfo\(([^)]+)\)", re.IGNORECASE
)
QUOTED_VALUE_PATTERN = re.compile(r'"([^"]*)"')
HEX_ESCAPE_PATTERN = re.compile(r"\\x([0-9A-Fa-f]{2})")
PON_MODE_PATTERN = re.compile(r"var\s+ontPonMode\s*=\s*'([^']+)'", re.IGNORECASE)
NUMBER_PATTERN = re.compile(r"-?\d+(?:\.\d+)?")

HEX_MARKER = "\\x"
EXPIRED_MARKER = "Waiting..."
MIN_PAGE_LENGTH = 100

GPON_RX_RANGE = "-27 to -8 dBm"
EPON_RX_RANGE = "-24 to -7 dBm"
TEMPERATURE_RANGE = "-10 to +85 ℃"


@dataclass(slots=True)
class OpticalReading:
    """Decoded optical module values, still as the device printed them."""

    tx_power: str
    rx_power: str
    voltage: str
    temperature: str
    encoding: Encoding


def extract_token(html: str) -> str | None:
    """Return the anti-CSRF token embedded in the login page."""

    match = TOKEN_PATTERN.search(html)
    return match.group(1) if match else None


def decode_hex_escapes(value: str) -> str:
    """Replace ``\\xNN`` escapes with the characters they encode."""

    return HEX_ESCAPE_PATTERN.sub(lambda match: chr(int(match.group(1), 16)), value)


def detect_encoding(value: str) -> Encoding:
    return "hex" if HEX_MARKER in value else "plain"


def parse_optical_info(html: str) -> OpticalReading | None:
    """Extract TX/RX power, voltage and temperature from the telemetry page.

    The encoding is detected on the RX value and applied to all four fields.
    """

    match = OPTIC_INFO_PATTERN.search(html)
    if match is None:
        return None

    values = QUOTED_VALUE_PATTERN.findall(match.group(1))
    if len(values) < 5:
        return None

    tx_raw, rx_raw, voltage_raw, temperature_raw = values[1:5]
    encoding = detect_encoding(rx_raw)

    def decode(raw: str) -> str:
        return (decode_hex_escapes(raw) if encoding == "hex" else raw).strip()

    return OpticalReading(
        tx_power=decode(tx_raw),
        rx_power=decode(rx_raw),
        voltage=decode(voltage_raw),
        temperature=decode(temperature_raw),
        encoding=encoding,
    )


def reference_range(html: str) -> str:
    """Expected RX power window for the terminal's PON mode."""

    match = PON_MODE_PATTERN.search(html)
    pon_mode = match.group(1).lower() if match else "gpon"
    if "epon" in pon_mode:
        return EPON_RX_RANGE
    return GPON_RX_RANGE


def session_expired(body: str) -> bool:
    """Whether the page is the login redirect instead of real content."""

    return EXPIRED_MARKER in body or len(body) < MIN_PAGE_LENGTH


def parse_measurement(value: str | None) -> float | None:
    """Return the first decimal number in ``value``; ``--`` yields ``None``."""

    if not value:
        return None
    match = NUMBER_PATTERN.search(value)
    return float(match.group(0)) if match else None
