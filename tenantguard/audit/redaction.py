"""PII minimisation for audit payloads."""

from __future__ import annotations

import ipaddress
from typing import Any

REDACTED = "[REDACTED]"

# Matched case-insensitively as substrings of the key
SENSITIVE_KEYS = (
    "email",
    "notes",
    "encryptedcontent",
    "encryptedmetadata",
    "password",
    "phone",
    "address",
    "ssn",
    "creditcard",
)


def _normalise_key(key: str) -> str:
    return key.lower().replace("_", "").replace("-", "")


def is_sensitive_key(key: str) -> bool:
    normalised = _normalise_key(key)
    if normalised == "ipaddress":
        return False
    return any(marker in normalised for marker in SENSITIVE_KEYS)


def redact_sensitive_fields(values: dict[str, Any] | None) -> dict[str, Any] | None:
    """Replace values of PII-bearing keys with a placeholder.

    Nested dictionaries are redacted recursively. Returns a copy.

    Example:
        redact_sensitive_fields({"guest_email": "a@b.c", "status": "active"})
        # {"guest_email": "[REDACTED]", "status": "active"}
    """
    if values is None:
        return None

    redacted: dict[str, Any] = {}
    for key, value in values.items():
        if is_sensitive_key(str(key)):
            redacted[key] = REDACTED
        elif isinstance(value, dict):
            redacted[key] = redact_sensitive_fields(value)
        else:
            redacted[key] = value
    return redacted


def anonymize_ip_address(ip: str | None) -> str | None:
    """Truncate an IP address.

    IPv4 zeroes the last octet (192.168.1.100 -> 192.168.1.0); IPv6 keeps
    the first four groups. Unparseable input is returned as ``unknown``.
    """
    if not ip:
        return ip

    try:
        address = ipaddress.ip_address(ip.strip())
    except ValueError:
        return "unknown"

    if address.version == 4:
        network = ipaddress.ip_network(f"{address}/24", strict=False)
    else:
        network = ipaddress.ip_network(f"{address}/64", strict=False)
    return str(network.network_address)
