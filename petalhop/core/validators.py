# petalhop/core/validators.py
"""Field validators for values that end up in rulesets or driver commands"""

import re
from typing import Any

from .exceptions import ValidationError

_IPV4_RE = re.compile(r"[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}")
# 32-byte Curve25519 key, base64 encoded
_WG_KEY_RE = re.compile(r"[A-Za-z0-9+/]{42}[AEIMQUYcgkosw048]=")

PROTOCOLS = ("tcp", "udp")


def is_valid_ipv4(value: Any) -> bool:
    """Four dot-separated decimal octets, each 0-255"""
    if not isinstance(value, str) or not _IPV4_RE.fullmatch(value):
        return False
    return all(0 <= int(octet) <= 255 for octet in value.split("."))


def is_valid_port(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, int):
        return False
    return 1 <= value <= 65535


def is_valid_protocol(value: Any) -> bool:
    return isinstance(value, str) and value in PROTOCOLS


def is_valid_public_key(value: Any) -> bool:
    return isinstance(value, str) and bool(_WG_KEY_RE.fullmatch(value))


def require_public_key(value: Any) -> str:
    if not is_valid_public_key(value):
        raise ValidationError("public key must be a base64 WireGuard key")
    return value


def require_forward_fields(protocol: Any, public_port: Any, private_port: Any) -> None:
    if not is_valid_protocol(protocol):
        raise ValidationError("protocol must be tcp or udp")
    if not is_valid_port(public_port):
        raise ValidationError("public port must be an integer in 1-65535")
    if not is_valid_port(private_port):
        raise ValidationError("private port must be an integer in 1-65535")
