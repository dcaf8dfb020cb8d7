# petalhop/core/ipam.py
import ipaddress
from typing import Iterable

from .exceptions import ValidationError


def allocate_ip(used_ips: Iterable[str], network_cidr: str, hub_address: str) -> str:
    """Next free host address in the mesh subnet"""
    network = ipaddress.IPv4Network(network_cidr)
    used = set(used_ips)

    # Bỏ qua .0 (network), hub, broadcast
    reserved = {str(network.network_address), hub_address, str(network.broadcast_address)}

    for ip in network.hosts():
        ip_str = str(ip)
        if ip_str not in used and ip_str not in reserved:
            return ip_str

    raise ValidationError(f"No free address left in {network_cidr}")


def check_peer_address(address: str, network_cidr: str, hub_address: str) -> str:
    """Validate an explicitly requested peer address"""
    try:
        ip = ipaddress.IPv4Address(address)
    except ValueError:
        raise ValidationError(f"Invalid IPv4 address: {address!r}")

    network = ipaddress.IPv4Network(network_cidr)
    if ip not in network or ip in (network.network_address, network.broadcast_address):
        raise ValidationError(f"{address} is not a host address in {network_cidr}")
    if str(ip) == hub_address:
        raise ValidationError(f"{address} is reserved for the hub")

    return str(ip)
