"""IP restriction helpers."""

import ipaddress
from typing import Optional


def validate_ip_restrictions(entries: list[str]) -> list[str]:
    """Raise ValueError unless every entry is an address or CIDR network."""
    for entry in entries:
        ipaddress.ip_network(entry.strip(), strict=False)
    return [entry.strip() for entry in entries]


def ip_allowed(restrictions: list[str], ip_address: Optional[str]) -> bool:
    """An empty restriction list allows everyone; otherwise the IP must match."""
    if not restrictions:
        return True
    if not ip_address:
        return False
    try:
        address = ipaddress.ip_address(ip_address)
    except ValueError:
        return False
    for entry in restrictions:
        network = ipaddress.ip_network(entry, strict=False)
        if address.version == network.version and address in network:
            return True
    return False
