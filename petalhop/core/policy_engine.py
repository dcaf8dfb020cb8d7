# petalhop/core/policy_engine.py
"""
Policy Engine - nftables ruleset synthesis

Turns forward rows (untrusted store data) into a default-deny ruleset:
- One DNAT rule per forward: (proto, public port) -> (peer ip, private port)
- One FORWARD accept per forward for the translated destination
- Established/related traffic accepted
- Everything else headed into the mesh subnet dropped
- Masquerade for traffic leaving toward the mesh

Every field is validated before it is rendered; a bad row is logged and
omitted, never fatal for the rest of the ruleset.
"""

import ipaddress
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from ..database.store import ForwardRow
from .exceptions import PolicyRowInvalid
from .validators import is_valid_ipv4, is_valid_port, is_valid_protocol

logger = logging.getLogger(__name__)

TABLE_NAME = "petalhop"


@dataclass(frozen=True)
class ForwardRule:
    """A forward row that passed validation"""
    forward_id: int
    protocol: str
    public_port: int
    address: str
    private_port: int


def validate_row(row: ForwardRow) -> ForwardRule:
    """Check every field that will be rendered; raises PolicyRowInvalid"""
    if not is_valid_ipv4(row.wg_ip):
        raise PolicyRowInvalid(row.id, f"invalid peer address {row.wg_ip!r}")
    if not is_valid_protocol(row.protocol):
        raise PolicyRowInvalid(row.id, f"invalid protocol {row.protocol!r}")
    if not is_valid_port(row.public_port):
        raise PolicyRowInvalid(row.id, f"invalid public port {row.public_port!r}")
    if not is_valid_port(row.private_port):
        raise PolicyRowInvalid(row.id, f"invalid private port {row.private_port!r}")

    return ForwardRule(
        forward_id=row.id,
        protocol=row.protocol,
        public_port=row.public_port,
        address=row.wg_ip,
        private_port=row.private_port,
    )


def collect_rules(rows: Iterable[ForwardRow]) -> List[ForwardRule]:
    """Valid rules in a stable order; invalid rows are logged and dropped"""
    rules = []
    for row in rows:
        try:
            rules.append(validate_row(row))
        except PolicyRowInvalid as e:
            logger.warning(f"Skipping forward row: {e}")

    rules.sort(key=lambda r: (r.protocol, r.public_port, r.forward_id))
    return rules


def generate_ruleset(
    rows: Iterable[ForwardRow],
    mesh_network: str,
    interface: str,
    generated_at: Optional[datetime] = None,
) -> str:
    """
    Render the nftables ruleset for the given forward rows.

    Output depends only on the inputs apart from the timestamp comment.
    mesh_network and interface come from validated configuration.
    """
    network = ipaddress.IPv4Network(mesh_network)
    generated_at = generated_at or datetime.now(timezone.utc)
    rules = collect_rules(rows)

    dnat_lines = [
        f"    {r.protocol} dport {r.public_port} dnat to {r.address}:{r.private_port}"
        for r in rules
    ]
    accept_lines = [
        f"    ip daddr {r.address} {r.protocol} dport {r.private_port} accept"
        for r in rules
    ]

    lines = [
        "#!/usr/sbin/nft -f",
        "# PetalHop Hub - Auto-generated rules",
        f"# Generated at: {generated_at.isoformat()}",
        "# DO NOT EDIT MANUALLY",
        "",
        # Declare then delete so reloading only replaces our own table
        f"table ip {TABLE_NAME}",
        f"delete table ip {TABLE_NAME}",
        "",
        f"table ip {TABLE_NAME} {{",
        "  chain prerouting {",
        "    type nat hook prerouting priority dstnat; policy accept;",
        *dnat_lines,
        "  }",
        "",
        "  chain postrouting {",
        "    type nat hook postrouting priority srcnat; policy accept;",
        f'    ip daddr {network} oifname "{interface}" masquerade',
        "  }",
        "",
        "  chain forward {",
        "    type filter hook forward priority filter; policy drop;",
        "    ct state established,related accept",
        *accept_lines,
        f"    ip daddr {network} drop",
        "  }",
        "}",
        "",
    ]

    logger.debug(f"Generated ruleset with {len(rules)} forwards")
    return "\n".join(lines)
