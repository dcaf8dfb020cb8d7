"""
WireGuard Module

Tunnel driver used by the hub:
- Live peer stats (wg show dump)
- Add peers to the running interface
"""

from .manager import PeerSample, TunnelDriver, WireGuardManager

__all__ = ["PeerSample", "TunnelDriver", "WireGuardManager"]
