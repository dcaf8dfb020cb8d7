"""
PetalHop Hub

Control plane for a WireGuard mesh of agents:
- Peer health and bandwidth monitoring
- nftables port-forward policy synthesis
- Agent connect/registration handshake
"""

__version__ = "1.0.0"
