"""
WireGuard Manager for the Hub

Wraps the `wg` command line tool behind the TunnelDriver contract so the
peer monitor and connect protocol can run against a fake in tests.
"""

import abc
import asyncio
import logging
from dataclasses import dataclass
from typing import List

from ..core.exceptions import TransientDriverError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PeerSample:
    """Raw cumulative counters for one peer at one poll instant"""
    public_key: str
    last_handshake: int  # epoch seconds, 0 if never
    rx_bytes: int
    tx_bytes: int


class TunnelDriver(abc.ABC):
    """Contract for the running tunnel interface"""

    @abc.abstractmethod
    async def query_peers(self) -> List[PeerSample]:
        """Live per-peer stats; raises TransientDriverError if the interface is unavailable"""

    @abc.abstractmethod
    async def add_peer(self, public_key: str, allowed_ips: str) -> None:
        """Add (or re-add) a peer; raises TransientDriverError on failure"""

    @abc.abstractmethod
    async def get_interface_info(self) -> dict:
        """Interface public key, listen port and peer count"""


class WireGuardManager(TunnelDriver):
    """
    Manages the hub's WireGuard interface through the wg tool
    """

    def __init__(self, interface: str = "wg0", timeout: float = 5.0):
        """
        Initialize WireGuard manager

        Args:
            interface: WireGuard interface name
            timeout: Seconds before a wg invocation is treated as failed
        """
        self.interface = interface
        self.timeout = timeout

    async def query_peers(self) -> List[PeerSample]:
        stdout = await self._run_wg("show", self.interface, "dump")
        return self.parse_dump(stdout)

    async def add_peer(self, public_key: str, allowed_ips: str) -> None:
        # Arguments go straight to exec, never through a shell
        await self._run_wg("set", self.interface, "peer", public_key, "allowed-ips", allowed_ips)
        logger.info(f"Added peer to {self.interface}: {public_key[:16]}... ({allowed_ips})")

    async def get_interface_info(self) -> dict:
        stdout = await self._run_wg("show", self.interface, "dump")
        lines = stdout.strip().split("\n")
        parts = lines[0].split("\t") if lines and lines[0] else []

        return {
            "public_key": parts[1] if len(parts) > 1 else None,
            "listen_port": int(parts[2]) if len(parts) > 2 and parts[2].isdigit() else None,
            "peer_count": len([l for l in lines[1:] if l.strip()]),
        }

    @staticmethod
    def parse_dump(output: str) -> List[PeerSample]:
        """
        Parse `wg show <iface> dump`.

        First line is the interface itself; peer lines are
        public-key, preshared-key, endpoint, allowed-ips, latest-handshake,
        transfer-rx, transfer-tx, persistent-keepalive.
        """
        samples = []
        lines = output.strip().split("\n")

        for line in lines[1:]:
            parts = line.split("\t")
            if len(parts) < 8:
                continue
            try:
                samples.append(PeerSample(
                    public_key=parts[0],
                    last_handshake=int(parts[4]),
                    rx_bytes=int(parts[5]),
                    tx_bytes=int(parts[6]),
                ))
            except ValueError:
                logger.warning(f"Skipping unparsable dump line for {parts[0][:16]}...")

        return samples

    async def _run_wg(self, *args: str) -> str:
        """Run wg and return stdout; any failure is transient"""
        try:
            result = await asyncio.create_subprocess_exec(
                "wg", *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await asyncio.wait_for(result.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            result.kill()
            await result.wait()
            raise TransientDriverError(f"wg {args[0]} timed out")
        except OSError as e:
            raise TransientDriverError(f"wg unavailable: {e}") from e

        if result.returncode != 0:
            raise TransientDriverError(f"wg {args[0]} failed: {stderr.decode().strip()}")

        return stdout.decode()
