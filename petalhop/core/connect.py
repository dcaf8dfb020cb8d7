# petalhop/core/connect.py
"""
Agent connect/registration handshake

pending --(valid setup token + public key)--> active
active  --(same public key)--> active (idempotent reconnect)
"""

import asyncio
import hmac
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from ..config import Settings
from ..database.models import Peer, PeerStatus
from ..database.store import SETTING_SERVER_ENDPOINT, SETTING_SERVER_PUBLIC_KEY, ConfigStore
from ..wireguard.manager import TunnelDriver
from .exceptions import AuthError, ConflictError, TransientDriverError, ValidationError
from .validators import require_public_key

logger = logging.getLogger(__name__)


@dataclass
class ConnectResult:
    peer_id: int
    assigned_address: str
    hub_public_key: str
    hub_endpoint: str
    forwards: List[dict] = field(default_factory=list)
    activated: bool = False


class ConnectService:
    """
    Runs the registration handshake for agents
    """

    def __init__(self, store: ConfigStore, driver: TunnelDriver, settings: Settings):
        self.store = store
        self.driver = driver
        self.settings = settings

    async def connect(self, setup_token: Optional[str], public_key: Optional[str]) -> ConnectResult:
        """
        Activate or reconnect the peer identified by token or public key.

        Raises:
            ValidationError: malformed request
            AuthError: no peer matches (token and key lookups give the same answer)
            ConflictError: peer is active with a different key
        """
        if not public_key:
            raise ValidationError("Token and public key are required")
        require_public_key(public_key)

        peer = await asyncio.to_thread(self._find_peer, setup_token, public_key)
        if not peer:
            raise AuthError("Invalid or expired token")

        activated = False
        if peer.status == PeerStatus.ACTIVE:
            if not peer.public_key or not hmac.compare_digest(peer.public_key, public_key):
                logger.warning(f"Peer {peer.id} is already active with a different key")
                raise ConflictError("Agent already active with different key")
        else:
            owner = await asyncio.to_thread(self.store.find_peer_by_public_key, public_key)
            if owner and owner.id != peer.id:
                logger.warning(f"Public key {public_key[:16]}... is bound to peer {owner.id}")
                raise ConflictError("Public key already in use")

            if not await asyncio.to_thread(self.store.activate_peer, peer.id, public_key):
                # Another request consumed the token first
                logger.warning(f"Activation race lost for peer {peer.id}")
                raise AuthError("Invalid or expired token")

            activated = True
            logger.info(f"Peer {peer.name} ({peer.id}) activated with key {public_key[:16]}...")

        # Re-register on reconnect too, so driver state matches the store after a restart
        await self._register_with_driver(peer, public_key)

        return await asyncio.to_thread(self._build_result, peer, activated)

    def _find_peer(self, setup_token: Optional[str], public_key: str) -> Optional[Peer]:
        peer = None
        if setup_token:
            peer = self.store.find_peer_by_token(setup_token)

        # Reconnect after the token was consumed
        if not peer:
            peer = self.store.find_peer_by_public_key(public_key)

        return peer

    async def _register_with_driver(self, peer: Peer, public_key: str):
        try:
            await self.driver.add_peer(public_key, f"{peer.wg_ip}/32")
        except TransientDriverError as e:
            # State is committed; the next reconnect re-registers the key
            logger.error(f"Failed to add peer {peer.id} to interface: {e}")

    def _build_result(self, peer: Peer, activated: bool) -> ConnectResult:
        app_settings = self.store.get_settings()
        forwards = self.store.forwards_for_peer(peer.id)

        return ConnectResult(
            peer_id=peer.id,
            assigned_address=peer.wg_ip,
            hub_public_key=app_settings.get(SETTING_SERVER_PUBLIC_KEY) or self.settings.HUB_PUBLIC_KEY,
            hub_endpoint=app_settings.get(SETTING_SERVER_ENDPOINT) or self.settings.HUB_ENDPOINT,
            forwards=[
                {
                    "protocol": f.protocol,
                    "public_port": f.public_port,
                    "private_port": f.private_port,
                }
                for f in forwards
            ],
            activated=activated,
        )
