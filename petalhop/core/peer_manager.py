# petalhop/core/peer_manager.py
"""Admin-side CRUD for peers, forwards and settings"""

import logging
import secrets
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import Settings
from ..database.models import AppSetting, Forward, Peer, PeerKind, PeerStatus
from . import ipam
from .exceptions import ValidationError
from .validators import require_forward_fields

logger = logging.getLogger(__name__)


class DuplicateError(ValidationError):
    """Unique constraint hit (address, or protocol + public port)"""

    error_code = "DUPLICATE"
    http_status = 409


class NotFoundError(ValidationError):
    error_code = "NOT_FOUND"
    http_status = 404


def generate_setup_token() -> str:
    return secrets.token_urlsafe(32)


# === Peers ===

def list_peers(db: Session) -> List[Peer]:
    return db.query(Peer).order_by(Peer.id).all()


def create_peer(
    db: Session,
    settings: Settings,
    name: str,
    kind: str = PeerKind.AGENT,
    wg_ip: Optional[str] = None,
) -> Peer:
    """Create a pending peer with a fresh one-time setup token"""
    if not name or not name.strip():
        raise ValidationError("name is required")
    if kind not in (PeerKind.AGENT, PeerKind.DEVICE):
        raise ValidationError("kind must be agent or device")

    if wg_ip:
        wg_ip = ipam.check_peer_address(wg_ip, settings.MESH_NETWORK, settings.HUB_ADDRESS)
    else:
        used = [ip for (ip,) in db.query(Peer.wg_ip).all()]
        wg_ip = ipam.allocate_ip(used, settings.MESH_NETWORK, settings.HUB_ADDRESS)

    peer = Peer(
        name=name.strip(),
        wg_ip=wg_ip,
        kind=kind,
        status=PeerStatus.PENDING,
        setup_token=generate_setup_token(),
    )
    db.add(peer)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise DuplicateError(f"Peer with address {wg_ip} already exists")

    db.refresh(peer)
    logger.info(f"Created peer {peer.name} ({peer.id}) at {peer.wg_ip}")
    return peer


def delete_peer(db: Session, peer_id: int) -> bool:
    peer = db.get(Peer, peer_id)
    if not peer:
        return False

    db.delete(peer)
    db.commit()
    logger.info(f"Deleted peer {peer_id}")
    return True


# === Forwards ===

def list_forwards(db: Session) -> List[tuple]:
    """(Forward, Peer) pairs"""
    return (
        db.query(Forward, Peer)
        .join(Peer, Forward.peer_id == Peer.id)
        .order_by(Forward.id)
        .all()
    )


def create_forward(
    db: Session,
    peer_id: int,
    protocol: str,
    public_port: int,
    private_port: int,
) -> Forward:
    require_forward_fields(protocol, public_port, private_port)

    if not db.get(Peer, peer_id):
        raise NotFoundError(f"Peer {peer_id} not found")

    forward = Forward(
        peer_id=peer_id,
        protocol=protocol,
        public_port=public_port,
        private_port=private_port,
    )
    db.add(forward)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise DuplicateError(f"A forward for {protocol}/{public_port} already exists")

    db.refresh(forward)
    logger.info(f"Created forward {protocol}/{public_port} -> peer {peer_id}:{private_port}")
    return forward


def delete_forward(db: Session, forward_id: int) -> bool:
    forward = db.get(Forward, forward_id)
    if not forward:
        return False

    db.delete(forward)
    db.commit()
    return True


# === Settings ===

def get_settings(db: Session) -> dict:
    return {s.key: s.value for s in db.query(AppSetting).all()}


def set_setting(db: Session, key: str, value: str) -> AppSetting:
    setting = db.get(AppSetting, key)
    if setting:
        setting.value = value
    else:
        setting = AppSetting(key=key, value=value)
        db.add(setting)
    db.commit()
    return setting
