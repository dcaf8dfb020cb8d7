# petalhop/api/v1/admin.py
"""
Admin API Endpoints
Manage peers, port forwards, hub settings and the firewall ruleset
"""

import asyncio
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from ...core import peer_manager, policy_engine
from ...core.exceptions import HubError, RuleApplyError, TransientDriverError
from ...database.store import ConfigStore
from ...schemas import (
    ApplyResponse,
    ForwardCreate,
    ForwardResponse,
    InterfaceStatusResponse,
    PeerCreate,
    PeerResponse,
    RulesPreview,
    SettingUpdate,
)
from ..deps import get_db, get_store, http_error, verify_admin_token

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(verify_admin_token)], tags=["Admin"])


# === Peers ===

@router.get("/peers", response_model=List[PeerResponse])
def list_peers(db: Session = Depends(get_db)):
    return peer_manager.list_peers(db)


@router.post("/peers", response_model=PeerResponse, status_code=status.HTTP_201_CREATED)
def create_peer(body: PeerCreate, request: Request, db: Session = Depends(get_db)):
    """Create a pending peer; the returned setup token is handed to the agent"""
    try:
        return peer_manager.create_peer(
            db,
            request.app.state.settings,
            name=body.name,
            kind=body.kind,
            wg_ip=body.wg_ip,
        )
    except HubError as e:
        raise http_error(e)


@router.delete("/peers/{peer_id}")
def delete_peer(peer_id: int, db: Session = Depends(get_db)):
    if not peer_manager.delete_peer(db, peer_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": f"Peer with id {peer_id} not found", "error_code": "NOT_FOUND"},
        )
    return {"ok": True}


# === Forwards ===

@router.get("/forwards", response_model=List[ForwardResponse])
def list_forwards(db: Session = Depends(get_db)):
    return [
        ForwardResponse(
            id=f.id,
            peer_id=f.peer_id,
            protocol=f.protocol,
            public_port=f.public_port,
            private_port=f.private_port,
            peer_name=p.name,
            wg_ip=p.wg_ip,
        )
        for f, p in peer_manager.list_forwards(db)
    ]


@router.post("/forwards", response_model=ForwardResponse, status_code=status.HTTP_201_CREATED)
def create_forward(body: ForwardCreate, db: Session = Depends(get_db)):
    try:
        forward = peer_manager.create_forward(
            db,
            peer_id=body.peer_id,
            protocol=body.protocol,
            public_port=body.public_port,
            private_port=body.private_port,
        )
    except HubError as e:
        raise http_error(e)

    return ForwardResponse(
        id=forward.id,
        peer_id=forward.peer_id,
        protocol=forward.protocol,
        public_port=forward.public_port,
        private_port=forward.private_port,
    )


@router.delete("/forwards/{forward_id}")
def delete_forward(forward_id: int, db: Session = Depends(get_db)):
    if not peer_manager.delete_forward(db, forward_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": f"Forward with id {forward_id} not found", "error_code": "NOT_FOUND"},
        )
    return {"ok": True}


# === Settings ===

@router.get("/settings")
def get_settings(db: Session = Depends(get_db)):
    return peer_manager.get_settings(db)


@router.put("/settings")
def update_setting(body: SettingUpdate, db: Session = Depends(get_db)):
    setting = peer_manager.set_setting(db, body.key, body.value)
    logger.info(f"Setting updated: {setting.key}")
    return {setting.key: setting.value}


@router.get("/settings/wg-status", response_model=InterfaceStatusResponse)
async def wg_status(request: Request):
    """Check whether the WireGuard interface is up"""
    interface = request.app.state.settings.WG_INTERFACE
    try:
        info = await request.app.state.driver.get_interface_info()
    except TransientDriverError as e:
        logger.debug(f"Interface status check failed: {e}")
        return InterfaceStatusResponse(status="down", interface=interface)

    return InterfaceStatusResponse(
        status="up",
        interface=interface,
        peer_count=info.get("peer_count", 0),
        public_key=info.get("public_key"),
    )


@router.post("/settings/detect-key")
async def detect_key(request: Request):
    """Read the hub public key from the running interface"""
    try:
        info = await request.app.state.driver.get_interface_info()
    except TransientDriverError as e:
        logger.error(f"Auto-detect key failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "Could not detect public key, is WireGuard running?", "error_code": e.error_code},
        )

    if not info.get("public_key"):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "Public key not found", "error_code": "NOT_FOUND"},
        )
    return {"public_key": info["public_key"]}


# === Ruleset ===

def _render_rules(request: Request, store: ConfigStore) -> str:
    settings = request.app.state.settings
    return policy_engine.generate_ruleset(
        store.list_forward_rows(),
        mesh_network=settings.MESH_NETWORK,
        interface=settings.WG_INTERFACE,
    )


@router.get("/apply", response_model=RulesPreview)
def preview_rules(request: Request, store: ConfigStore = Depends(get_store)):
    """Preview rules without applying"""
    return RulesPreview(rules=_render_rules(request, store))


@router.post("/apply", response_model=ApplyResponse)
async def apply_rules(request: Request, store: ConfigStore = Depends(get_store)):
    """Generate and apply nftables rules"""
    ruleset = await asyncio.to_thread(_render_rules, request, store)
    try:
        await request.app.state.rule_applier.apply(ruleset)
    except RuleApplyError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": str(e), "error_code": e.error_code},
        )

    return ApplyResponse(applied=True, message="Rules applied successfully")
