# petalhop/api/v1/stats.py
"""
Stats API

- WebSocket stream of live per-peer stats (one message per monitor tick)
- Usage history from the hourly/monthly ledger
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status

from ...core.stats_bus import StatsBus
from ...database.store import ConfigStore
from ...schemas import HourlyBucket, MonthlyBucket, UsageHistory
from ..deps import get_store, verify_admin_token

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Stats"])


@router.get(
    "/stats/history",
    response_model=UsageHistory,
    dependencies=[Depends(verify_admin_token)],
)
def usage_history(
    peer_id: int = Query(..., alias="peerId"),
    store: ConfigStore = Depends(get_store),
):
    """Last 24 hourly and 12 monthly buckets, oldest first"""
    if not store.get_peer(peer_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": f"Peer with id {peer_id} not found", "error_code": "NOT_FOUND"},
        )

    history = store.usage_history(peer_id)
    return UsageHistory(
        peer_id=peer_id,
        hourly=[HourlyBucket.model_validate(b) for b in history["hourly"]],
        monthly=[MonthlyBucket.model_validate(b) for b in history["monthly"]],
    )


@router.websocket("/ws/stats")
async def stats_stream(websocket: WebSocket, token: str = Query(...)):
    """Push {peer_id: {rx, tx, last_handshake, online}} every tick"""
    if token != websocket.app.state.settings.ADMIN_SECRET:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    bus: StatsBus = websocket.app.state.stats_bus
    await websocket.accept()
    subscription = bus.subscribe()

    async def pump():
        while True:
            snapshot = await subscription.get()
            await websocket.send_json({
                "type": "stats",
                "peers": {str(peer_id): stats for peer_id, stats in snapshot.items()},
            })

    sender = None
    try:
        await websocket.send_json({"type": "connected"})
        sender = asyncio.create_task(pump())

        # Client messages are ignored; this only waits for the disconnect
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug(f"Stats subscriber {subscription.subscription_id} disconnected")
    finally:
        if sender:
            sender.cancel()
            # Retrieve the pump's outcome; a failed send ends it early
            outcome, = await asyncio.gather(sender, return_exceptions=True)
            if isinstance(outcome, Exception):
                logger.debug(f"Stats subscriber {subscription.subscription_id} send failed: {outcome}")
        bus.unsubscribe(subscription)
