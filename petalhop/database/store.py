# petalhop/database/store.py
"""
ConfigStore

Store operations shared by the peer monitor, the policy synthesizer and
the connect protocol. Cross-request correctness lives here:
- Peer activation is a single conditional UPDATE (only while pending)
- Usage buckets are incremented in place, never overwritten
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..core.exceptions import PersistenceError
from .models import AppSetting, Forward, Peer, PeerStatus, UsageHourly, UsageMonthly

logger = logging.getLogger(__name__)

SETTING_SERVER_PUBLIC_KEY = "server_public_key"
SETTING_SERVER_ENDPOINT = "server_endpoint"
SETTING_WEBHOOK_URL = "matrix_webhook_url"


@dataclass(frozen=True)
class ForwardRow:
    """Forward joined with its peer's address"""
    id: int
    peer_id: int
    peer_name: str
    wg_ip: object
    protocol: object
    public_port: object
    private_port: object


class ConfigStore:
    """Thin data-access layer over a SQLAlchemy session factory"""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    # --- Reads ---

    def list_peers(self) -> List[Peer]:
        with self._session_factory() as db:
            return db.query(Peer).order_by(Peer.id).all()

    def get_peer(self, peer_id: int) -> Optional[Peer]:
        with self._session_factory() as db:
            return db.get(Peer, peer_id)

    def find_peer_by_token(self, setup_token: str) -> Optional[Peer]:
        with self._session_factory() as db:
            return db.query(Peer).filter(Peer.setup_token == setup_token).first()

    def find_peer_by_public_key(self, public_key: str) -> Optional[Peer]:
        with self._session_factory() as db:
            return db.query(Peer).filter(Peer.public_key == public_key).first()

    def get_settings(self) -> Dict[str, str]:
        with self._session_factory() as db:
            return {s.key: s.value for s in db.query(AppSetting).all()}

    def list_forward_rows(self) -> List[ForwardRow]:
        """All forwards joined with their peer (inner join)"""
        with self._session_factory() as db:
            rows = (
                db.query(Forward, Peer)
                .join(Peer, Forward.peer_id == Peer.id)
                .order_by(Forward.id)
                .all()
            )
            return [
                ForwardRow(
                    id=f.id,
                    peer_id=p.id,
                    peer_name=p.name,
                    wg_ip=p.wg_ip,
                    protocol=f.protocol,
                    public_port=f.public_port,
                    private_port=f.private_port,
                )
                for f, p in rows
            ]

    def forwards_for_peer(self, peer_id: int) -> List[Forward]:
        with self._session_factory() as db:
            return (
                db.query(Forward)
                .filter(Forward.peer_id == peer_id)
                .order_by(Forward.protocol, Forward.public_port)
                .all()
            )

    def usage_history(self, peer_id: int, hours: int = 24, months: int = 12) -> dict:
        """Most recent hourly/monthly buckets, returned oldest first"""
        with self._session_factory() as db:
            hourly = (
                db.query(UsageHourly)
                .filter(UsageHourly.peer_id == peer_id)
                .order_by(UsageHourly.hour_start.desc())
                .limit(hours)
                .all()
            )
            monthly = (
                db.query(UsageMonthly)
                .filter(UsageMonthly.peer_id == peer_id)
                .order_by(UsageMonthly.month.desc())
                .limit(months)
                .all()
            )
        return {"hourly": list(reversed(hourly)), "monthly": list(reversed(monthly))}

    # --- Writes ---

    def activate_peer(self, peer_id: int, public_key: str) -> bool:
        """
        Transition a peer pending -> active in one conditional UPDATE.

        Stores the public key and clears the setup token. Returns False when
        the row was no longer pending at update time (a racing request won).
        """
        with self._session_factory() as db:
            try:
                updated = (
                    db.query(Peer)
                    .filter(Peer.id == peer_id, Peer.status == PeerStatus.PENDING)
                    .update(
                        {
                            Peer.status: PeerStatus.ACTIVE,
                            Peer.public_key: public_key,
                            Peer.setup_token: None,
                        },
                        synchronize_session=False,
                    )
                )
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise PersistenceError(f"activation of peer {peer_id} failed: {e}") from e

        return updated == 1

    def add_usage(self, peer_id: int, hour_start: datetime, month: str, rx: int, tx: int) -> None:
        """
        Add rx/tx deltas to the peer's hourly and monthly buckets.

        Both buckets are written in the same transaction so the monthly
        total always equals the sum of the hourly buckets in that month.
        """
        with self._session_factory() as db:
            try:
                self._increment(
                    db, UsageHourly,
                    (UsageHourly.peer_id == peer_id, UsageHourly.hour_start == hour_start),
                    {"peer_id": peer_id, "hour_start": hour_start},
                    rx, tx,
                )
                self._increment(
                    db, UsageMonthly,
                    (UsageMonthly.peer_id == peer_id, UsageMonthly.month == month),
                    {"peer_id": peer_id, "month": month},
                    rx, tx,
                )
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise PersistenceError(f"usage flush for peer {peer_id} failed: {e}") from e

    @staticmethod
    def _increment(db, model, key_filter, key_values: dict, rx: int, tx: int) -> None:
        updated = (
            db.query(model)
            .filter(*key_filter)
            .update(
                {model.rx: model.rx + rx, model.tx: model.tx + tx},
                synchronize_session=False,
            )
        )
        if updated == 0:
            db.add(model(rx=rx, tx=tx, **key_values))
            db.flush()
