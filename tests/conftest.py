# tests/conftest.py
"""
Pytest fixtures for hub tests
Shared in-memory store and fake collaborators
"""

import base64
import os

import pytest
from sqlalchemy.pool import StaticPool

from petalhop.config import Settings
from petalhop.core.exceptions import RuleApplyError, TransientDriverError
from petalhop.database.models import AppSetting, Forward, Peer, PeerStatus
from petalhop.database.session import build_engine, build_session_factory, init_db
from petalhop.database.store import ConfigStore
from petalhop.firewall.nftables import RuleApplier
from petalhop.notify.webhook import NotificationSink
from petalhop.wireguard.manager import PeerSample, TunnelDriver

HUB_KEY = base64.b64encode(b"\x01" * 32).decode()
ADMIN_TOKEN = "test-admin-token"


def make_key() -> str:
    """Random base64 key in WireGuard format"""
    return base64.b64encode(os.urandom(32)).decode()


# ============================================
# Fake collaborators
# ============================================

class FakeDriver(TunnelDriver):
    def __init__(self):
        self.samples = []
        self.available = True
        self.fail_add = False
        self.added = []
        self.queries = 0

    def report(self, public_key, last_handshake, rx, tx):
        self.samples.append(PeerSample(public_key, last_handshake, rx, tx))

    def set_samples(self, *samples):
        self.samples = [PeerSample(*s) for s in samples]

    async def query_peers(self):
        self.queries += 1
        if not self.available:
            raise TransientDriverError("Unable to access interface: No such device")
        return list(self.samples)

    async def add_peer(self, public_key, allowed_ips):
        if self.fail_add:
            raise TransientDriverError("wg set failed")
        self.added.append((public_key, allowed_ips))

    async def get_interface_info(self):
        if not self.available:
            raise TransientDriverError("Unable to access interface: No such device")
        return {"public_key": HUB_KEY, "listen_port": 51820, "peer_count": len(self.samples)}


class FakeNotifier(NotificationSink):
    def __init__(self):
        self.sent = []

    async def notify(self, url, peer_name, online):
        self.sent.append((url, peer_name, online))
        return True


class FakeApplier(RuleApplier):
    def __init__(self):
        self.applied = []
        self.fail = False

    async def apply(self, ruleset):
        if self.fail:
            raise RuleApplyError("nft failed: syntax error")
        self.applied.append(ruleset)


# ============================================
# Store fixtures
# ============================================

@pytest.fixture
def test_settings():
    return Settings(
        DATABASE_URL="sqlite://",
        HUB_PUBLIC_KEY=HUB_KEY,
        HUB_ENDPOINT="hub.example.com:51820",
        ADMIN_SECRET=ADMIN_TOKEN,
    )


@pytest.fixture
def engine():
    engine = build_engine("sqlite://", poolclass=StaticPool)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def store(session_factory):
    return ConfigStore(session_factory)


@pytest.fixture
def driver():
    return FakeDriver()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def add_peer(session_factory):
    """Insert a peer row directly"""
    def _add(name="agent-1", wg_ip="10.8.0.2", public_key=None,
             status=PeerStatus.PENDING, setup_token=None):
        with session_factory() as db:
            peer = Peer(
                name=name,
                wg_ip=wg_ip,
                public_key=public_key,
                status=status,
                setup_token=setup_token,
            )
            db.add(peer)
            db.commit()
            db.refresh(peer)
            return peer
    return _add


@pytest.fixture
def add_forward(session_factory):
    def _add(peer_id, protocol="tcp", public_port=8080, private_port=80):
        with session_factory() as db:
            forward = Forward(
                peer_id=peer_id,
                protocol=protocol,
                public_port=public_port,
                private_port=private_port,
            )
            db.add(forward)
            db.commit()
            db.refresh(forward)
            return forward
    return _add


@pytest.fixture
def put_setting(session_factory):
    def _put(key, value):
        with session_factory() as db:
            db.merge(AppSetting(key=key, value=value))
            db.commit()
    return _put
