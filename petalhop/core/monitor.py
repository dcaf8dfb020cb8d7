"""
Peer Monitor for the Hub

Polls the tunnel driver once per tick and:
- Accounts rx/tx deltas per peer (surviving counter resets)
- Classifies peers online/offline by handshake age
- Notifies on online/offline transitions (never on first sight)
- Flushes accumulated usage into the hourly/monthly ledger
- Publishes a stats snapshot to live subscribers
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set

from ..database.store import SETTING_WEBHOOK_URL, ConfigStore
from ..notify.webhook import NotificationSink
from ..wireguard.manager import PeerSample, TunnelDriver
from .exceptions import PersistenceError, TransientDriverError
from .stats_bus import StatsBus

logger = logging.getLogger(__name__)

OFFLINE_THRESHOLD_SEC = 180


@dataclass(frozen=True)
class CachedPeer:
    id: int
    name: str


class PeerCache:
    """
    Public key -> peer lookup table plus the notification endpoint,
    refreshed from the store once it is older than max_age seconds
    """

    def __init__(self, store: ConfigStore, max_age: float = 60.0):
        self.store = store
        self.max_age = max_age
        self.refreshed_at: Optional[float] = None
        self.webhook_url: Optional[str] = None
        self._by_key: Dict[str, CachedPeer] = {}

    def is_stale(self, now: float) -> bool:
        return self.refreshed_at is None or now - self.refreshed_at > self.max_age

    def get(self, public_key: str) -> Optional[CachedPeer]:
        return self._by_key.get(public_key)

    def peer_ids(self) -> Set[int]:
        return {p.id for p in self._by_key.values()}

    def load(self, now: float) -> None:
        """Reload from the store; errors propagate"""
        peers = self.store.list_peers()
        app_settings = self.store.get_settings()

        self._by_key = {
            p.public_key: CachedPeer(id=p.id, name=p.name)
            for p in peers
            if p.public_key
        }
        self.webhook_url = app_settings.get(SETTING_WEBHOOK_URL) or None
        self.refreshed_at = now

    def refresh(self, now: float) -> bool:
        """Reload from the store, keeping the previous view on failure"""
        try:
            self.load(now)
            return True
        except Exception as e:
            logger.error(f"Peer cache refresh failed, keeping previous view: {e}")
            return False


class PeerMonitor:
    """
    Single-task periodic monitor. Ticks never overlap: a slow tick delays
    the next one. In-memory state is only touched from the monitor task;
    store calls run in a worker thread while the task awaits them.
    """

    def __init__(
        self,
        store: ConfigStore,
        driver: TunnelDriver,
        notifier: NotificationSink,
        stats_bus: StatsBus,
        tick_interval: float = 1.0,
        refresh_interval: float = 60.0,
        flush_interval: float = 60.0,
        offline_threshold: int = OFFLINE_THRESHOLD_SEC,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize peer monitor

        Args:
            store: ConfigStore for peers, settings and the usage ledger
            driver: TunnelDriver queried every tick
            notifier: Sink for online/offline transitions
            stats_bus: Registry of live stats subscribers
            tick_interval: Seconds between ticks
            refresh_interval: Max age of the peer cache in seconds
            flush_interval: Seconds between ledger flushes
            offline_threshold: Handshake age (seconds) after which a peer is offline
            clock: Wall clock returning epoch seconds
        """
        self.store = store
        self.driver = driver
        self.notifier = notifier
        self.stats_bus = stats_bus
        self.tick_interval = tick_interval
        self.flush_interval = flush_interval
        self.offline_threshold = offline_threshold
        self._clock = clock

        self.cache = PeerCache(store, refresh_interval)

        # Per-peer state, keyed by peer id
        self._raw: Dict[int, tuple] = {}          # last (rx, tx) reported by the driver
        self._online: Dict[int, bool] = {}        # last computed online state
        self._pending: Dict[int, List[int]] = {}  # [rx, tx] not yet flushed

        self._last_flush: Optional[float] = None
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._notify_tasks: Set[asyncio.Task] = set()

    # --- Lifecycle ---

    def start(self):
        """Start the monitor loop on the running event loop"""
        if self._task:
            return  # Already running

        self._running = True
        self._task = asyncio.create_task(self.run())

    def load_cache(self):
        """Initial cache load at startup; store errors propagate"""
        self.cache.load(self._clock())

    async def stop(self):
        """Stop the loop, flush what is pending and wait for notifications"""
        self._running = False

        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

        await asyncio.to_thread(self.flush, self._clock())
        await self.drain_notifications()

    async def run(self):
        logger.info(f"Starting peer monitor (tick {self.tick_interval}s)")

        while self._running:
            started = time.monotonic()
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Monitor tick failed: {e}")

            elapsed = time.monotonic() - started
            await asyncio.sleep(max(0.0, self.tick_interval - elapsed))

    # --- Tick ---

    async def tick(self, now: Optional[float] = None) -> Optional[dict]:
        """
        Run one poll cycle.

        Returns the published snapshot, or None when the driver was
        unavailable and the tick was skipped.
        """
        now = self._clock() if now is None else now

        if self.cache.is_stale(now) and await asyncio.to_thread(self.cache.refresh, now):
            self._forget_removed_peers()

        try:
            samples = await self.driver.query_peers()
        except TransientDriverError as e:
            # Interface down or absent
            logger.debug(f"Skipping tick: {e}")
            return None

        snapshot = {}
        for sample in samples:
            peer = self.cache.get(sample.public_key)
            if not peer:
                continue

            self._account(peer.id, sample)

            online = (now - sample.last_handshake) < self.offline_threshold
            self._check_transition(peer, online)

            snapshot[peer.id] = {
                "rx": sample.rx_bytes,
                "tx": sample.tx_bytes,
                "last_handshake": sample.last_handshake,
                "online": online,
            }

        if self._last_flush is None:
            self._last_flush = now
        elif now - self._last_flush >= self.flush_interval:
            await asyncio.to_thread(self.flush, now)
            self._last_flush = now

        self.stats_bus.publish(snapshot)
        return snapshot

    @staticmethod
    def counter_delta(previous: int, current: int) -> int:
        """Counter growth; a smaller value means the session restarted from zero"""
        if current >= previous:
            return current - previous
        return current

    def pending_usage(self, peer_id: int) -> tuple:
        rx, tx = self._pending.get(peer_id, (0, 0))
        return rx, tx

    def _account(self, peer_id: int, sample: PeerSample):
        current = (sample.rx_bytes, sample.tx_bytes)
        previous = self._raw.get(peer_id)
        self._raw[peer_id] = current

        if previous is None:
            # Unknown baseline: no delta on first sight
            return

        rx = self.counter_delta(previous[0], current[0])
        tx = self.counter_delta(previous[1], current[1])
        if rx or tx:
            pending = self._pending.setdefault(peer_id, [0, 0])
            pending[0] += rx
            pending[1] += tx

    def _check_transition(self, peer: CachedPeer, online: bool):
        previous = self._online.get(peer.id)
        self._online[peer.id] = online

        if previous is None or previous == online:
            return

        logger.info(
            f"Peer {peer.name} ({peer.id}) changed state: "
            f"{'Online' if previous else 'Offline'} -> {'Online' if online else 'Offline'}"
        )
        self._notify(peer.name, online)

    def _forget_removed_peers(self):
        known = self.cache.peer_ids()
        for state in (self._raw, self._online, self._pending):
            for peer_id in [pid for pid in state if pid not in known]:
                del state[peer_id]

    # --- Ledger ---

    def flush(self, now: float) -> int:
        """
        Merge pending usage into the current hour/month buckets.

        A peer's pending usage is cleared only once its write succeeded.
        Returns the number of peers flushed.
        """
        hour_start = datetime.fromtimestamp(now, tz=timezone.utc).replace(
            minute=0, second=0, microsecond=0, tzinfo=None
        )
        month = hour_start.strftime("%Y-%m")
        flushed = 0

        for peer_id, (rx, tx) in list(self._pending.items()):
            if not rx and not tx:
                continue

            try:
                self.store.add_usage(peer_id, hour_start, month, rx, tx)
            except PersistenceError as e:
                logger.error(f"Usage flush failed for peer {peer_id}, will retry: {e}")
                continue

            del self._pending[peer_id]
            flushed += 1

        if flushed:
            logger.debug(f"Flushed usage for {flushed} peers into {hour_start:%Y-%m-%d %H}:00")
        return flushed

    # --- Notifications ---

    def _notify(self, peer_name: str, online: bool):
        url = self.cache.webhook_url
        if not url:
            return

        # Fire and forget; the tick never waits on delivery
        task = asyncio.create_task(self.notifier.notify(url, peer_name, online))
        self._notify_tasks.add(task)
        task.add_done_callback(self._on_notify_done)

    def _on_notify_done(self, task: asyncio.Task):
        self._notify_tasks.discard(task)
        if not task.cancelled() and task.exception():
            logger.error(f"Notification failed: {task.exception()}")

    async def drain_notifications(self):
        """Wait for in-flight notifications"""
        if self._notify_tasks:
            await asyncio.gather(*list(self._notify_tasks), return_exceptions=True)
