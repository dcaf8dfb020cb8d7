#!/usr/bin/env python3
"""
PetalHop Hub

FastAPI app wiring the control plane together:
1. Agent connect endpoint (registration handshake)
2. Admin API for peers, forwards, settings and ruleset apply
3. Peer monitor running for the lifetime of the app, streaming stats
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from sqlalchemy.engine import Engine

from .api.v1 import admin, agent, stats
from .config import Settings, settings as default_settings
from .core.connect import ConnectService
from .core.monitor import PeerMonitor
from .core.stats_bus import StatsBus
from .database.session import build_engine, build_session_factory, init_db
from .database.store import ConfigStore
from .firewall.nftables import NftablesApplier, RuleApplier
from .notify.webhook import MatrixWebhookNotifier, NotificationSink
from .wireguard.manager import TunnelDriver, WireGuardManager

logger = logging.getLogger("petalhop")


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)],
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    state = app.state

    # Store unavailable at startup is fatal
    init_db(state.engine)
    state.monitor.load_cache()

    state.monitor.start()
    logger.info("PetalHop hub started")
    try:
        yield
    finally:
        await state.monitor.stop()
        logger.info("PetalHop hub stopped")


def create_app(
    app_settings: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    driver: Optional[TunnelDriver] = None,
    notifier: Optional[NotificationSink] = None,
    rule_applier: Optional[RuleApplier] = None,
) -> FastAPI:
    """Build the app; collaborators can be injected for tests"""
    app_settings = app_settings or default_settings

    engine = engine or build_engine(app_settings.DATABASE_URL)
    session_factory = build_session_factory(engine)

    driver = driver or WireGuardManager(app_settings.WG_INTERFACE)
    notifier = notifier or MatrixWebhookNotifier(timeout=app_settings.WEBHOOK_TIMEOUT)
    rule_applier = rule_applier or NftablesApplier(
        nft_binary=app_settings.NFT_BINARY,
        rules_dir=app_settings.RULES_DIR,
    )

    store = ConfigStore(session_factory)
    stats_bus = StatsBus(max_queue_size=app_settings.SUBSCRIBER_QUEUE_SIZE)

    app = FastAPI(title="PetalHop Hub", lifespan=lifespan)

    app.state.settings = app_settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.store = store
    app.state.driver = driver
    app.state.rule_applier = rule_applier
    app.state.stats_bus = stats_bus
    app.state.connect_service = ConnectService(store, driver, app_settings)
    app.state.monitor = PeerMonitor(
        store,
        driver,
        notifier,
        stats_bus,
        tick_interval=app_settings.MONITOR_TICK_INTERVAL,
        refresh_interval=app_settings.CONFIG_REFRESH_INTERVAL,
        flush_interval=app_settings.USAGE_FLUSH_INTERVAL,
        offline_threshold=app_settings.OFFLINE_THRESHOLD,
    )

    app.include_router(agent.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1/admin")
    app.include_router(stats.router, prefix="/api/v1")

    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": "petalhop-hub"}

    return app


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="PetalHop Hub")
    parser.add_argument("--host", default="0.0.0.0", help="Bind address")
    parser.add_argument("--port", type=int, default=8001, help="Bind port")
    parser.add_argument(
        "--log-level",
        default=default_settings.LOG_LEVEL,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level",
    )
    args = parser.parse_args()

    configure_logging(args.log_level)

    try:
        uvicorn.run(create_app(), host=args.host, port=args.port, log_level=args.log_level.lower())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")


if __name__ == "__main__":
    main()
