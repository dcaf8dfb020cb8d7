# petalhop/database/models.py
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class PeerStatus:
    PENDING = "pending"
    ACTIVE = "active"


class PeerKind:
    AGENT = "agent"
    DEVICE = "device"


class Peer(Base):
    __tablename__ = "peers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    wg_ip = Column(String, unique=True, nullable=False)       # VD: 10.8.0.2
    public_key = Column(String, unique=True, nullable=True)   # Null until the agent connects
    setup_token = Column(String, unique=True, nullable=True)  # One-time, cleared on activation
    status = Column(String, nullable=False, default=PeerStatus.PENDING)
    kind = Column(String, nullable=False, default=PeerKind.AGENT)
    created_at = Column(DateTime, default=datetime.utcnow)

    forwards = relationship(
        "Forward",
        back_populates="peer",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Forward(Base):
    # public_port -> peer wg_ip:private_port
    __tablename__ = "forwards"
    __table_args__ = (UniqueConstraint("protocol", "public_port", name="uq_forward_proto_port"),)

    id = Column(Integer, primary_key=True, index=True)
    peer_id = Column(Integer, ForeignKey("peers.id", ondelete="CASCADE"), nullable=False, index=True)
    protocol = Column(String, nullable=False)  # tcp/udp
    public_port = Column(Integer, nullable=False)
    private_port = Column(Integer, nullable=False)

    peer = relationship("Peer", back_populates="forwards")


class AppSetting(Base):
    __tablename__ = "app_settings"

    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)


class UsageHourly(Base):
    __tablename__ = "peer_usage_hourly"
    __table_args__ = (UniqueConstraint("peer_id", "hour_start", name="uq_usage_hourly"),)

    id = Column(Integer, primary_key=True)
    peer_id = Column(Integer, ForeignKey("peers.id", ondelete="CASCADE"), nullable=False, index=True)
    hour_start = Column(DateTime, nullable=False)  # UTC, truncated to the hour
    rx = Column(BigInteger, nullable=False, default=0)
    tx = Column(BigInteger, nullable=False, default=0)


class UsageMonthly(Base):
    __tablename__ = "peer_usage_monthly"
    __table_args__ = (UniqueConstraint("peer_id", "month", name="uq_usage_monthly"),)

    id = Column(Integer, primary_key=True)
    peer_id = Column(Integer, ForeignKey("peers.id", ondelete="CASCADE"), nullable=False, index=True)
    month = Column(String, nullable=False)  # VD: 2026-10
    rx = Column(BigInteger, nullable=False, default=0)
    tx = Column(BigInteger, nullable=False, default=0)
