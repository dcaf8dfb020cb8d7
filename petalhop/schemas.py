# petalhop/schemas.py
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# --- Agent connect (camelCase on the wire) ---
class AgentWireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConnectRequest(AgentWireModel):
    # Older agents send the setup token as "token"
    setup_token: Optional[str] = Field(
        None,
        max_length=256,
        validation_alias=AliasChoices("setupToken", "token", "setup_token"),
    )
    public_key: str = Field(..., max_length=64)


class ForwardSummary(AgentWireModel):
    protocol: str
    public_port: int
    private_port: int


class ConnectResponse(AgentWireModel):
    success: bool = True
    peer_id: int
    assigned_address: str
    hub_public_key: str
    hub_endpoint: str
    forwards: List[ForwardSummary]


# --- Peers ---
class PeerCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)
    kind: Literal["agent", "device"] = "agent"
    wg_ip: Optional[str] = None


class PeerResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    wg_ip: str
    public_key: Optional[str]
    setup_token: Optional[str]
    status: str
    kind: str
    created_at: Optional[datetime]


# --- Forwards ---
class ForwardCreate(BaseModel):
    peer_id: int
    protocol: Literal["tcp", "udp"]
    public_port: int = Field(..., ge=1, le=65535)
    private_port: int = Field(..., ge=1, le=65535)


class ForwardResponse(BaseModel):
    id: int
    peer_id: int
    protocol: str
    public_port: int
    private_port: int
    peer_name: Optional[str] = None
    wg_ip: Optional[str] = None


# --- Settings ---
class SettingUpdate(BaseModel):
    key: Literal["server_public_key", "server_endpoint", "matrix_webhook_url"]
    value: str = Field(..., max_length=2048)


# --- Rules ---
class RulesPreview(BaseModel):
    rules: str


class ApplyResponse(BaseModel):
    applied: bool
    message: str


# --- Stats ---
class UsageBucket(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    rx: int
    tx: int


class HourlyBucket(UsageBucket):
    hour_start: datetime


class MonthlyBucket(UsageBucket):
    month: str


class UsageHistory(BaseModel):
    peer_id: int
    hourly: List[HourlyBucket]
    monthly: List[MonthlyBucket]


class InterfaceStatusResponse(BaseModel):
    status: Literal["up", "down"]
    interface: str
    peer_count: int = 0
    public_key: Optional[str] = None
