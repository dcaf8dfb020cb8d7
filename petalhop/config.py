# petalhop/config.py
import re
import tempfile

from pydantic import field_validator
from pydantic_settings import BaseSettings

INTERFACE_NAME_RE = re.compile(r"[A-Za-z0-9_.-]{1,15}")


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite:///./petalhop.db"

    # WireGuard mesh
    WG_INTERFACE: str = "wg0"
    MESH_NETWORK: str = "10.8.0.0/24"
    HUB_ADDRESS: str = "10.8.0.1"

    # Fallbacks when the settings table has no server_public_key / server_endpoint
    HUB_PUBLIC_KEY: str = ""
    HUB_ENDPOINT: str = ""

    # Admin API token (simplified authentication)
    ADMIN_SECRET: str = "change-me"

    # Peer monitor timings (seconds)
    MONITOR_TICK_INTERVAL: float = 1.0
    CONFIG_REFRESH_INTERVAL: float = 60.0
    USAGE_FLUSH_INTERVAL: float = 60.0
    OFFLINE_THRESHOLD: int = 180
    SUBSCRIBER_QUEUE_SIZE: int = 16

    # Firewall loader
    NFT_BINARY: str = "nft"
    RULES_DIR: str = tempfile.gettempdir()

    WEBHOOK_TIMEOUT: float = 5.0
    LOG_LEVEL: str = "INFO"

    @field_validator("WG_INTERFACE")
    @classmethod
    def check_interface_name(cls, value: str) -> str:
        # Interface name is embedded in generated rulesets
        if not INTERFACE_NAME_RE.fullmatch(value):
            raise ValueError(f"invalid interface name: {value!r}")
        return value


settings = Settings()
