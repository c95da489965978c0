# heartbeat_server/conf.py
from __future__ import annotations

import ipaddress
import logging
import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

load_dotenv()

# ----------------------------------------------------------------------
# Paths (all under assets/)
# ----------------------------------------------------------------------
ROOT_DIR = Path(__file__).parent.parent
ASSETS_DIR = ROOT_DIR / "assets"

DEFAULT_DB_PATH = ASSETS_DIR / "heartbeat.db"
DEFAULT_ENDPOINT_PATH = "/data_flows/heartbeat"
DEFAULT_CLAIM_TTL_SECONDS = 3600


class HeartbeatSettings(BaseModel):
    """Process-wide settings, loaded once at startup and passed to the transport layer."""

    database_url: str = Field(f"sqlite:///{DEFAULT_DB_PATH}", description="SQLAlchemy database URL")
    api_key: str | None = Field(None, description="X-API-Key for flow administration (None = open)")
    authentication_enabled: bool = False
    authentication_token: str | None = None
    ip_whitelisting_enabled: bool = False
    whitelisted_ips: List[str] = Field(default_factory=list, description="Addresses or CIDR networks")
    endpoint_path: str = DEFAULT_ENDPOINT_PATH
    max_workers: int = Field(1, ge=1, description="Flows executed in parallel within one cycle")
    heartbeat_interval_seconds: int = Field(0, ge=0, description="In-process timer interval (0 = disabled)")
    claim_ttl_seconds: int = Field(DEFAULT_CLAIM_TTL_SECONDS, gt=0, description="Lifetime of a flow claim")

    @field_validator("whitelisted_ips")
    @classmethod
    def validate_whitelisted_ips(cls, v: List[str]) -> List[str]:
        """Validate every entry is an IP address or network."""
        for entry in v:
            try:
                ipaddress.ip_network(entry, strict=False)
            except ValueError:
                raise ValueError(f"Invalid whitelist entry: {entry}")
        return v

    @field_validator("endpoint_path")
    @classmethod
    def validate_endpoint_path(cls, v: str) -> str:
        if not v.startswith("/"):
            return f"/{v}"
        return v

    def ip_allowed(self, ip: str | None) -> bool:
        """Return True if the address matches a whitelist entry."""
        if not ip:
            return False
        try:
            address = ipaddress.ip_address(ip)
        except ValueError:
            return False
        return any(address in ipaddress.ip_network(entry, strict=False) for entry in self.whitelisted_ips)


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str) -> List[str]:
    value = os.getenv(name, "")
    return [item.strip() for item in value.split(",") if item.strip()]


def load_settings() -> HeartbeatSettings:
    """Build settings from the environment (and .env)."""
    settings = HeartbeatSettings(
        database_url=os.getenv("DATABASE_URL") or f"sqlite:///{DEFAULT_DB_PATH}",
        api_key=os.getenv("API_KEY") or None,
        authentication_enabled=_env_bool("HEARTBEAT_AUTH_ENABLED"),
        authentication_token=os.getenv("HEARTBEAT_TOKEN") or None,
        ip_whitelisting_enabled=_env_bool("HEARTBEAT_IP_WHITELIST_ENABLED"),
        whitelisted_ips=_env_list("HEARTBEAT_WHITELISTED_IPS"),
        endpoint_path=os.getenv("HEARTBEAT_ENDPOINT_PATH", DEFAULT_ENDPOINT_PATH),
        max_workers=int(os.getenv("HEARTBEAT_MAX_WORKERS", "1")),
        heartbeat_interval_seconds=int(os.getenv("HEARTBEAT_INTERVAL_SECONDS", "0")),
        claim_ttl_seconds=int(os.getenv("FLOW_CLAIM_TTL_SECONDS", str(DEFAULT_CLAIM_TTL_SECONDS))),
    )
    if settings.authentication_enabled and not settings.authentication_token:
        logger.warning("Heartbeat authentication is enabled but HEARTBEAT_TOKEN is not set")
    return settings
