from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

UNKNOWN = "unknown"


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class MemoryUsage(_WireModel):
    total_bytes: int = Field(default=0, alias="total")
    used_bytes: int = Field(default=0, alias="used")
    free_bytes: int = Field(default=0, alias="free")
    percent: float = Field(default=0.0, alias="percentage")


class NetworkCounters(_WireModel):
    # Cumulative since boot, summed over non-loopback interfaces
    bytes_received: int = Field(default=0, alias="received")
    bytes_sent: int = Field(default=0, alias="sent")


class ServiceStatus(_WireModel):
    running: bool = False
    last_sync_timestamp: Optional[str] = Field(default=None, alias="lastSync")
    config_fingerprint: Optional[str] = Field(default=None, alias="configHash")
    rule_count: int = Field(default=0, alias="ruleCount")


class HostSnapshot(_WireModel):
    """Point-in-time host metrics, sent as the heartbeat payload."""

    hostname: str = UNKNOWN
    ip_address: str = Field(default=UNKNOWN, alias="ipAddress")
    platform: str = UNKNOWN
    arch: str = UNKNOWN
    cpu_usage_percent: float = Field(default=0.0, alias="cpu")
    memory: MemoryUsage = Field(default_factory=MemoryUsage)
    network: Optional[NetworkCounters] = None
    uptime_seconds: int = Field(default=0, alias="uptime")
    service_status: Optional[ServiceStatus] = Field(default=None, alias="gost")
