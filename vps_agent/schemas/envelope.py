import time
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, model_validator


def now_ms() -> int:
    return int(time.time() * 1000)


class EnvelopeType(str, Enum):
    REGISTER = "register"
    HEARTBEAT = "heartbeat"
    COMMAND = "command"
    RESPONSE = "response"
    REGISTERED = "registered"
    HEARTBEAT_ACK = "heartbeat_ack"
    ERROR = "error"
    INSTALL_PROGRESS = "install_progress"


class Envelope(BaseModel):
    """
    The unit exchanged with the controller, one per WebSocket text frame.

    Wire form:
        {"type": "command", "requestId": "r1", "data": {"type": "ping"}, "timestamp": 1700000000000}

    Outbound envelopes also carry agentId and secret; both are stamped by the
    Session right before sending.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: EnvelopeType
    request_id: Optional[str] = Field(default=None, alias="requestId")
    agent_id: Optional[str] = Field(default=None, alias="agentId")
    secret: Optional[SecretStr] = None
    payload: Dict[str, Any] = Field(default_factory=dict, alias="data")
    timestamp: int = Field(default_factory=now_ms)

    @model_validator(mode="after")
    def check_correlation(self) -> "Envelope":
        if self.type in (EnvelopeType.COMMAND, EnvelopeType.RESPONSE) and not self.request_id:
            raise ValueError(f"{self.type.value} envelope requires a requestId")
        if self.type == EnvelopeType.COMMAND and not isinstance(self.payload.get("type"), str):
            raise ValueError("command envelope requires data.type")
        return self

    @property
    def command_kind(self) -> Optional[str]:
        if self.type != EnvelopeType.COMMAND:
            return None
        return self.payload["type"]

    @classmethod
    def command(cls, request_id: str, kind: str, **params: Any) -> "Envelope":
        return cls(type=EnvelopeType.COMMAND, request_id=request_id, payload={"type": kind, **params})

    @classmethod
    def response(cls, request_id: str, payload: Dict[str, Any]) -> "Envelope":
        return cls(type=EnvelopeType.RESPONSE, request_id=request_id, payload=payload)
