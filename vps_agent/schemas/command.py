from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class CommandParams(BaseModel):
    """Base for typed command parameters. The "type" key is the command kind and is ignored here."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class PingParams(CommandParams):
    pass


class RestartParams(CommandParams):
    pass


class ExecuteParams(CommandParams):
    command: str = Field(min_length=1)


class DeployParams(CommandParams):
    identifier: str = Field(validation_alias=AliasChoices("identifier", "nodeId"), min_length=1)
    script: str


class InstallPollingClientParams(CommandParams):
    script: str


class ReloadGostConfigParams(CommandParams):
    config: Dict[str, Any]


class CommandResult(BaseModel):
    """Payload of a response envelope."""
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    message: Optional[str] = None
    output: Optional[str] = None
    error: Optional[str] = None
    service_status: Optional[str] = Field(default=None, alias="serviceStatus")

    @classmethod
    def failure(cls, error: str, output: Optional[str] = None, stderr: Optional[str] = None) -> "CommandResult":
        if stderr and stderr.strip():
            error = f"{error}\n{stderr.rstrip()}"
        return cls(success=False, error=error, output=output or None)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)
