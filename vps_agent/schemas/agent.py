from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator


class AgentIdentity(BaseModel):
    """Who this agent is. The secret is masked in repr and logs."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    agent_id: str = Field(alias="agentId", min_length=1)
    secret: SecretStr
    display_name: str = Field(default="", alias="name")


class AgentConfig(AgentIdentity):
    """Contents of the identity file written by the installer."""

    server_url: str = Field(alias="serverUrl", min_length=1)

    @field_validator("secret")
    @classmethod
    def secret_not_empty(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value():
            raise ValueError("secret must not be empty")
        return value

    @field_validator("server_url")
    @classmethod
    def websocket_url(cls, value: str) -> str:
        if not value.startswith(("ws://", "wss://", "http://", "https://")):
            raise ValueError("serverUrl must be a ws://, wss://, http:// or https:// URL")
        return value

    @property
    def identity(self) -> AgentIdentity:
        return AgentIdentity(
            agent_id=self.agent_id,
            secret=self.secret,
            display_name=self.display_name,
        )
