from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve .env relative to the project root (one level above the vps_agent package)
_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"


class Settings(BaseSettings):
    """
    Runtime settings for the VPS agent.
    Reads from environment variables and the .env file. The agent identity
    (agentId / secret / serverUrl) lives in the JSON file at CONFIG_PATH.
    """
    model_config = SettingsConfigDict(env_file=str(_ENV_FILE), env_file_encoding="utf-8", case_sensitive=False, extra="ignore")

    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Identity file written by the installer
    CONFIG_PATH: str = "/opt/vps-agent/config.json"

    # Session
    HEARTBEAT_INTERVAL_SECONDS: float = 30
    MAX_SKIPPED_HEARTBEATS: int = 3
    RECONNECT_DELAY_SECONDS: float = 5
    RECONNECT_BACKOFF_FACTOR: float = 1.0  # 1.0 keeps the delay fixed
    RECONNECT_MAX_DELAY_SECONDS: float = 60
    REGISTRATION_TIMEOUT_SECONDS: float = 30
    CONNECT_TIMEOUT_SECONDS: float = 10
    USER_AGENT: str = "VPS-Agent/1.0"

    # Command execution budgets
    EXECUTE_TIMEOUT_SECONDS: float = 60
    DEPLOY_TIMEOUT_SECONDS: float = 300
    INSTALL_TIMEOUT_SECONDS: float = 600
    RELOAD_TIMEOUT_SECONDS: float = 60
    INSTANT_TIMEOUT_SECONDS: float = 5
    RESTART_DELAY_SECONDS: float = 3

    # Scripts and subprocess output
    SCRIPT_TEMP_DIR: Optional[str] = None  # None means the system temp dir
    SCRIPT_SHELL: str = "bash"
    MAX_OUTPUT_BYTES: int = 10 * 1024 * 1024

    # GOST tunnel service
    GOST_SERVICE_NAME: str = "gost"
    GOST_CONFIG_PATH: str = "/etc/gost/config.json"
    SERVICE_QUERY_TIMEOUT_SECONDS: float = 5
    # Kept below RELOAD_TIMEOUT_SECONDS together with the query timeout
    SERVICE_RESTART_TIMEOUT_SECONDS: float = 30


settings = Settings()
