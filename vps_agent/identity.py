"""
Identity file loader for the VPS agent.

The installer writes a JSON file (default /opt/vps-agent/config.json):
    {"agentId": "...", "secret": "...", "name": "...", "serverUrl": "wss://..."}

It is read once at startup. Any problem is reported as a ConfigError with a
message naming the file and the offending fields; the entry point logs it
and exits with a non-zero status.

Usage:
    from vps_agent.identity import load_agent_config
"""
import json
import logging
from pathlib import Path
from typing import Union

from pydantic import ValidationError

from .exceptions import ConfigError
from .logger import redact_secret
from .schemas.agent import AgentConfig

logger = logging.getLogger("vps-agent.identity")

_REQUIRED_FIELDS = ("agentId", "secret", "serverUrl")


def load_agent_config(path: Union[str, Path]) -> AgentConfig:
    """Read and validate the identity file. Raises ConfigError."""
    p = Path(path)
    try:
        raw = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {p}") from None
    except OSError as e:
        raise ConfigError(f"Cannot read config file {p}: {e}") from e

    try:
        data = json.loads(raw)
    except ValueError as e:
        raise ConfigError(f"Config file {p} is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {p} must contain a JSON object")

    missing = [name for name in _REQUIRED_FIELDS if not data.get(name)]
    if missing:
        raise ConfigError(f"Config file {p} is missing required fields: {', '.join(missing)}")

    try:
        config = AgentConfig.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError(f"Config file {p} is invalid: {problems}") from e

    redact_secret(config.secret.get_secret_value())
    logger.info(f"Config loaded: agent_id={config.agent_id}, name={config.display_name or '-'}")
    return config
