import json
import logging

import pytest

from vps_agent.exceptions import ConfigError
from vps_agent.identity import load_agent_config


def write_config(tmp_path, data):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(data) if not isinstance(data, str) else data)
    return path


def test_load_valid_config(tmp_path, caplog):
    path = write_config(tmp_path, {
        "agentId": "agent-1",
        "secret": "top-secret",
        "name": "edge-01",
        "serverUrl": "wss://controller.example.com/agent",
    })

    with caplog.at_level(logging.INFO):
        config = load_agent_config(path)

    assert config.agent_id == "agent-1"
    assert config.secret.get_secret_value() == "top-secret"
    assert config.display_name == "edge-01"
    assert config.server_url == "wss://controller.example.com/agent"
    assert config.identity.agent_id == "agent-1"
    assert "top-secret" not in caplog.text
    assert "top-secret" not in repr(config)


def test_name_is_optional(tmp_path):
    path = write_config(tmp_path, {"agentId": "a", "secret": "s", "serverUrl": "ws://localhost:3000"})
    assert load_agent_config(path).display_name == ""


def test_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_agent_config(tmp_path / "absent.json")


def test_invalid_json(tmp_path):
    with pytest.raises(ConfigError, match="not valid JSON"):
        load_agent_config(write_config(tmp_path, "{agentId:"))


def test_non_object(tmp_path):
    with pytest.raises(ConfigError, match="JSON object"):
        load_agent_config(write_config(tmp_path, [1, 2, 3]))


def test_missing_fields_are_named(tmp_path):
    with pytest.raises(ConfigError) as exc:
        load_agent_config(write_config(tmp_path, {"agentId": "a", "secret": ""}))
    assert "secret" in str(exc.value)
    assert "serverUrl" in str(exc.value)


def test_rejects_non_websocket_url(tmp_path):
    path = write_config(tmp_path, {"agentId": "a", "secret": "s", "serverUrl": "ftp://controller"})
    with pytest.raises(ConfigError, match="serverUrl"):
        load_agent_config(path)
