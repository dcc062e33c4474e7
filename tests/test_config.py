from __future__ import annotations

import pytest

from kapua_mcp.core.config import load_settings
from kapua_mcp.core.errors import ConfigError

REQUIRED = {
    "KAPUA_API_ENDPOINT": "https://kapua.example.com",
    "KAPUA_USER": "kapua-sys",
    "KAPUA_PASSWORD": "secret",
}


def test_loads_required_values_and_defaults():
    settings = load_settings(env_file=None, environ=REQUIRED)
    assert settings.api_endpoint == "https://kapua.example.com"
    assert settings.base_url == "https://kapua.example.com/v1"
    assert (settings.username, settings.password) == ("kapua-sys", "secret")
    assert settings.timeout == 30
    assert settings.log_level == "INFO"
    assert (settings.host, settings.port) == ("localhost", 8000)


def test_optional_values_are_parsed():
    environ = {**REQUIRED, "KAPUA_TIMEOUT": "12.5", "LOG_LEVEL": "debug", "MCP_HOST": "0.0.0.0", "MCP_PORT": "9001"}
    settings = load_settings(env_file=None, environ=environ)
    assert settings.timeout == 12.5
    assert settings.log_level == "DEBUG"
    assert (settings.host, settings.port) == ("0.0.0.0", 9001)


@pytest.mark.parametrize("missing", sorted(REQUIRED))
def test_missing_required_variable_raises(missing):
    environ = {k: v for k, v in REQUIRED.items() if k != missing}
    with pytest.raises(ConfigError, match=f"{missing} is required"):
        load_settings(env_file=None, environ=environ)


def test_blank_required_variable_counts_as_missing():
    with pytest.raises(ConfigError, match="KAPUA_PASSWORD is required"):
        load_settings(env_file=None, environ={**REQUIRED, "KAPUA_PASSWORD": "  "})


def test_invalid_value_raises_config_error():
    with pytest.raises(ConfigError, match="invalid configuration"):
        load_settings(env_file=None, environ={**REQUIRED, "MCP_PORT": "not-a-port"})


def test_dotfile_supplies_values(tmp_path):
    dotfile = tmp_path / ".venv"
    dotfile.write_text(
        "KAPUA_API_ENDPOINT=https://dotfile.example.com/v1\n"
        "KAPUA_USER=dot-user\n"
        "KAPUA_PASSWORD=dot-pass\n"
        "MCP_PORT=7000\n"
    )
    settings = load_settings(env_file=str(dotfile), environ={})
    assert settings.base_url == "https://dotfile.example.com/v1"
    assert settings.username == "dot-user"
    assert settings.port == 7000


def test_environment_wins_over_dotfile(tmp_path):
    dotfile = tmp_path / ".venv"
    dotfile.write_text("KAPUA_API_ENDPOINT=https://dotfile.example.com\nKAPUA_USER=dot-user\nKAPUA_PASSWORD=dot-pass\n")
    settings = load_settings(env_file=str(dotfile), environ={"KAPUA_USER": "env-user"})
    assert settings.username == "env-user"
    assert settings.password == "dot-pass"


def test_missing_dotfile_is_ignored(tmp_path):
    settings = load_settings(env_file=str(tmp_path / "absent"), environ=REQUIRED)
    assert settings.username == "kapua-sys"
