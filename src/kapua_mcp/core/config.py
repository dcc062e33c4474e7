"""Server configuration.

Values come from the process environment, with an optional ``.venv`` dotfile
in the working directory supplying anything the environment leaves unset.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, field_validator

from .errors import ConfigError

DEFAULT_ENV_FILE = ".venv"
DEFAULT_TIMEOUT_SECONDS = 30


class KapuaSettings(BaseModel):
    """Connection settings for the Kapua API and the MCP front door."""

    api_endpoint: str
    username: str
    password: str
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    log_level: str = "INFO"
    host: str = "localhost"
    port: int = 8000

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.strip().upper() or "INFO"

    @property
    def base_url(self) -> str:
        """API endpoint with a trailing ``/v1``."""
        base = self.api_endpoint.rstrip("/")
        if not base.endswith("/v1"):
            base += "/v1"
        return base


_REQUIRED = {
    "KAPUA_API_ENDPOINT": "api_endpoint",
    "KAPUA_USER": "username",
    "KAPUA_PASSWORD": "password",
}

_OPTIONAL = {
    "KAPUA_TIMEOUT": "timeout",
    "LOG_LEVEL": "log_level",
    "MCP_HOST": "host",
    "MCP_PORT": "port",
}


def load_settings(
    env_file: Optional[str] = DEFAULT_ENV_FILE,
    environ: Optional[Mapping[str, str]] = None,
) -> KapuaSettings:
    """Load settings; the environment wins over the dotfile.

    Raises:
        ConfigError: a required variable is missing or a value does not validate.
    """
    values: dict[str, Optional[str]] = {}
    if env_file and Path(env_file).is_file():
        values.update(dotenv_values(env_file))
    env = os.environ if environ is None else environ
    values.update({k: v for k, v in env.items() if v})

    fields: dict[str, str] = {}
    for var, field in {**_REQUIRED, **_OPTIONAL}.items():
        value = (values.get(var) or "").strip()
        if value:
            fields[field] = value

    for var, field in _REQUIRED.items():
        if field not in fields:
            raise ConfigError(f"{var} is required")

    try:
        return KapuaSettings(**fields)
    except ValueError as exc:
        raise ConfigError(f"invalid configuration: {exc}") from exc
