from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

import httpx
import pytest

from kapua_mcp.core.client import KapuaClient
from kapua_mcp.core.config import KapuaSettings
from kapua_mcp.core.models import Credential

FIXED_NOW = datetime(2024, 8, 1, 12, 0, 0, tzinfo=timezone.utc)


def iso(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%S.000Z")


def json_response(payload, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, json=payload)


@pytest.fixture
def settings() -> KapuaSettings:
    return KapuaSettings(api_endpoint="http://kapua.test/", username="kapua-sys", password="kapua-password")


@pytest.fixture
def client_factory(settings) -> Callable[..., KapuaClient]:
    """Build a KapuaClient against a MockTransport with a fixed clock and a seeded session."""

    def factory(
        handler,
        now: datetime = FIXED_NOW,
        credential: Optional[Credential] = None,
    ) -> KapuaClient:
        client = KapuaClient(settings, transport=httpx.MockTransport(handler), clock=lambda: now)
        client.credentials.store(credential or Credential(access_token="token-0", scope="tenant"))
        return client

    return factory
