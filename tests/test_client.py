from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import httpx
import pytest

from conftest import FIXED_NOW, iso, json_response
from kapua_mcp.core.client import KapuaClient
from kapua_mcp.core.config import KapuaSettings
from kapua_mcp.core.errors import (
    BackendError,
    MalformedResponseError,
    SessionError,
    TransportError,
)
from kapua_mcp.core.models import ApiKeyCredentials, Credential, JwtCredentials


def test_base_url_appends_v1():
    settings = KapuaSettings(api_endpoint="https://kapua.example.com/", username="u", password="p")
    assert settings.base_url == "https://kapua.example.com/v1"


def test_base_url_keeps_existing_v1():
    settings = KapuaSettings(api_endpoint="https://kapua.example.com/v1", username="u", password="p")
    assert settings.base_url == "https://kapua.example.com/v1"


def test_execute_sets_headers_and_drops_empty_params(client_factory):
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = request.url
        captured["headers"] = request.headers
        return json_response({"items": [{"id": "dev-1", "clientId": "alpha"}], "totalCount": 1})

    async def scenario():
        async with client_factory(handler) as client:
            return await client.list_devices({"clientId": "alpha", "matchTerm": "", "limit": 5, "askTotalCount": True})

    result = asyncio.run(scenario())
    assert result.total_count == 1
    assert result.items[0].client_id == "alpha"
    assert captured["url"].path == "/v1/tenant/devices"
    assert dict(captured["url"].params) == {"clientId": "alpha", "limit": "5", "askTotalCount": "true"}
    assert captured["headers"]["Authorization"] == "Bearer token-0"
    assert captured["headers"]["Accept"] == "application/json"


def test_execute_without_token_sends_no_authorization(client_factory):
    def handler(request: httpx.Request) -> httpx.Response:
        assert "Authorization" not in request.headers
        return json_response({"id": "dev-1"})

    async def scenario():
        async with client_factory(handler, credential=Credential(scope="tenant")) as client:
            return await client.get_device("dev-1")

    assert asyncio.run(scenario()).id == "dev-1"


def test_backend_error_is_structured(client_factory):
    def handler(request: httpx.Request) -> httpx.Response:
        return json_response(
            {"code": "ENTITY_NOT_FOUND", "message": "Device not found", "details": "id=dev-9"}, 404
        )

    async def scenario():
        async with client_factory(handler) as client:
            await client.get_device("dev-9")

    with pytest.raises(BackendError) as info:
        asyncio.run(scenario())
    err = info.value
    assert (err.status, err.code, err.message, err.details) == (404, "ENTITY_NOT_FOUND", "Device not found", "id=dev-9")
    assert str(err) == "failed to get device: Device not found: id=dev-9"


def test_unstructured_error_body_is_malformed_response(client_factory):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="kapua error")

    async def scenario():
        async with client_factory(handler) as client:
            await client.list_devices()

    with pytest.raises(MalformedResponseError) as info:
        asyncio.run(scenario())
    assert info.value.status == 500
    assert "kapua error" in str(info.value)


def test_success_with_invalid_json_is_malformed_response(client_factory):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="not-json")

    async def scenario():
        async with client_factory(handler) as client:
            await client.list_devices()

    with pytest.raises(MalformedResponseError) as info:
        asyncio.run(scenario())
    assert info.value.status == 200


def test_success_with_wrong_shape_is_malformed_response(client_factory):
    def handler(request: httpx.Request) -> httpx.Response:
        return json_response({"items": "nope"})

    async def scenario():
        async with client_factory(handler) as client:
            await client.list_devices()

    with pytest.raises(MalformedResponseError):
        asyncio.run(scenario())


def test_transport_failure_is_wrapped_with_action(client_factory):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def scenario():
        async with client_factory(handler) as client:
            await client.list_device_events("dev-1")

    with pytest.raises(TransportError) as info:
        asyncio.run(scenario())
    assert info.value.action == "list device events"
    assert str(info.value).startswith("list device events request failed")


def test_scoped_path_quotes_ids(client_factory):
    def handler(request: httpx.Request) -> httpx.Response:
        return json_response({"items": []})

    client = client_factory(handler)
    assert client.scoped_path("/devices/{}/events", "a/b") == "/tenant/devices/a%2Fb/events"
    asyncio.run(client.aclose())


def test_authenticate_user_stores_credential(client_factory):
    bodies: list[dict] = []
    expires = FIXED_NOW + timedelta(minutes=30)

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/authentication/user"
        bodies.append(json.loads(request.content))
        return json_response({
            "tokenId": "token-123",
            "scopeId": "AQ",
            "refreshToken": "refresh-456",
            "expiresOn": iso(expires),
            "refreshExpiresOn": iso(FIXED_NOW + timedelta(hours=2)),
        })

    async def scenario():
        async with client_factory(handler, credential=Credential()) as client:
            token = await client.quick_authenticate()
            return token, client.credentials.snapshot()

    token, credential = asyncio.run(scenario())
    assert bodies == [{"username": "kapua-sys", "password": "kapua-password"}]
    assert token.token_id == "token-123"
    assert credential == Credential(
        access_token="token-123",
        access_expiry=expires,
        refresh_token="refresh-456",
        refresh_expiry=FIXED_NOW + timedelta(hours=2),
        scope="AQ",
    )


def test_authentication_failure_leaves_store_untouched(client_factory):
    def handler(request: httpx.Request) -> httpx.Response:
        return json_response({"code": "UNAUTHENTICATED", "message": "Login failed"}, 401)

    async def scenario():
        async with client_factory(handler) as client:
            with pytest.raises(BackendError):
                await client.quick_authenticate()
            return client.credentials.snapshot()

    assert asyncio.run(scenario()).access_token == "token-0"


def test_authentication_calls_skip_refresh_policy(client_factory):
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        return json_response({"tokenId": "fresh", "scopeId": "tenant"})

    expired = Credential(access_token="old", access_expiry=FIXED_NOW - timedelta(hours=1), scope="tenant")

    async def scenario():
        async with client_factory(handler, credential=expired) as client:
            await client.quick_authenticate()

    asyncio.run(scenario())
    assert paths == ["/v1/authentication/user"]


def test_logout_clears_credential(client_factory):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/authentication/logout"
        return httpx.Response(200)

    async def scenario():
        async with client_factory(handler) as client:
            await client.logout()
            return client.credentials.snapshot()

    assert asyncio.run(scenario()) == Credential()


def test_logout_and_login_info_require_token(client_factory):
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    async def scenario():
        async with client_factory(handler, credential=Credential()) as client:
            with pytest.raises(SessionError):
                await client.logout()
            with pytest.raises(SessionError):
                await client.get_login_info()

    asyncio.run(scenario())


def test_get_login_info_returns_payload(client_factory):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/authentication/info"
        return json_response({"accessToken": {"tokenId": "token-0"}, "accessPermission": []})

    async def scenario():
        async with client_factory(handler) as client:
            return await client.get_login_info()

    assert asyncio.run(scenario())["accessToken"]["tokenId"] == "token-0"


def test_client_is_usable_without_context_manager(settings):
    client = KapuaClient(settings, transport=httpx.MockTransport(lambda r: json_response({"items": []})))
    assert client.base_url == "http://kapua.test/v1"
    asyncio.run(client.aclose())


def test_authenticate_api_key_posts_key(client_factory):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/authentication/apikey"
        assert json.loads(request.content) == {"apiKey": "key-1"}
        return json_response({"tokenId": "token-key", "scopeId": "AQ"})

    async def scenario():
        async with client_factory(handler, credential=Credential()) as client:
            await client.authenticate_api_key(ApiKeyCredentials(api_key="key-1"))
            return client.credentials.snapshot()

    credential = asyncio.run(scenario())
    assert (credential.access_token, credential.scope) == ("token-key", "AQ")
    assert credential.access_expiry is None


def test_error_body_with_numeric_code_is_malformed_response(client_factory):
    def handler(request: httpx.Request) -> httpx.Response:
        return json_response({"code": 500, "message": "boom"}, 500)

    async def scenario():
        async with client_factory(handler) as client:
            await client.list_device_events("dev-2")

    with pytest.raises(MalformedResponseError) as info:
        asyncio.run(scenario())
    assert info.value.status == 500
    assert "boom" in str(info.value)


def test_authenticate_jwt_posts_token(client_factory):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/authentication/jwt"
        assert json.loads(request.content) == {"jwt": "eyJ.payload.sig"}
        return json_response({"tokenId": "token-jwt", "scopeId": "AQ"})

    async def scenario():
        async with client_factory(handler, credential=Credential()) as client:
            await client.authenticate_jwt(JwtCredentials(jwt="eyJ.payload.sig"))
            return client.credentials.snapshot()

    assert asyncio.run(scenario()).access_token == "token-jwt"


def test_update_and_delete_device(client_factory):
    seen: list[tuple[str, str, bytes]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path, request.content))
        if request.method == "DELETE":
            return httpx.Response(204)
        return json_response({"id": "dev-1", "clientId": "alpha", "displayName": "renamed"})

    async def scenario():
        async with client_factory(handler) as client:
            updated = await client.update_device("dev-1", {"displayName": "renamed", "optlock": 3})
            await client.delete_device("dev-1")
            return updated

    updated = asyncio.run(scenario())
    assert updated.client_id == "alpha"
    assert seen[0][:2] == ("PUT", "/v1/tenant/devices/dev-1")
    assert json.loads(seen[0][2]) == {"displayName": "renamed", "optlock": 3}
    assert seen[1][:2] == ("DELETE", "/v1/tenant/devices/dev-1")


def test_list_device_logs(client_factory):
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = request.url
        return json_response({"totalCount": 1, "items": [
            {"clientId": "alpha", "logProperties": {"message": "disk full"}, "timestamp": "2024-08-01T11:00:00.000Z"},
        ]})

    async def scenario():
        async with client_factory(handler) as client:
            return await client.list_device_logs({"clientId": "alpha", "strictChannel": False, "limit": 10})

    result = asyncio.run(scenario())
    assert result.items[0].log_properties == {"message": "disk full"}
    assert captured["url"].path == "/v1/tenant/deviceLogs"
    assert dict(captured["url"].params) == {"clientId": "alpha", "strictChannel": "false", "limit": "10"}


def test_list_data_messages_repeats_client_ids(client_factory):
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = request.url
        return json_response({"items": [{"clientId": "alpha", "payload": {"metrics": {"temp": 21.5}}}]})

    async def scenario():
        async with client_factory(handler) as client:
            return await client.list_data_messages({"clientId": ["alpha", "", "bravo"], "channel": "", "limit": 5})

    result = asyncio.run(scenario())
    assert result.items[0].payload == {"metrics": {"temp": 21.5}}
    assert captured["url"].path == "/v1/tenant/data/messages"
    assert captured["url"].params.get_list("clientId") == ["alpha", "bravo"]
    assert "channel" not in captured["url"].params


@pytest.mark.parametrize(
    "component, path",
    [(None, "/v1/tenant/devices/dev-1/configurations"), ("watchdog", "/v1/tenant/devices/dev-1/configurations/watchdog")],
)
def test_device_configurations_paths(client_factory, component, path):
    seen: list[tuple[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path))
        if request.method == "PUT":
            return httpx.Response(204)
        return json_response({"configuration": [{"id": "watchdog", "properties": {}}]})

    async def scenario():
        async with client_factory(handler) as client:
            conf = await client.read_device_configurations("dev-1", component)
            await client.write_device_configurations("dev-1", {"configuration": []}, component)
            return conf

    assert asyncio.run(scenario()).configuration[0]["id"] == "watchdog"
    assert seen == [("GET", path), ("PUT", path)]


def test_inventory_reads_use_section_paths(client_factory):
    paths: list[str] = []
    payloads = {
        "inventory": {"inventoryItems": [{"name": "kura", "version": "5.4", "itemType": "BUNDLE"}]},
        "bundles": {"inventoryBundles": [{"id": "1", "name": "org.eclipse.kura.api", "status": "ACTIVE", "signed": True}]},
        "containers": {"inventoryContainers": [{"name": "mosquitto", "containerType": "DOCKER", "state": "ACTIVE"}]},
        "system": {"systemPackages": [{"name": "openssl", "packageType": "DEB"}]},
        "packages": {"deploymentPackages": [{"name": "dp", "packageBundles": [{"name": "b"}]}]},
    }

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        return json_response(payloads[request.url.path.rsplit("/", 1)[-1]])

    async def scenario():
        async with client_factory(handler) as client:
            return (
                await client.read_device_inventory("dev-1"),
                await client.list_inventory_bundles("dev-1"),
                await client.list_inventory_containers("dev-1"),
                await client.list_inventory_system_packages("dev-1"),
                await client.list_inventory_deployment_packages("dev-1"),
            )

    items, bundles, containers, system, packages = asyncio.run(scenario())
    assert items.inventory_items[0].item_type == "BUNDLE"
    assert bundles.inventory_bundles[0].signed is True
    assert containers.inventory_containers[0].container_type == "DOCKER"
    assert system.system_packages[0].package_type == "DEB"
    assert packages.deployment_packages[0].package_bundles[0].name == "b"
    assert paths == [
        "/v1/tenant/devices/dev-1/inventory",
        "/v1/tenant/devices/dev-1/inventory/bundles",
        "/v1/tenant/devices/dev-1/inventory/containers",
        "/v1/tenant/devices/dev-1/inventory/system",
        "/v1/tenant/devices/dev-1/inventory/packages",
    ]


def test_control_inventory_item_posts_descriptor(client_factory):
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    async def scenario():
        async with client_factory(handler) as client:
            await client.control_inventory_item("dev-1", "containers", "stop", {"name": "mosquitto", "version": "2"})

    asyncio.run(scenario())
    assert (seen[0].method, seen[0].url.path) == ("POST", "/v1/tenant/devices/dev-1/inventory/containers/_stop")
    assert json.loads(seen[0].content) == {"name": "mosquitto", "version": "2"}


@pytest.mark.parametrize("kind, operation", [("packages", "start"), ("bundles", "restart")])
def test_control_inventory_item_rejects_unknown_targets(client_factory, kind, operation):
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    async def scenario():
        async with client_factory(handler) as client:
            await client.control_inventory_item("dev-1", kind, operation, {})

    with pytest.raises(ValueError):
        asyncio.run(scenario())


def test_snapshots_commands_assets_and_bundles(client_factory):
    seen: list[tuple[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path))
        path = request.url.path
        if path.endswith("/snapshots"):
            return json_response({"snapshotId": [{"id": "1700000000000"}]})
        if path.endswith("/snapshots/1700000000000"):
            return json_response({"configuration": [{"id": "firewall"}]})
        if path.endswith("/commands/_execute"):
            return json_response({"stdout": "ok", "exitCode": 0})
        if path.endswith("/assets/_read"):
            return json_response({"deviceAsset": [{"name": "plc", "channels": [{"name": "temp", "value": "21"}]}]})
        return httpx.Response(204)

    async def scenario():
        async with client_factory(handler) as client:
            snapshots = await client.list_device_snapshots("dev-1")
            conf = await client.read_device_snapshot("dev-1", "1700000000000")
            await client.rollback_device_snapshot("dev-1", "1700000000000")
            output = await client.execute_device_command("dev-1", {"command": "uptime"})
            values = await client.read_device_assets("dev-1", {"deviceAsset": [{"name": "plc"}]})
            await client.control_device_bundle("dev-1", "42", "start")
            return snapshots, conf, output, values

    snapshots, conf, output, values = asyncio.run(scenario())
    assert snapshots.snapshot_id == [{"id": "1700000000000"}]
    assert conf.configuration == [{"id": "firewall"}]
    assert output == {"stdout": "ok", "exitCode": 0}
    assert values["deviceAsset"][0]["channels"][0]["value"] == "21"
    assert seen == [
        ("GET", "/v1/tenant/devices/dev-1/snapshots"),
        ("GET", "/v1/tenant/devices/dev-1/snapshots/1700000000000"),
        ("POST", "/v1/tenant/devices/dev-1/snapshots/1700000000000/_rollback"),
        ("POST", "/v1/tenant/devices/dev-1/commands/_execute"),
        ("POST", "/v1/tenant/devices/dev-1/assets/_read"),
        ("POST", "/v1/tenant/devices/dev-1/bundles/42/_start"),
    ]
