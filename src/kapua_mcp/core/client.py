"""Kapua REST API client.

API docs: https://www.eclipse.org/kapua/docs/api/
Every outbound call goes through ``KapuaClient.execute`` so the session
refresh policy is applied uniformly. Calls to ``/authentication/`` endpoints
skip the policy to avoid recursion.

The MCP server logs in with the configured username and password.
``authenticate_api_key``, ``authenticate_jwt`` and ``logout`` are library API
for callers that embed the client with other credentials.
"""

from __future__ import annotations

import logging
from typing import Any, NamedTuple, Optional, TypeVar
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

from .clock import Clock, utc_now
from .config import KapuaSettings
from .errors import BackendError, MalformedResponseError, SessionError, TransportError
from .models import (
    AccessToken,
    ApiKeyCredentials,
    Credential,
    DataMessageListResult,
    Device,
    DeviceConfiguration,
    DeviceEventListResult,
    DeviceInventory,
    DeviceInventoryBundles,
    DeviceInventoryContainers,
    DeviceInventoryDeploymentPackages,
    DeviceInventoryPackages,
    DeviceListResult,
    DeviceLogListResult,
    DeviceSnapshots,
    JwtCredentials,
    KapuaErrorBody,
    RefreshTokenRequest,
    UsernamePasswordCredentials,
)
from .session import CredentialStore, SessionManager

logger = logging.getLogger(__name__)

AUTH_PREFIX = "/authentication/"

ModelT = TypeVar("ModelT", bound=BaseModel)


class ApiResponse(NamedTuple):
    status: int
    payload: Any


def _query_value(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _clean_params(params: Optional[dict[str, Any]]) -> dict[str, Any]:
    """Drop empty query values; stringify the rest. Lists become repeated keys."""
    if not params:
        return {}
    cleaned: dict[str, Any] = {}
    for key, value in params.items():
        if isinstance(value, (list, tuple)):
            values = [v for v in map(_query_value, value) if v is not None]
            if values:
                cleaned[key] = values
            continue
        value = _query_value(value)
        if value is not None:
            cleaned[key] = value
    return cleaned


class KapuaClient:
    """Async client for one Kapua account, holding one session credential."""

    def __init__(
        self,
        settings: KapuaSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Clock = utc_now,
        auto_refresh: bool = True,
    ):
        self.settings = settings
        self.base_url = settings.base_url
        self.credentials = CredentialStore()
        self.session = SessionManager(self.credentials, self, clock=clock, auto_refresh=auto_refresh)
        self._http = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.timeout, connect=10.0),
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self) -> "KapuaClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ─── Request execution ───────────────────────────────────────────────

    @property
    def scope_id(self) -> str:
        return self.credentials.snapshot().scope

    def scoped_path(self, template: str, *ids: str) -> str:
        """Prefix ``template`` with the session scope; ``ids`` are URL-quoted into ``{}`` slots."""
        return f"/{quote(self.scope_id, safe='')}" + template.format(*(quote(i, safe="") for i in ids))

    async def execute(
        self,
        method: str,
        path: str,
        *,
        action: str,
        params: Optional[dict[str, Any]] = None,
        body: Any = None,
    ) -> ApiResponse:
        """Send one request to Kapua and classify the result.

        Raises:
            TransportError: no HTTP response was received.
            BackendError: status >= 400 with a structured Kapua error body.
            MalformedResponseError: the body could not be decoded.
        """
        if not path.startswith(AUTH_PREFIX):
            try:
                await self.session.ensure_valid()
            except SessionError as exc:
                logger.warning("Token refresh failed, continuing with current token: %s", exc)

        headers = {}
        if body is not None:
            headers["Content-Type"] = "application/json"
        token = self.credentials.snapshot().access_token
        if token:
            headers["Authorization"] = f"Bearer {token}"

        url = self.base_url + path
        logger.debug("Making %s request to %s", method, url)
        try:
            response = await self._http.request(
                method, url, params=_clean_params(params), json=body, headers=headers
            )
        except httpx.HTTPError as exc:
            raise TransportError(action, exc) from exc

        logger.debug("Response status: %d", response.status_code)
        return ApiResponse(response.status_code, self._handle_response(response, action))

    def _handle_response(self, response: httpx.Response, action: str) -> Any:
        text = response.text
        if response.status_code >= 400:
            try:
                data = response.json()
            except ValueError:
                data = None
            if isinstance(data, dict) and any(data.get(k) for k in ("code", "message", "details")):
                try:
                    err = KapuaErrorBody.model_validate(data)
                except ValidationError as exc:
                    raise MalformedResponseError(action, response.status_code, text, str(exc)) from exc
                raise BackendError(action, response.status_code, err.code, err.message, err.details)
            raise MalformedResponseError(action, response.status_code, text)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise MalformedResponseError(action, response.status_code, text, str(exc)) from exc

    async def _request_model(
        self,
        model: type[ModelT],
        method: str,
        path: str,
        *,
        action: str,
        params: Optional[dict[str, Any]] = None,
        body: Any = None,
    ) -> ModelT:
        result = await self.execute(method, path, action=action, params=params, body=body)
        try:
            return model.model_validate(result.payload if result.payload is not None else {})
        except ValidationError as exc:
            raise MalformedResponseError(action, result.status, str(result.payload), str(exc)) from exc

    # ─── Authentication ──────────────────────────────────────────────────

    def set_token_info(self, token: AccessToken) -> None:
        self.credentials.store(Credential.from_access_token(token))

    async def _authenticate(self, path: str, action: str, body: Any) -> AccessToken:
        token = await self._request_model(AccessToken, "POST", path, action=action, body=body)
        self.set_token_info(token)
        return token

    async def authenticate_user(self, credentials: UsernamePasswordCredentials) -> AccessToken:
        logger.info("Authenticating user: %s", credentials.username)
        token = await self._authenticate("/authentication/user", "authenticate user", credentials.to_wire())
        logger.info("User authentication successful")
        return token

    async def authenticate_api_key(self, credentials: ApiKeyCredentials) -> AccessToken:
        logger.info("Authenticating with API key")
        token = await self._authenticate("/authentication/apikey", "authenticate API key", credentials.to_wire())
        logger.info("API key authentication successful")
        return token

    async def authenticate_jwt(self, credentials: JwtCredentials) -> AccessToken:
        logger.info("Authenticating with JWT")
        token = await self._authenticate("/authentication/jwt", "authenticate JWT", credentials.to_wire())
        logger.info("JWT authentication successful")
        return token

    async def refresh_token(self, request: RefreshTokenRequest) -> AccessToken:
        logger.info("Refreshing access token")
        token = await self._authenticate("/authentication/refresh", "refresh token", request.to_wire())
        logger.info("Token refresh successful")
        return token

    async def quick_authenticate(self) -> AccessToken:
        """Authenticate with the configured long-lived username and password."""
        return await self.authenticate_user(
            UsernamePasswordCredentials(username=self.settings.username, password=self.settings.password)
        )

    def _require_token(self) -> None:
        if not self.credentials.snapshot().access_token:
            raise SessionError("no authentication token available")

    async def get_login_info(self) -> dict:
        """Authentication and authorization info of the current session."""
        self._require_token()
        result = await self.execute("GET", "/authentication/info", action="retrieve login info")
        return result.payload or {}

    async def logout(self) -> None:
        self._require_token()
        logger.info("Logging out")
        await self.execute("POST", "/authentication/logout", action="logout")
        self.credentials.clear()
        logger.info("Logout successful")

    # ─── Devices ─────────────────────────────────────────────────────────

    async def list_devices(self, params: Optional[dict[str, Any]] = None) -> DeviceListResult:
        logger.info("Listing devices for scope: %s", self.scope_id)
        result = await self._request_model(
            DeviceListResult, "GET", self.scoped_path("/devices"), action="list devices", params=params
        )
        logger.info("Listed %d devices successfully", len(result.items))
        return result

    async def get_device(self, device_id: str) -> Device:
        logger.info("Getting device %s from scope: %s", device_id, self.scope_id)
        return await self._request_model(
            Device, "GET", self.scoped_path("/devices/{}", device_id), action="get device"
        )

    async def list_device_events(
        self, device_id: str, params: Optional[dict[str, Any]] = None
    ) -> DeviceEventListResult:
        logger.debug("Listing device events for device %s in scope: %s", device_id, self.scope_id)
        return await self._request_model(
            DeviceEventListResult,
            "GET",
            self.scoped_path("/devices/{}/events", device_id),
            action="list device events",
            params=params,
        )

    async def update_device(self, device_id: str, device: dict[str, Any]) -> Device:
        logger.info("Updating device %s in scope: %s", device_id, self.scope_id)
        updated = await self._request_model(
            Device, "PUT", self.scoped_path("/devices/{}", device_id), action="update device", body=device
        )
        logger.info("Device updated successfully: %s", updated.client_id)
        return updated

    async def delete_device(self, device_id: str) -> None:
        logger.info("Deleting device %s from scope: %s", device_id, self.scope_id)
        await self.execute("DELETE", self.scoped_path("/devices/{}", device_id), action="delete device")
        logger.info("Device deleted successfully")

    # ─── Logs and data ───────────────────────────────────────────────────

    async def list_device_logs(self, params: Optional[dict[str, Any]] = None) -> DeviceLogListResult:
        logger.info("Listing device logs for scope: %s", self.scope_id)
        result = await self._request_model(
            DeviceLogListResult, "GET", self.scoped_path("/deviceLogs"), action="list device logs", params=params
        )
        logger.info("Retrieved %d device logs", len(result.items))
        return result

    async def list_data_messages(self, params: Optional[dict[str, Any]] = None) -> DataMessageListResult:
        """List datastore messages. A list under ``clientId`` filters on several clients."""
        logger.info("Listing data messages for scope: %s", self.scope_id)
        result = await self._request_model(
            DataMessageListResult, "GET", self.scoped_path("/data/messages"), action="list data messages", params=params
        )
        logger.info("Retrieved %d data messages", len(result.items))
        return result

    # ─── Device management ───────────────────────────────────────────────

    async def _payload(self, method: str, path: str, *, action: str, body: Any = None) -> Any:
        result = await self.execute(method, path, action=action, body=body)
        return result.payload

    async def read_device_configurations(
        self, device_id: str, component_id: Optional[str] = None
    ) -> DeviceConfiguration:
        if component_id:
            path = self.scoped_path("/devices/{}/configurations/{}", device_id, component_id)
            action = "read device component configuration"
        else:
            path = self.scoped_path("/devices/{}/configurations", device_id)
            action = "read device configurations"
        return await self._request_model(DeviceConfiguration, "GET", path, action=action)

    async def write_device_configurations(
        self, device_id: str, payload: dict[str, Any], component_id: Optional[str] = None
    ) -> None:
        if component_id:
            path = self.scoped_path("/devices/{}/configurations/{}", device_id, component_id)
            action = "write device component configuration"
        else:
            path = self.scoped_path("/devices/{}/configurations", device_id)
            action = "write device configurations"
        await self.execute("PUT", path, action=action, body=payload)

    async def read_device_inventory(self, device_id: str) -> DeviceInventory:
        return await self._request_model(
            DeviceInventory, "GET", self.scoped_path("/devices/{}/inventory", device_id),
            action="read device inventory",
        )

    async def list_inventory_bundles(self, device_id: str) -> DeviceInventoryBundles:
        return await self._request_model(
            DeviceInventoryBundles, "GET", self.scoped_path("/devices/{}/inventory/bundles", device_id),
            action="list device inventory bundles",
        )

    async def list_inventory_containers(self, device_id: str) -> DeviceInventoryContainers:
        return await self._request_model(
            DeviceInventoryContainers, "GET", self.scoped_path("/devices/{}/inventory/containers", device_id),
            action="list device inventory containers",
        )

    async def list_inventory_system_packages(self, device_id: str) -> DeviceInventoryPackages:
        return await self._request_model(
            DeviceInventoryPackages, "GET", self.scoped_path("/devices/{}/inventory/system", device_id),
            action="list device inventory system packages",
        )

    async def list_inventory_deployment_packages(self, device_id: str) -> DeviceInventoryDeploymentPackages:
        return await self._request_model(
            DeviceInventoryDeploymentPackages, "GET", self.scoped_path("/devices/{}/inventory/packages", device_id),
            action="list device inventory deployment packages",
        )

    async def control_inventory_item(self, device_id: str, kind: str, operation: str, item: dict[str, Any]) -> None:
        """Start or stop an inventory bundle or container.

        ``kind`` is ``bundles`` or ``containers``; ``operation`` is ``start`` or ``stop``.
        """
        if kind not in ("bundles", "containers"):
            raise ValueError(f"unknown inventory kind: {kind}")
        if operation not in ("start", "stop"):
            raise ValueError(f"unknown inventory operation: {operation}")
        logger.info("Inventory %s %s on device %s", kind, operation, device_id)
        path = self.scoped_path(f"/devices/{{}}/inventory/{kind}/_{operation}", device_id)
        await self.execute("POST", path, action=f"{operation} device inventory {kind.rstrip('s')}", body=item)

    async def list_device_snapshots(self, device_id: str) -> DeviceSnapshots:
        return await self._request_model(
            DeviceSnapshots, "GET", self.scoped_path("/devices/{}/snapshots", device_id),
            action="list device snapshots",
        )

    async def read_device_snapshot(self, device_id: str, snapshot_id: str) -> DeviceConfiguration:
        return await self._request_model(
            DeviceConfiguration, "GET", self.scoped_path("/devices/{}/snapshots/{}", device_id, snapshot_id),
            action="read device snapshot configurations",
        )

    async def rollback_device_snapshot(self, device_id: str, snapshot_id: str) -> None:
        logger.info("Rolling back device %s to snapshot %s", device_id, snapshot_id)
        await self.execute(
            "POST", self.scoped_path("/devices/{}/snapshots/{}/_rollback", device_id, snapshot_id),
            action="rollback device snapshot",
        )

    async def execute_device_command(self, device_id: str, command: dict[str, Any]) -> Any:
        logger.info("Executing command on device %s", device_id)
        return await self._payload(
            "POST", self.scoped_path("/devices/{}/commands/_execute", device_id),
            action="execute device command", body=command,
        )

    async def list_device_assets(self, device_id: str) -> Any:
        return await self._payload("GET", self.scoped_path("/devices/{}/assets", device_id), action="list device assets")

    async def read_device_assets(self, device_id: str, request: dict[str, Any]) -> Any:
        return await self._payload(
            "POST", self.scoped_path("/devices/{}/assets/_read", device_id), action="read device assets", body=request
        )

    async def write_device_assets(self, device_id: str, values: dict[str, Any]) -> Any:
        logger.info("Writing assets on device %s", device_id)
        return await self._payload(
            "POST", self.scoped_path("/devices/{}/assets/_write", device_id), action="write device assets", body=values
        )

    async def list_device_bundles(self, device_id: str) -> Any:
        return await self._payload("GET", self.scoped_path("/devices/{}/bundles", device_id), action="list device bundles")

    async def control_device_bundle(self, device_id: str, bundle_id: str, operation: str) -> None:
        if operation not in ("start", "stop"):
            raise ValueError(f"unknown bundle operation: {operation}")
        logger.info("Bundle %s %s on device %s", bundle_id, operation, device_id)
        await self.execute(
            "POST", self.scoped_path(f"/devices/{{}}/bundles/{{}}/_{operation}", device_id, bundle_id),
            action=f"{operation} device bundle",
        )
