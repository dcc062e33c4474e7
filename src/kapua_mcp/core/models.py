"""Pydantic data models for Kapua wire objects, session credential and fleet-health report.

Kapua speaks camelCase JSON. Every model here accepts and emits camelCase
aliases while exposing snake_case attributes to Python callers.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from urllib.parse import parse_qs

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic.alias_generators import to_camel


class KapuaModel(BaseModel):
    """Base for every Kapua-facing model: camelCase on the wire, unknown fields ignored."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ConnectionStatus(str, Enum):
    """Device connection status reported by Kapua."""

    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    MISSING = "MISSING"
    NULL = "NULL"


class HealthBucket(str, Enum):
    """Fleet-health connection bucket."""

    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


# ─── Authentication ──────────────────────────────────────────────────────────


class UsernamePasswordCredentials(KapuaModel):
    username: str
    password: str
    authentication_code: Optional[str] = None
    trust_key: Optional[str] = None


class ApiKeyCredentials(KapuaModel):
    api_key: str


class JwtCredentials(KapuaModel):
    jwt: str


class RefreshTokenRequest(KapuaModel):
    refresh_token: str
    token_id: str


class AccessToken(KapuaModel):
    """Token pair returned by the authentication endpoints."""

    id: Optional[str] = None
    scope_id: str = ""
    user_id: Optional[str] = None
    token_id: str = ""
    expires_on: Optional[datetime] = None
    refresh_token: str = ""
    refresh_expires_on: Optional[datetime] = None
    invalidated_on: Optional[datetime] = None


class Credential(BaseModel):
    """The session credential held by the CredentialStore.

    Immutable: a refresh produces a new Credential that replaces the old one wholesale.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str = ""
    access_expiry: Optional[datetime] = None
    refresh_token: str = ""
    refresh_expiry: Optional[datetime] = None
    scope: str = ""

    @classmethod
    def from_access_token(cls, token: AccessToken) -> "Credential":
        return cls(
            access_token=token.token_id,
            access_expiry=token.expires_on,
            refresh_token=token.refresh_token,
            refresh_expiry=token.refresh_expires_on,
            scope=token.scope_id,
        )


class KapuaErrorBody(KapuaModel):
    """Structured error payload returned by Kapua on status >= 400."""

    code: Optional[str] = None
    message: Optional[str] = None
    details: Optional[str] = None


# ─── Devices ─────────────────────────────────────────────────────────────────


class DeviceConnection(KapuaModel):
    status: Optional[str] = None
    client_id: Optional[str] = None
    client_ip: Optional[str] = None
    created_on: Optional[datetime] = None
    modified_on: Optional[datetime] = None


class DeviceEvent(KapuaModel):
    """A single device event (Kapua device log entry)."""

    id: Optional[str] = None
    device_id: Optional[str] = None
    resource: Optional[str] = None
    action: str = ""
    response_code: str = ""
    event_message: str = ""
    sent_on: Optional[datetime] = None
    received_on: Optional[datetime] = None


class Device(KapuaModel):
    id: str = ""
    scope_id: Optional[str] = None
    client_id: str = ""
    display_name: Optional[str] = None
    status: Optional[str] = None
    serial_number: Optional[str] = None
    model_id: Optional[str] = None
    model_name: Optional[str] = None
    firmware_version: Optional[str] = None
    os_version: Optional[str] = None
    connection_ip: Optional[str] = None
    connection: Optional[DeviceConnection] = None
    last_event: Optional[DeviceEvent] = None


class DeviceListResult(KapuaModel):
    """One page of devices. ``total_count`` is None when the server did not report one."""

    limit_exceeded: bool = False
    size: Optional[int] = None
    total_count: Optional[int] = None
    items: list[Device] = Field(default_factory=list)


class DeviceEventListResult(KapuaModel):
    limit_exceeded: bool = False
    size: Optional[int] = None
    total_count: Optional[int] = None
    items: list[DeviceEvent] = Field(default_factory=list)


# ─── Device management ───────────────────────────────────────────────────────


class DeviceLog(KapuaModel):
    """A device log entry from the scope-wide ``/deviceLogs`` store."""

    type: Optional[str] = None
    scope_id: Optional[str] = None
    channel: Optional[dict[str, Any]] = None
    client_id: Optional[str] = None
    device_id: Optional[str] = None
    log_properties: Optional[dict[str, Any]] = None
    received_on: Optional[datetime] = None
    store_id: Optional[str] = None
    timestamp: Optional[datetime] = None


class DeviceLogListResult(KapuaModel):
    limit_exceeded: bool = False
    size: Optional[int] = None
    total_count: Optional[int] = None
    items: list[DeviceLog] = Field(default_factory=list)


class DataMessage(KapuaModel):
    """A telemetry message from the Kapua datastore."""

    datastore_id: Optional[str] = None
    scope_id: Optional[str] = None
    device_id: Optional[str] = None
    client_id: Optional[str] = None
    timestamp: Optional[datetime] = None
    received_on: Optional[datetime] = None
    sent_on: Optional[datetime] = None
    captured_on: Optional[datetime] = None
    position: Optional[dict[str, Any]] = None
    channel: Optional[dict[str, Any]] = None
    payload: Optional[dict[str, Any]] = None


class DataMessageListResult(KapuaModel):
    limit_exceeded: bool = False
    size: Optional[int] = None
    total_count: Optional[int] = None
    items: list[DataMessage] = Field(default_factory=list)


class DeviceConfiguration(KapuaModel):
    """Component configurations of a device (also the shape of a snapshot)."""

    configuration: list[dict[str, Any]] = Field(default_factory=list)


class DeviceSnapshots(KapuaModel):
    snapshot_id: list[dict[str, Any]] = Field(default_factory=list)


class InventoryItem(KapuaModel):
    name: Optional[str] = None
    version: Optional[str] = None
    item_type: Optional[str] = None


class InventoryBundle(KapuaModel):
    id: Optional[str] = None
    name: Optional[str] = None
    version: Optional[str] = None
    status: Optional[str] = None
    signed: Optional[bool] = None


class InventoryContainer(KapuaModel):
    name: Optional[str] = None
    version: Optional[str] = None
    container_type: Optional[str] = None
    state: Optional[str] = None


class InventoryPackage(KapuaModel):
    name: Optional[str] = None
    version: Optional[str] = None
    package_type: Optional[str] = None


class DeploymentPackage(KapuaModel):
    name: Optional[str] = None
    version: Optional[str] = None
    package_bundles: list[InventoryBundle] = Field(default_factory=list)


class DeviceInventory(KapuaModel):
    inventory_items: list[InventoryItem] = Field(default_factory=list)


class DeviceInventoryBundles(KapuaModel):
    inventory_bundles: list[InventoryBundle] = Field(default_factory=list)


class DeviceInventoryContainers(KapuaModel):
    inventory_containers: list[InventoryContainer] = Field(default_factory=list)


class DeviceInventoryPackages(KapuaModel):
    system_packages: list[InventoryPackage] = Field(default_factory=list)


class DeviceInventoryDeploymentPackages(KapuaModel):
    deployment_packages: list[DeploymentPackage] = Field(default_factory=list)
    system_packages: list[DeploymentPackage] = Field(default_factory=list)


# ─── Fleet health ────────────────────────────────────────────────────────────

DEFAULT_STALE_MINUTES = 60
DEFAULT_CRITICAL_MINUTES = 60
DEFAULT_DEVICE_LIMIT = 200
DEFAULT_EVENT_CONCURRENCY = 5


def parse_positive_int(value: Any, fallback: int) -> int:
    """Parse a positive integer override, falling back on empty, non-numeric or non-positive input."""
    if value is None or value == "":
        return fallback
    try:
        parsed = int(str(value).strip())
    except ValueError:
        return fallback
    return parsed if parsed > 0 else fallback


class FleetHealthConfig(BaseModel):
    """Windows and limits for one fleet-health report.

    Every field is a positive integer. Missing, non-numeric or non-positive
    input falls back to that field's default, whichever way the config is built.
    """

    stale_minutes: int = DEFAULT_STALE_MINUTES
    critical_minutes: int = DEFAULT_CRITICAL_MINUTES
    device_limit: int = DEFAULT_DEVICE_LIMIT
    event_concurrency: int = DEFAULT_EVENT_CONCURRENCY

    @field_validator("stale_minutes", "critical_minutes", "device_limit", "event_concurrency", mode="before")
    @classmethod
    def _positive_or_default(cls, value: Any, info: ValidationInfo) -> int:
        return parse_positive_int(value, cls.model_fields[info.field_name].default)

    @classmethod
    def from_overrides(
        cls,
        stale_minutes: Any = None,
        critical_minutes: Any = None,
        device_limit: Any = None,
        event_concurrency: Any = None,
    ) -> "FleetHealthConfig":
        """Build a config where each field independently falls back to its default."""
        return cls(
            stale_minutes=stale_minutes,
            critical_minutes=critical_minutes,
            device_limit=device_limit,
            event_concurrency=event_concurrency,
        )

    @classmethod
    def from_query(cls, query: str) -> "FleetHealthConfig":
        """Build a config from a resource URI query string (``staleMinutes=90&limit=5``)."""
        values = parse_qs(query or "", keep_blank_values=True)

        def first(name: str) -> Optional[str]:
            found = values.get(name)
            return found[0] if found else None

        return cls.from_overrides(
            stale_minutes=first("staleMinutes"),
            critical_minutes=first("criticalMinutes"),
            device_limit=first("limit"),
            event_concurrency=first("eventConcurrency"),
        )


class StaleDevice(KapuaModel):
    id: str
    client_id: str = ""
    status: str = ""
    last_seen: datetime
    last_seen_source: str


class CriticalDevice(KapuaModel):
    id: str
    client_id: str = ""
    status: str = ""
    events: list[DeviceEvent] = Field(default_factory=list)


class FleetHealthReport(KapuaModel):
    """Aggregate fleet snapshot. Built once per request and never mutated afterwards."""

    model_config = ConfigDict(frozen=True)

    generated_at: datetime
    total_devices: int
    online: int
    offline: int
    unknown: int
    stale_since_minutes: int
    stale_devices: list[StaleDevice] = Field(default_factory=list)
    critical_lookback_minutes: int
    devices_with_critical_events: list[CriticalDevice] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2, exclude_none=True)
