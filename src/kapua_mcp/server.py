"""Kapua MCP Server.

FastMCP server exposing Kapua devices, device events, an aggregated
fleet-health snapshot and device management (logs, data messages,
configurations, inventory, snapshots, commands, assets, bundles).
Run: kapua-mcp-server
"""

from __future__ import annotations

import argparse
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable, Literal, Optional
from urllib.parse import urlsplit

from mcp.server.fastmcp import FastMCP
from mcp.server.lowlevel.helper_types import ReadResourceContents
from mcp.types import ToolAnnotations
from pydantic import AnyUrl

from .core.client import KapuaClient
from .core.config import KapuaSettings, load_settings
from .core.errors import ConfigError, KapuaError
from .core.fleet import FleetHealthAggregator
from .core.models import FleetHealthConfig

logger = logging.getLogger(__name__)

JSON_MIME = "application/json"
DEVICES_URI = "kapua://devices"
FLEET_HEALTH_URI = "kapua://fleet-health"
DEVICES_RESOURCE_LIMIT = 100

READ_ONLY = ToolAnnotations(readOnlyHint=True, destructiveHint=False, idempotentHint=True, openWorldHint=True)
WRITE = ToolAnnotations(readOnlyHint=False, destructiveHint=False, idempotentHint=False, openWorldHint=True)
DESTRUCTIVE = ToolAnnotations(readOnlyHint=False, destructiveHint=True, idempotentHint=False, openWorldHint=True)

_settings: Optional[KapuaSettings] = None
_client: Optional[KapuaClient] = None


def get_client() -> KapuaClient:
    if _client is None:
        raise RuntimeError("Kapua client is not initialised; the server lifespan has not started")
    return _client


def _require(value: str, name: str) -> None:
    if not value:
        raise ValueError(f"{name} is required")


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncIterator[None]:
    """Load settings, authenticate to Kapua once, close the client on shutdown."""
    global _client
    settings = _settings or load_settings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    client = KapuaClient(settings)
    try:
        await client.quick_authenticate()
    except KapuaError as exc:
        logger.error("Failed to authenticate to Kapua on startup: %s", exc)
        await client.aclose()
        raise
    logger.info("Successfully authenticated to Kapua")

    _client = client
    try:
        yield
    finally:
        _client = None
        await client.aclose()


class KapuaMCP(FastMCP):
    """FastMCP with query-string support on the fleet-health resource URI."""

    async def read_resource(self, uri: AnyUrl | str) -> Iterable[ReadResourceContents]:
        parts = urlsplit(str(uri))
        base = f"{parts.scheme}://{parts.netloc}{parts.path.rstrip('/')}"
        if base == FLEET_HEALTH_URI:
            config = FleetHealthConfig.from_query(parts.query)
            return [ReadResourceContents(content=await build_fleet_health_json(config), mime_type=JSON_MIME)]
        return await super().read_resource(uri)


mcp = KapuaMCP(
    "kapua-mcp-server",
    instructions="Eclipse Kapua IoT device management: list devices and device events, and read an aggregated fleet-health snapshot.",
    lifespan=lifespan,
)


async def build_fleet_health_json(config: FleetHealthConfig) -> str:
    report = await FleetHealthAggregator(get_client()).build(config)
    return report.to_json()


# ─── Resources ────────────────────────────────────────────────────────────────


@mcp.resource(DEVICES_URI, name="Kapua Devices", mime_type=JSON_MIME)
async def devices_resource() -> str:
    """Live list of Kapua IoT devices with current status and metadata."""
    result = await get_client().list_devices({"limit": DEVICES_RESOURCE_LIMIT})
    return json.dumps(
        {
            "total_count": len(result.items),
            "devices": [d.to_wire() for d in result.items],
            "last_updated": str(int(time.time())),
        },
        indent=2,
    )


@mcp.resource(FLEET_HEALTH_URI, name="Kapua Fleet Health", mime_type=JSON_MIME)
async def fleet_health_resource() -> str:
    """Aggregated fleet health snapshot: connection status, stale devices and recent critical events.

    Query parameters: staleMinutes, criticalMinutes, limit, eventConcurrency.
    """
    return await build_fleet_health_json(FleetHealthConfig())


# ─── Tools ────────────────────────────────────────────────────────────────────


@mcp.tool(annotations=READ_ONLY)
async def kapua_list_devices(
    client_id: str = "",
    status: str = "",
    match_term: str = "",
    limit: int = 50,
    offset: int = 0,
) -> dict:
    """List Kapua devices in the account scope.

    Args:
        client_id: Filter by client ID.
        status: Filter by connection status (CONNECTED/DISCONNECTED/MISSING/NULL).
        match_term: Search term matched against device fields.
        limit: Maximum number of devices to return. Default 50.
        offset: Number of devices to skip. Default 0.
    """
    result = await get_client().list_devices({
        "clientId": client_id,
        "status": status,
        "matchTerm": match_term,
        "limit": limit if limit > 0 else None,
        "offset": offset if offset > 0 else None,
    })
    return {
        "summary": f"Found {len(result.items)} devices.",
        "devices": result.to_wire(),
    }


@mcp.tool(annotations=READ_ONLY)
async def kapua_get_device(device_id: str) -> dict:
    """Get one Kapua device by ID.

    Args:
        device_id: The Kapua device ID.
    """
    _require(device_id, "device_id")
    device = await get_client().get_device(device_id)
    return device.to_wire()


@mcp.tool(annotations=READ_ONLY)
async def kapua_list_device_events(
    device_id: str,
    resource: str = "",
    start_date: str = "",
    end_date: str = "",
    sort_param: str = "",
    sort_dir: str = "",
    ask_total_count: bool = False,
    limit: int = 0,
    offset: int = 0,
) -> dict:
    """List events (device logs) for a Kapua device.

    Args:
        device_id: The Kapua device ID.
        resource: Filter events by resource (e.g. LOG).
        start_date: RFC3339 lower bound on event time.
        end_date: RFC3339 upper bound on event time.
        sort_param: Event field to sort by (e.g. receivedOn).
        sort_dir: ASCENDING or DESCENDING.
        ask_total_count: Request totalCount in the response.
        limit: Maximum number of events to return.
        offset: Number of events to skip.
    """
    _require(device_id, "device_id")
    result = await get_client().list_device_events(device_id, {
        "resource": resource,
        "startDate": start_date,
        "endDate": end_date,
        "sortParam": sort_param,
        "sortDir": sort_dir,
        "askTotalCount": True if ask_total_count else None,
        "limit": limit if limit > 0 else None,
        "offset": offset if offset > 0 else None,
    })
    summary = f"Found {len(result.items)} device events."
    if ask_total_count and result.total_count is not None:
        summary = f"Found {len(result.items)} device events (total count: {result.total_count})."
    return {"summary": summary, "events": result.to_wire()}


@mcp.tool(annotations=READ_ONLY)
async def kapua_fleet_health(
    stale_minutes: int = 60,
    critical_minutes: int = 60,
    limit: int = 200,
    event_concurrency: int = 5,
) -> dict:
    """Fleet health snapshot: online and offline counts, stale devices and recent critical events.

    Args:
        stale_minutes: Devices silent for longer than this are stale. Default 60.
        critical_minutes: Lookback window for critical events. Default 60.
        limit: Maximum number of devices inspected. Default 200.
        event_concurrency: Maximum parallel event lookups. Default 5.
    """
    config = FleetHealthConfig.from_overrides(stale_minutes, critical_minutes, limit, event_concurrency)
    report = await FleetHealthAggregator(get_client()).build(config)
    return report.to_wire()


@mcp.tool(annotations=READ_ONLY)
async def kapua_login_info() -> dict:
    """Authentication and authorization info of the server's Kapua session (user, scope, permissions)."""
    return await get_client().get_login_info()


# ─── Device management tools ──────────────────────────────────────────────────


@mcp.tool(annotations=WRITE)
async def kapua_update_device(device_id: str, device: dict[str, Any]) -> dict:
    """Update an existing Kapua device.

    Args:
        device_id: The Kapua device ID.
        device: Updated device payload (Kapua camelCase fields, including optlock).
    """
    _require(device_id, "device_id")
    updated = await get_client().update_device(device_id, device)
    return {"summary": f"Updated device {updated.client_id or device_id}.", "device": updated.to_wire()}


@mcp.tool(annotations=DESTRUCTIVE)
async def kapua_delete_device(device_id: str) -> dict:
    """Delete a Kapua device.

    Args:
        device_id: The Kapua device ID.
    """
    _require(device_id, "device_id")
    await get_client().delete_device(device_id)
    return {"summary": f"Deleted device {device_id}.", "status": "deleted"}


@mcp.tool(annotations=READ_ONLY)
async def kapua_list_device_logs(
    client_id: str = "",
    channel: str = "",
    strict_channel: Optional[bool] = None,
    start_date: str = "",
    end_date: str = "",
    log_property_name: str = "",
    log_property_type: str = "",
    log_property_min: str = "",
    log_property_max: str = "",
    sort_dir: str = "",
    limit: Optional[int] = None,
    offset: Optional[int] = None,
) -> dict:
    """List device logs stored in the account scope.

    Args:
        client_id: Filter by client ID.
        channel: Filter by channel.
        strict_channel: Restrict the search to the given channel only.
        start_date: Logs captured on or after this timestamp.
        end_date: Logs captured on or before this timestamp.
        log_property_name: Filter by log property name.
        log_property_type: Filter by log property type.
        log_property_min: Minimum log property value.
        log_property_max: Maximum log property value.
        sort_dir: ASCENDING or DESCENDING.
        limit: Maximum number of logs to return.
        offset: Number of logs to skip.
    """
    result = await get_client().list_device_logs({
        "clientId": client_id,
        "channel": channel,
        "strictChannel": strict_channel,
        "startDate": start_date,
        "endDate": end_date,
        "logPropertyName": log_property_name,
        "logPropertyType": log_property_type,
        "logPropertyMin": log_property_min,
        "logPropertyMax": log_property_max,
        "sortDir": sort_dir,
        "limit": limit,
        "offset": offset,
    })
    return {"summary": f"Found {len(result.items)} device logs.", "logs": result.to_wire()}


@mcp.tool(annotations=READ_ONLY)
async def kapua_list_data_messages(
    client_ids: Optional[list[str]] = None,
    channel: str = "",
    strict_channel: Optional[bool] = None,
    start_date: str = "",
    end_date: str = "",
    sort_dir: str = "",
    limit: Optional[int] = None,
    offset: Optional[int] = None,
) -> dict:
    """List telemetry data messages stored in the account scope.

    Args:
        client_ids: Filter by one or more client IDs.
        channel: Filter by channel.
        strict_channel: Restrict the search to the given channel only.
        start_date: Messages captured on or after this timestamp.
        end_date: Messages captured on or before this timestamp.
        sort_dir: ASC or DESC.
        limit: Maximum number of messages to return.
        offset: Number of messages to skip.
    """
    result = await get_client().list_data_messages({
        "clientId": client_ids or [],
        "channel": channel,
        "strictChannel": strict_channel,
        "startDate": start_date,
        "endDate": end_date,
        "sortDir": sort_dir,
        "limit": limit,
        "offset": offset,
    })
    return {"summary": f"Found {len(result.items)} data messages.", "messages": result.to_wire()}


@mcp.tool(annotations=READ_ONLY)
async def kapua_read_device_configurations(device_id: str, component_id: str = "") -> dict:
    """Read the component configurations of a device.

    Args:
        device_id: The Kapua device ID.
        component_id: Read only this component. Default: all components.
    """
    _require(device_id, "device_id")
    conf = await get_client().read_device_configurations(device_id, component_id or None)
    return {
        "summary": f"Retrieved {len(conf.configuration)} component configurations.",
        "configurations": conf.to_wire(),
    }


@mcp.tool(annotations=WRITE)
async def kapua_write_device_configurations(device_id: str, payload: dict[str, Any], component_id: str = "") -> dict:
    """Write component configurations to a device.

    Args:
        device_id: The Kapua device ID.
        payload: Configuration payload as Kapua expects it.
        component_id: Write only this component. Default: the full configuration set.
    """
    _require(device_id, "device_id")
    await get_client().write_device_configurations(device_id, payload, component_id or None)
    target = f"component {component_id}" if component_id else "configurations"
    return {"summary": f"Updated {target} for device {device_id}.", "status": "updated"}


@mcp.tool(annotations=READ_ONLY)
async def kapua_read_device_inventory(
    device_id: str,
    section: Literal["items", "bundles", "containers", "system", "packages"] = "items",
) -> dict:
    """Read a device inventory section.

    Args:
        device_id: The Kapua device ID.
        section: items (all inventory items), bundles, containers, system (system packages)
            or packages (deployment packages). Default items.
    """
    _require(device_id, "device_id")
    client = get_client()
    readers = {
        "items": client.read_device_inventory,
        "bundles": client.list_inventory_bundles,
        "containers": client.list_inventory_containers,
        "system": client.list_inventory_system_packages,
        "packages": client.list_inventory_deployment_packages,
    }
    if section not in readers:
        raise ValueError(f"unknown inventory section: {section}")
    inventory = await readers[section](device_id)
    return {"summary": f"Retrieved {section} inventory for device {device_id}.", "inventory": inventory.to_wire()}


@mcp.tool(annotations=WRITE)
async def kapua_control_inventory_item(
    device_id: str,
    kind: Literal["bundles", "containers"],
    operation: Literal["start", "stop"],
    item: dict[str, Any],
) -> dict:
    """Start or stop an inventory bundle or container on a device.

    Args:
        device_id: The Kapua device ID.
        kind: bundles or containers.
        operation: start or stop.
        item: Bundle or container descriptor from the inventory (name, version, ...).
    """
    _require(device_id, "device_id")
    await get_client().control_inventory_item(device_id, kind, operation, item)
    return {"summary": f"Requested {operation} of inventory {kind.rstrip('s')} on device {device_id}.", "status": operation}


@mcp.tool(annotations=READ_ONLY)
async def kapua_list_device_snapshots(device_id: str) -> dict:
    """List configuration snapshots stored on a device.

    Args:
        device_id: The Kapua device ID.
    """
    _require(device_id, "device_id")
    snapshots = await get_client().list_device_snapshots(device_id)
    return {"summary": f"Retrieved {len(snapshots.snapshot_id)} snapshots.", "snapshots": snapshots.to_wire()}


@mcp.tool(annotations=READ_ONLY)
async def kapua_read_device_snapshot(device_id: str, snapshot_id: str) -> dict:
    """Read the configurations captured in a device snapshot.

    Args:
        device_id: The Kapua device ID.
        snapshot_id: The snapshot ID.
    """
    _require(device_id, "device_id")
    _require(snapshot_id, "snapshot_id")
    conf = await get_client().read_device_snapshot(device_id, snapshot_id)
    return {
        "summary": f"Snapshot {snapshot_id} holds {len(conf.configuration)} component configurations.",
        "configurations": conf.to_wire(),
    }


@mcp.tool(annotations=DESTRUCTIVE)
async def kapua_rollback_device_snapshot(device_id: str, snapshot_id: str) -> dict:
    """Roll a device's configuration back to a snapshot.

    Args:
        device_id: The Kapua device ID.
        snapshot_id: The snapshot ID.
    """
    _require(device_id, "device_id")
    _require(snapshot_id, "snapshot_id")
    await get_client().rollback_device_snapshot(device_id, snapshot_id)
    return {"summary": f"Rolled back device {device_id} to snapshot {snapshot_id}.", "status": "rolled_back"}


@mcp.tool(annotations=WRITE)
async def kapua_execute_device_command(device_id: str, command: dict[str, Any]) -> dict:
    """Execute a shell command on a device.

    Args:
        device_id: The Kapua device ID.
        command: Command payload (command, arguments, timeout, ...).
    """
    _require(device_id, "device_id")
    output = await get_client().execute_device_command(device_id, command)
    return {"summary": f"Executed command on device {device_id}.", "output": output}


@mcp.tool(annotations=READ_ONLY)
async def kapua_list_device_assets(device_id: str) -> dict:
    """List the assets (field-bus channels) defined on a device.

    Args:
        device_id: The Kapua device ID.
    """
    _require(device_id, "device_id")
    return {"summary": f"Assets of device {device_id}.", "assets": await get_client().list_device_assets(device_id)}


@mcp.tool(annotations=READ_ONLY)
async def kapua_read_device_assets(device_id: str, request: dict[str, Any]) -> dict:
    """Read current channel values from device assets.

    Args:
        device_id: The Kapua device ID.
        request: Assets read request naming the assets and channels.
    """
    _require(device_id, "device_id")
    values = await get_client().read_device_assets(device_id, request)
    return {"summary": f"Read assets of device {device_id}.", "assets": values}


@mcp.tool(annotations=WRITE)
async def kapua_write_device_assets(device_id: str, values: dict[str, Any]) -> dict:
    """Write channel values to device assets.

    Args:
        device_id: The Kapua device ID.
        values: Assets write payload naming the assets, channels and values.
    """
    _require(device_id, "device_id")
    result = await get_client().write_device_assets(device_id, values)
    return {"summary": f"Wrote assets of device {device_id}.", "assets": result}


@mcp.tool(annotations=READ_ONLY)
async def kapua_list_device_bundles(device_id: str) -> dict:
    """List the OSGi bundles running on a device.

    Args:
        device_id: The Kapua device ID.
    """
    _require(device_id, "device_id")
    return {"summary": f"Bundles of device {device_id}.", "bundles": await get_client().list_device_bundles(device_id)}


@mcp.tool(annotations=WRITE)
async def kapua_control_device_bundle(device_id: str, bundle_id: str, operation: Literal["start", "stop"]) -> dict:
    """Start or stop an OSGi bundle on a device.

    Args:
        device_id: The Kapua device ID.
        bundle_id: The bundle ID.
        operation: start or stop.
    """
    _require(device_id, "device_id")
    _require(bundle_id, "bundle_id")
    await get_client().control_device_bundle(device_id, bundle_id, operation)
    return {"summary": f"Requested {operation} of bundle {bundle_id} on device {device_id}.", "status": operation}


def main():
    """Entry point for the CLI command."""
    global _settings
    parser = argparse.ArgumentParser(
        prog="kapua-mcp-server",
        description="Kapua MCP Server for Eclipse Kapua IoT Device Management.",
    )
    parser.add_argument("--transport", choices=["stdio", "streamable-http", "http"], default="stdio")
    parser.add_argument("--host", default=None, help="host to listen on (HTTP transport)")
    parser.add_argument("--port", type=int, default=None, help="port to listen on (HTTP transport)")
    args = parser.parse_args()

    try:
        _settings = load_settings()
    except ConfigError as exc:
        raise SystemExit(f"Failed to load configuration: {exc}") from exc

    mcp.settings.host = args.host or _settings.host
    mcp.settings.port = args.port or _settings.port
    transport = "streamable-http" if args.transport == "http" else args.transport
    mcp.run(transport=transport)


if __name__ == "__main__":
    main()
