"""Device health classification.

Pure functions over single devices and events: connection bucket, last-seen
resolution, staleness and critical-event detection. No I/O, no clock.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from .clock import as_utc
from .models import ConnectionStatus, Device, DeviceEvent, HealthBucket

CRITICAL_KEYWORDS = ("CRITICAL", "ERROR", "FAIL", "EXCEPTION")

_OFFLINE_STATUSES = {
    ConnectionStatus.DISCONNECTED.value,
    ConnectionStatus.MISSING.value,
    ConnectionStatus.NULL.value,
}


def connection_status(device: Device) -> str:
    """The device's connection status string, or '' when unknown."""
    if device.connection is not None and device.connection.status:
        return device.connection.status
    return ""


def bucket(device: Device) -> HealthBucket:
    status = connection_status(device)
    if status == ConnectionStatus.CONNECTED.value:
        return HealthBucket.ONLINE
    if status in _OFFLINE_STATUSES:
        return HealthBucket.OFFLINE
    return HealthBucket.UNKNOWN


def last_seen(device: Device) -> tuple[Optional[datetime], str]:
    """Most recent known activity of a device and the field it came from.

    Priority: lastEvent.receivedOn, lastEvent.sentOn, connection.modifiedOn,
    connection.createdOn. Returns (None, '') when none is set.
    """
    candidates = []
    if device.last_event is not None:
        candidates.append((device.last_event.received_on, "lastEvent.receivedOn"))
        candidates.append((device.last_event.sent_on, "lastEvent.sentOn"))
    if device.connection is not None:
        candidates.append((device.connection.modified_on, "connection.modifiedOn"))
        candidates.append((device.connection.created_on, "connection.createdOn"))

    for timestamp, source in candidates:
        if timestamp is not None:
            return as_utc(timestamp), source
    return None, ""


def is_stale(seen: Optional[datetime], cutoff: datetime) -> bool:
    # equal to cutoff is not stale
    return seen is not None and as_utc(seen) < as_utc(cutoff)


def is_critical(event: DeviceEvent) -> bool:
    for field in (event.action, event.response_code, event.event_message):
        upper = (field or "").upper()
        if upper and any(keyword in upper for keyword in CRITICAL_KEYWORDS):
            return True
    return False


def filter_critical_events(events: Iterable[DeviceEvent]) -> list[DeviceEvent]:
    return [event for event in events if is_critical(event)]


def device_label(device: Device) -> str:
    return device.client_id or device.id
