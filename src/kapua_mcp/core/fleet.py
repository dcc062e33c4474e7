"""Fleet-health aggregation.

One device listing, a deterministic classification pass, then a bounded
fan-out of per-device event lookups. A failed lookup degrades to a warning
for that device; only a failed device listing fails the report.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta

from .client import KapuaClient
from .clock import Clock, as_utc
from .errors import FleetHealthError, KapuaError
from .health import (
    bucket,
    connection_status,
    device_label,
    filter_critical_events,
    is_stale,
    last_seen,
)
from .models import (
    CriticalDevice,
    Device,
    FleetHealthConfig,
    FleetHealthReport,
    HealthBucket,
    StaleDevice,
)

logger = logging.getLogger(__name__)

EVENTS_PER_DEVICE = 20
MAX_CRITICAL_EVENTS_PER_DEVICE = 5


def _rfc3339(value: datetime) -> str:
    return as_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")


class FleetHealthAggregator:
    """Builds FleetHealthReports from a KapuaClient.

    Without an explicit clock the aggregator shares the client's session clock.
    """

    def __init__(self, client: KapuaClient, clock: Clock | None = None):
        self.client = client
        self.clock = clock or client.session.clock

    async def build(self, config: FleetHealthConfig | None = None) -> FleetHealthReport:
        """Build one fleet-health report.

        Raises:
            FleetHealthError: the device listing failed; no event lookups were made.
        """
        cfg = config or FleetHealthConfig()
        logger.info(
            "Building fleet health report (stale>%d min, critical>%d min, limit=%d)",
            cfg.stale_minutes, cfg.critical_minutes, cfg.device_limit,
        )

        try:
            devices = await self.client.list_devices({"limit": cfg.device_limit, "askTotalCount": True})
        except KapuaError as exc:
            raise FleetHealthError(f"failed to build fleet health: {exc}") from exc

        total_devices = devices.total_count if devices.total_count is not None else len(devices.items)

        now = self.clock()
        cutoff = now - timedelta(minutes=cfg.stale_minutes)
        critical_since = now - timedelta(minutes=cfg.critical_minutes)

        counts = {HealthBucket.ONLINE: 0, HealthBucket.OFFLINE: 0, HealthBucket.UNKNOWN: 0}
        stale_devices: list[StaleDevice] = []
        targets: list[Device] = []

        for device in devices.items:
            status = connection_status(device)
            counts[bucket(device)] += 1

            seen, source = last_seen(device)
            if is_stale(seen, cutoff):
                stale_devices.append(StaleDevice(
                    id=device.id,
                    client_id=device.client_id,
                    status=status,
                    last_seen=seen,
                    last_seen_source=source,
                ))

            if device.id:
                targets.append(device)

        critical_devices: list[CriticalDevice] = []
        warnings: list[str] = []
        semaphore = asyncio.Semaphore(cfg.event_concurrency)
        event_params = {
            "startDate": _rfc3339(critical_since),
            "limit": EVENTS_PER_DEVICE,
            "sortParam": "receivedOn",
            "sortDir": "DESCENDING",
        }

        # Shared lists are only appended from the event loop thread.
        async def inspect_device(device: Device) -> None:
            async with semaphore:
                try:
                    events = await self.client.list_device_events(device.id, event_params)
                except KapuaError as exc:
                    logger.warning("Event lookup failed for device %s: %s", device_label(device), exc)
                    warnings.append(f"device {device_label(device)}: {exc}")
                    return

            critical = filter_critical_events(events.items)
            if not critical:
                return
            critical_devices.append(CriticalDevice(
                id=device.id,
                client_id=device.client_id,
                status=connection_status(device),
                events=critical[:MAX_CRITICAL_EVENTS_PER_DEVICE],
            ))

        await asyncio.gather(*(inspect_device(device) for device in targets))

        return FleetHealthReport(
            generated_at=self.clock(),
            total_devices=total_devices,
            online=counts[HealthBucket.ONLINE],
            offline=counts[HealthBucket.OFFLINE],
            unknown=counts[HealthBucket.UNKNOWN],
            stale_since_minutes=cfg.stale_minutes,
            stale_devices=stale_devices,
            critical_lookback_minutes=cfg.critical_minutes,
            devices_with_critical_events=critical_devices,
            warnings=warnings,
        )
