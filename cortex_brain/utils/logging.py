from __future__ import annotations

from datetime import datetime, timezone
import os
from typing import Any, MutableMapping

import aiofiles  # type: ignore
import aiofiles.os  # type: ignore
import aiosqlite  # type: ignore
import structlog
from opentelemetry import metrics
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk.resources import Resource

from ..config import settings

logger = structlog.get_logger()

# Set up optional OpenTelemetry metrics if an exporter URL is provided
OTEL_EVENT_COUNTER = None
otel_url = os.getenv("CORTEX_OTEL_EXPORTER_URL")
if otel_url:
    resource = Resource.create({"service.name": "cortex-brain"})
    reader = PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=otel_url, timeout=5))
    provider = MeterProvider(metric_readers=[reader], resource=resource)
    metrics.set_meter_provider(provider)
    meter = metrics.get_meter(__name__)
    OTEL_EVENT_COUNTER = meter.create_counter("cortex_log_events")


async def _rotate(path: str, max_bytes: int) -> None:
    if await aiofiles.os.path.exists(path):
        stat = await aiofiles.os.stat(path)
        if stat.st_size > max_bytes:
            ts = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
            await aiofiles.os.rename(path, f"{path}.{ts}")


def render_event(event: str, data: dict[str, Any]) -> str:
    """Return ``event`` and ``data`` as a timestamped JSON line."""
    record: MutableMapping[str, Any] = {"event": event, **data}
    record = structlog.processors.TimeStamper(key="timestamp", fmt="iso", utc=True)(logger, "info", record)
    return str(structlog.processors.JSONRenderer(default=str)(logger, "info", record))


async def log_event(event: str, data: dict[str, Any]) -> None:
    """Write a pipeline event to the event log as JSON."""
    json_line = render_event(event, data)

    if OTEL_EVENT_COUNTER is not None:
        OTEL_EVENT_COUNTER.add(1, {"event": event})

    db_path = os.getenv("CORTEX_EVENT_LOG_DB", settings.event_log_db or "")
    if db_path:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("CREATE TABLE IF NOT EXISTS events (json TEXT)")
            await db.execute("INSERT INTO events (json) VALUES (?)", (json_line,))
            await db.commit()
        return

    log_dir = os.getenv("CORTEX_EVENT_LOG_PATH", settings.event_log_path)
    os.makedirs(log_dir, exist_ok=True)
    max_bytes = int(os.getenv("CORTEX_EVENT_LOG_MAX_BYTES", str(settings.event_log_max_bytes)))
    path = os.path.join(log_dir, "events.log")
    await _rotate(path, max_bytes)
    async with aiofiles.open(path, "a") as f:
        await f.write(json_line + "\n")
