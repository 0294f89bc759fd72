"""
Per-request telemetry records and fire-and-forget delivery.

One record is written for every request that got past URL validation,
successful or not:

- service / model: resolved routing labels ("unknown" when missing)
- status: HTTP status returned to the caller
- latency_ms: wall-clock time until the response was ready
- cache: HIT / MISS / N/A
- error: message of the failing stage, or "" on success

Writes run as background tasks; the request path never awaits them and
sink failures never reach the caller.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from typing import Optional, Protocol, Set

from redis.asyncio import Redis

from .logging_config import logger

telemetry_logger = logging.getLogger("apiproxy.telemetry")

_PENDING: Set[asyncio.Task] = set()


@dataclass(frozen=True)
class TelemetryRecord:
    service: str
    model: str
    status: int
    latency_ms: float
    cache: str
    error: str = ""


class TelemetrySink(Protocol):
    async def write(self, record: TelemetryRecord) -> None: ...


class LogTelemetrySink:
    async def write(self, record: TelemetryRecord) -> None:
        telemetry_logger.info(
            "service=%s model=%s status=%s latency_ms=%.1f cache=%s error=%s",
            record.service,
            record.model,
            record.status,
            record.latency_ms,
            record.cache,
            record.error or "-",
        )


class RedisListTelemetrySink:
    """
    Pushes JSON records onto a capped Redis list for offline analytics;
    newest first, trimmed to ``maxlen`` entries.
    """

    def __init__(self, redis: Redis, *, key: str, maxlen: int) -> None:
        self.redis = redis
        self.key = key
        self.maxlen = maxlen

    async def write(self, record: TelemetryRecord) -> None:
        await self.redis.lpush(self.key, json.dumps(asdict(record), ensure_ascii=False))
        await self.redis.ltrim(self.key, 0, self.maxlen - 1)


class FanoutTelemetrySink:
    def __init__(self, *sinks: TelemetrySink) -> None:
        self.sinks = sinks

    async def write(self, record: TelemetryRecord) -> None:
        for sink in self.sinks:
            try:
                await sink.write(record)
            except Exception as exc:
                logger.debug("telemetry sink %s skipped: %s", type(sink).__name__, exc)


async def _write_quietly(sink: TelemetrySink, record: TelemetryRecord) -> None:
    try:
        await sink.write(record)
    except Exception as exc:
        logger.debug("telemetry write skipped: %s", exc)


def emit_in_background(sink: Optional[TelemetrySink], record: TelemetryRecord) -> None:
    if sink is None:
        return
    task = asyncio.create_task(_write_quietly(sink, record))
    # Hold a reference until done; the loop only keeps weak ones.
    _PENDING.add(task)
    task.add_done_callback(_PENDING.discard)


async def drain_pending(timeout: Optional[float] = None) -> None:
    """
    Wait for outstanding telemetry writes (shutdown and tests).
    """
    loop = asyncio.get_running_loop()
    tasks = [task for task in _PENDING if task.get_loop() is loop]
    if not tasks:
        return
    await asyncio.wait(tasks, timeout=timeout)


__all__ = [
    "FanoutTelemetrySink",
    "LogTelemetrySink",
    "RedisListTelemetrySink",
    "TelemetryRecord",
    "TelemetrySink",
    "drain_pending",
    "emit_in_background",
]
