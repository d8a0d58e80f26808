"""
ImmunOS — Metric Collection

Central metric collector. The immune core reports scan latency, verdicts,
fail-opens and repair outcomes here. Points are buffered and flushed to an
optional writer, in batches or on a timer.
"""

from __future__ import annotations

import asyncio
import contextlib
from datetime import UTC, datetime
from typing import Any, Protocol

import structlog

logger = structlog.get_logger()


class MetricWriter(Protocol):
    async def write_metrics(self, batch: list[dict[str, Any]]) -> None:
        ...


class MetricCollector:
    """
    Buffered metric sink.

    With no writer attached, points accumulate up to ``max_buffer`` and the
    oldest are discarded; ``recent()`` exposes what is held.
    """

    def __init__(
        self,
        writer: MetricWriter | None = None,
        flush_interval_ms: int = 1000,
        batch_size: int = 100,
        max_buffer: int = 10_000,
    ) -> None:
        self._writer = writer
        self._flush_interval = flush_interval_ms / 1000.0
        self._batch_size = batch_size
        self._max_buffer = max_buffer
        self._buffer: list[dict[str, Any]] = []
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._total_recorded: int = 0

    async def record(
        self,
        system: str,
        metric: str,
        value: float,
        labels: dict[str, str] | None = None,
    ) -> None:
        """Record a metric data point."""
        self._total_recorded += 1
        self._buffer.append({
            "time": datetime.now(UTC),
            "system": system,
            "metric": metric,
            "value": value,
            "labels": labels or {},
        })

        if self._writer is None:
            if len(self._buffer) > self._max_buffer:
                del self._buffer[: len(self._buffer) - self._max_buffer]
        elif len(self._buffer) >= self._batch_size:
            await self.flush()

    async def flush(self) -> None:
        """Flush the buffer to the writer."""
        if not self._buffer or self._writer is None:
            return

        batch = self._buffer[:]
        self._buffer.clear()

        try:
            await self._writer.write_metrics(batch)
        except Exception as e:
            logger.error("metric_flush_failed", error=str(e), batch_size=len(batch))
            # Put items back in buffer for retry (with size limit)
            self._buffer = batch[:self._batch_size] + self._buffer

    def recent(self, metric: str | None = None) -> list[dict[str, Any]]:
        """Buffered points, optionally filtered by metric name."""
        if metric is None:
            return list(self._buffer)
        return [p for p in self._buffer if p["metric"] == metric]

    @property
    def total_recorded(self) -> int:
        return self._total_recorded

    async def start_writer(self) -> None:
        """Start the periodic flush task."""
        self._running = True
        self._task = asyncio.create_task(self._flush_loop())
        logger.info("metric_writer_started", interval_ms=int(self._flush_interval * 1000))

    async def _flush_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._flush_interval)
            await self.flush()

    async def stop(self) -> None:
        """Stop the writer and flush remaining metrics."""
        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        await self.flush()
        logger.info("metric_writer_stopped")
