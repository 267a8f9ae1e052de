"""Periodic reader: the timer that drives refresh cycles and exports."""

from __future__ import annotations

import logging
import threading
from typing import Protocol

from gpumon._context import CollectContext
from gpumon._registry import GaugeRegistry
from gpumon._types import MetricPoint

logger = logging.getLogger("gpumon.reader")


class MetricExporter(Protocol):
    def export(self, points: list[MetricPoint]) -> None: ...

    def shutdown(self) -> None: ...


class PeriodicReader:
    """Daemon thread that collects the registry and exports on a fixed interval.

    Cycles run one at a time on the worker thread, so no collector ever sees
    two concurrent collect calls from the reader.
    """

    def __init__(
        self,
        registry: GaugeRegistry,
        exporter: MetricExporter,
        *,
        interval_ms: int = 15000,
        collect_timeout_ms: int | None = None,
        shutdown_timeout_ms: int = 5000,
    ) -> None:
        self._registry = registry
        self._exporter = exporter
        self._interval_s = interval_ms / 1000.0
        self._collect_timeout_s = (
            collect_timeout_ms / 1000.0 if collect_timeout_ms is not None else self._interval_s
        )
        self._shutdown_timeout_s = shutdown_timeout_ms / 1000.0
        self._stop_event = threading.Event()
        self._cycle_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self.cycles = 0

    def start(self) -> None:
        """Start the collection loop."""
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="gpumon-reader", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Signal stop, cancel any in-flight collect, and perform a final flush."""
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=self._collect_timeout_s + self._shutdown_timeout_s)
        if self._thread.is_alive():
            logger.warning("reader thread did not stop in time; skipping final flush")
            self._thread = None
            return
        self._thread = None
        self._cycle(CollectContext.with_timeout(self._shutdown_timeout_s))

    def force_flush(self) -> None:
        """Run one cycle on the caller's thread."""
        self._cycle(CollectContext.with_timeout(self._collect_timeout_s))

    def _run(self) -> None:
        while not self._stop_event.wait(timeout=self._interval_s):
            # The stop event doubles as the cancellation signal for this tick.
            self._cycle(CollectContext.with_timeout(self._collect_timeout_s, cancel=self._stop_event))

    def _cycle(self, ctx: CollectContext) -> None:
        with self._cycle_lock:
            try:
                points = self._registry.collect(ctx)
                if points:
                    self._exporter.export(points)
                self.cycles += 1
            except Exception:  # noqa: BLE001
                logger.exception("refresh cycle failed")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
