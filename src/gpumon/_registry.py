"""Gauge registry: instruments plus the refresh callbacks that feed them.

The periodic reader calls ``GaugeRegistry.collect`` once per export tick.
Each registered callback polls its collector and records observations through
an ``Observer``; a callback that raises skips its collector for that tick
without affecting the others.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass

from gpumon._collector import SourceCollector
from gpumon._context import CollectContext
from gpumon._dynolog import DynologCollector
from gpumon._types import AttributeValue, MetricPoint, ValueType

logger = logging.getLogger("gpumon.registry")


@dataclass(frozen=True)
class Gauge:
    """An observable gauge instrument."""

    name: str
    unit: str = ""
    description: str = ""
    value_type: ValueType = ValueType.INT


class Observer:
    """Records observations for one callback during one refresh cycle."""

    def __init__(self, gauges: Iterable[Gauge], time_unix_nano: int) -> None:
        self._allowed = {g.name: g for g in gauges}
        self._time_unix_nano = time_unix_nano
        self.points: list[MetricPoint] = []

    def observe(
        self,
        gauge: Gauge,
        value: int | float,
        attributes: Mapping[str, AttributeValue] | None = None,
    ) -> None:
        if self._allowed.get(gauge.name) != gauge:
            raise ValueError(f"gauge {gauge.name!r} was not registered with this callback")
        if isinstance(value, bool):
            raise TypeError(f"gauge {gauge.name!r}: boolean values are not supported")
        if gauge.value_type is ValueType.INT:
            if isinstance(value, float) and not value.is_integer():
                raise TypeError(f"gauge {gauge.name!r}: expected an integer, got {value!r}")
            value = int(value)
        else:
            value = float(value)
        self.points.append(MetricPoint(
            name=gauge.name,
            value=value,
            time_unix_nano=self._time_unix_nano,
            value_type=gauge.value_type,
            unit=gauge.unit,
            description=gauge.description,
            attributes=tuple(sorted((attributes or {}).items())),
        ))


RefreshCallback = Callable[[Observer, CollectContext], None]


@dataclass(frozen=True)
class _Registration:
    name: str
    callback: RefreshCallback
    gauges: tuple[Gauge, ...]


class GaugeRegistry:
    """Process-wide set of gauges and one refresh callback per collector."""

    def __init__(self) -> None:
        self._gauges: dict[str, Gauge] = {}
        self._callbacks: dict[str, _Registration] = {}
        self._lock = threading.Lock()
        self.last_errors: dict[str, Exception] = {}

    def create_gauge(
        self,
        name: str,
        *,
        unit: str = "",
        description: str = "",
        value_type: ValueType = ValueType.INT,
    ) -> Gauge:
        """Create a gauge, or return the existing one with the same definition."""
        gauge = Gauge(name=name, unit=unit, description=description, value_type=value_type)
        with self._lock:
            existing = self._gauges.get(name)
            if existing is not None:
                if existing != gauge:
                    raise ValueError(f"gauge {name!r} already registered with a different definition")
                return existing
            self._gauges[name] = gauge
        return gauge

    @property
    def gauges(self) -> dict[str, Gauge]:
        return dict(self._gauges)

    @property
    def callback_names(self) -> list[str]:
        return list(self._callbacks)

    def register_callback(
        self, name: str, callback: RefreshCallback, gauges: Iterable[Gauge]
    ) -> None:
        gauges = tuple(gauges)
        with self._lock:
            if name in self._callbacks:
                raise ValueError(f"a refresh callback is already registered for {name!r}")
            for g in gauges:
                if self._gauges.get(g.name) != g:
                    raise ValueError(f"gauge {g.name!r} does not belong to this registry")
            self._callbacks[name] = _Registration(name, callback, gauges)

    def unregister(self, name: str) -> None:
        with self._lock:
            self._callbacks.pop(name, None)

    def collect(self, ctx: CollectContext) -> list[MetricPoint]:
        """Run one refresh cycle and return every observation it produced."""
        with self._lock:
            registrations = list(self._callbacks.values())
        now = time.time_ns()
        points: list[MetricPoint] = []
        errors: dict[str, Exception] = {}
        for reg in registrations:
            observer = Observer(reg.gauges, now)
            try:
                reg.callback(observer, ctx)
            except Exception as exc:  # noqa: BLE001
                errors[reg.name] = exc
                logger.warning("refresh of %s failed: %s", reg.name, exc)
                logger.debug("refresh of %s failed", reg.name, exc_info=True)
                continue
            points.extend(observer.points)
        self.last_errors = errors
        return points


# --- collector wiring ---

MEMORY_USED = "gpu.memory_used_bytes"
UTILIZATION = "gpu.utilization_percent"
CONVERSION_ERRORS = "gpumon.conversion_errors"

_DYNOLOG_GAUGES: tuple[tuple[str, str, ValueType], ...] = (
    ("dcgm.error", "dcgm_error", ValueType.INT),
    ("dcgm.nvlink_rx_bytes", "nvlink_rx_bytes", ValueType.INT),
    ("dcgm.nvlink_tx_bytes", "nvlink_tx_bytes", ValueType.INT),
    ("dcgm.pcie_rx_bytes", "pcie_rx_bytes", ValueType.INT),
    ("dcgm.pcie_tx_bytes", "pcie_tx_bytes", ValueType.INT),
    ("dcgm.fp16_active_ratio", "fp16_active", ValueType.FLOAT),
    ("dcgm.fp32_active_ratio", "fp32_active", ValueType.FLOAT),
    ("dcgm.fp64_active_ratio", "fp64_active", ValueType.FLOAT),
    ("dcgm.gpu_frequency_mhz", "gpu_frequency_mhz", ValueType.FLOAT),
    ("dcgm.gpu_memory_util", "gpu_memory_utilization", ValueType.FLOAT),
    ("dcgm.gpu_power_draw_watts", "gpu_power_draw", ValueType.FLOAT),
    ("dcgm.graphics_engine_active_ratio", "graphics_engine_active_ratio", ValueType.FLOAT),
    ("dcgm.hbm_mem_bw_util", "hbm_mem_bw_util", ValueType.FLOAT),
    ("dcgm.sm_active_ratio", "sm_active_ratio", ValueType.FLOAT),
    ("dcgm.sm_occupancy_ratio", "sm_occupancy", ValueType.FLOAT),
    ("dcgm.tensorcore_active_ratio", "tensorcore_active", ValueType.FLOAT),
)


def _canonical_gauges(
    registry: GaugeRegistry, utilization_type: ValueType
) -> tuple[Gauge, Gauge, Gauge]:
    mem = registry.create_gauge(
        MEMORY_USED, unit="By", description="GPU memory in use",
    )
    util = registry.create_gauge(
        UTILIZATION, unit="%", description="GPU compute utilization",
        value_type=utilization_type,
    )
    errors = registry.create_gauge(
        CONVERSION_ERRORS, unit="{error}",
        description="Fields defaulted to zero because they failed to parse",
    )
    return mem, util, errors


def _observe_conversion_errors(
    observer: Observer, gauge: Gauge, collector: SourceCollector
) -> None:
    counter = getattr(collector, "conversion_errors", None)
    if counter is not None:
        observer.observe(gauge, sum(counter.values()), {"collector": collector.name})


def register_reading_gauges(registry: GaugeRegistry, collector: SourceCollector) -> None:
    """Wire a snapshot collector's canonical readings to the gpu.* gauges."""
    mem, util, errors = _canonical_gauges(registry, ValueType.INT)

    def refresh(observer: Observer, ctx: CollectContext) -> None:
        for reading in collector.collect(ctx):
            attrs = {"gpu_id": reading.device_id, "gpu_name": reading.device_name}
            observer.observe(mem, reading.memory_used_bytes, attrs)
            observer.observe(util, reading.utilization_percent, attrs)
        _observe_conversion_errors(observer, errors, collector)

    registry.register_callback(collector.name, refresh, (mem, util, errors))


def register_dynolog_gauges(registry: GaugeRegistry, collector: DynologCollector) -> None:
    """Wire the dynolog collector: canonical gauges plus one gauge per raw field."""
    mem, util, errors = _canonical_gauges(registry, ValueType.FLOAT)
    raw = [
        (registry.create_gauge(name, value_type=vtype), attr)
        for name, attr, vtype in _DYNOLOG_GAUGES
    ]

    def refresh(observer: Observer, ctx: CollectContext) -> None:
        record = collector.collect_record(ctx)
        reading = collector.canonical(record)
        attrs = {"gpu_id": reading.device_id}
        for gauge, attr in raw:
            observer.observe(gauge, getattr(record, attr), attrs)
        canonical_attrs = {"gpu_id": reading.device_id, "gpu_name": reading.device_name}
        observer.observe(mem, reading.memory_used_bytes, canonical_attrs)
        observer.observe(util, reading.utilization_percent, canonical_attrs)
        _observe_conversion_errors(observer, errors, collector)

    registry.register_callback(
        collector.name, refresh, (mem, util, errors, *(g for g, _ in raw))
    )


def register_collector(registry: GaugeRegistry, collector: SourceCollector) -> None:
    if isinstance(collector, DynologCollector):
        register_dynolog_gauges(registry, collector)
    else:
        register_reading_gauges(registry, collector)
