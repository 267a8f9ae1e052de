"""Core types: canonical readings, dynolog records and metric points."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field


class ValueType(enum.Enum):
    """Numeric type of a gauge."""

    INT = "int"
    FLOAT = "float"


@dataclass(frozen=True)
class GPUReading:
    """Immutable, source-agnostic reading for one device at one point in time.

    ``utilization_percent`` is an integer percent for snapshot sources and a
    float (ratio scaled by 100) for the dynolog stream.
    """

    device_id: str
    device_name: str
    memory_used_bytes: int
    utilization_percent: int | float


@dataclass(frozen=True)
class DynologRecord:
    """One ``data = {...}`` payload emitted by dynolog's GPU monitor."""

    dcgm_error: int = 0
    device: int = 0
    fp16_active: float = 0.0
    fp32_active: float = 0.0
    fp64_active: float = 0.0
    gpu_frequency_mhz: float = 0.0
    gpu_memory_utilization: float = 0.0
    gpu_power_draw: float = 0.0
    graphics_engine_active_ratio: float = 0.0
    hbm_mem_bw_util: float = 0.0
    nvlink_rx_bytes: int = 0
    nvlink_tx_bytes: int = 0
    pcie_rx_bytes: int = 0
    pcie_tx_bytes: int = 0
    sm_active_ratio: float = 0.0
    sm_occupancy: float = 0.0
    tensorcore_active: float = 0.0


AttributeValue = str | int | float | bool


@dataclass(frozen=True)
class MetricPoint:
    """A single gauge observation, ready for export."""

    name: str
    value: int | float
    time_unix_nano: int
    value_type: ValueType = ValueType.INT
    unit: str = ""
    description: str = ""
    attributes: tuple[tuple[str, AttributeValue], ...] = field(default_factory=tuple)
