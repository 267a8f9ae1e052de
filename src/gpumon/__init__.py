"""gpumon: GPU utilization telemetry exported over OTLP."""

from __future__ import annotations

from gpumon._collector import SourceCollector
from gpumon._config import GPUMonConfig, load_config
from gpumon._context import CollectContext
from gpumon._dynolog import DynologCollector
from gpumon._errors import (
    CollectionCancelled,
    CollectionError,
    CommandError,
    ConversionError,
    GPUMonError,
    LaunchError,
    ParseError,
    StreamEndedError,
)
from gpumon._exporter import OTLPMetricExporter
from gpumon._nvml import NvmlCollector
from gpumon._reader import PeriodicReader
from gpumon._registry import GaugeRegistry, register_collector
from gpumon._runner import create_collector, run
from gpumon._smi import NvidiaSMICollector
from gpumon._types import DynologRecord, GPUReading, MetricPoint, ValueType

__version__ = "0.1.0"

__all__ = [
    "CollectContext",
    "CollectionCancelled",
    "CollectionError",
    "CommandError",
    "ConversionError",
    "DynologCollector",
    "DynologRecord",
    "GPUMonConfig",
    "GPUMonError",
    "GPUReading",
    "GaugeRegistry",
    "LaunchError",
    "MetricPoint",
    "NvidiaSMICollector",
    "NvmlCollector",
    "OTLPMetricExporter",
    "ParseError",
    "PeriodicReader",
    "SourceCollector",
    "StreamEndedError",
    "ValueType",
    "__version__",
    "create_collector",
    "load_config",
    "register_collector",
    "run",
]
