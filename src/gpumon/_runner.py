"""Collection runner: owns every resource of one collection run."""

from __future__ import annotations

import contextlib
import logging
import threading

from gpumon._collector import SourceCollector
from gpumon._config import GPUMonConfig
from gpumon._dynolog import DynologCollector
from gpumon._exporter import OTLPMetricExporter
from gpumon._nvml import NvmlCollector
from gpumon._reader import MetricExporter, PeriodicReader
from gpumon._registry import GaugeRegistry, register_collector
from gpumon._smi import NvidiaSMICollector

logger = logging.getLogger("gpumon.runner")

SOURCES = ("nvidia-smi", "dynolog", "nvml")


def create_collector(source: str, config: GPUMonConfig) -> SourceCollector:
    """Construct (but do not start) the collector for ``source``."""
    if source == "nvidia-smi":
        return NvidiaSMICollector(config.smi_command)
    if source == "dynolog":
        return DynologCollector(
            config.resolved_dynolog_command(),
            memory_scale_bytes=config.dynolog_memory_scale_bytes,
            buffer_lines=config.stream_buffer_lines,
            echo_lines=config.echo_stream_lines,
        )
    if source == "nvml":
        return NvmlCollector()
    raise ValueError(f"unknown source {source!r}; expected one of {', '.join(SOURCES)}")


def create_exporter(config: GPUMonConfig) -> OTLPMetricExporter:
    return OTLPMetricExporter(
        config.endpoint,
        config.service_name,
        headers=config.headers(),
        insecure=config.insecure,
        timeout_s=config.export_timeout_ms / 1000.0,
    )


def run(
    config: GPUMonConfig,
    source: str,
    *,
    stop_event: threading.Event | None = None,
    exporter: MetricExporter | None = None,
    collector: SourceCollector | None = None,
) -> None:
    """Collect from ``source`` and export until ``stop_event`` is set.

    Raises ``LaunchError`` if the collector cannot start. On every exit path
    the reader is stopped with a final flush, then the collector is closed
    (reaping any subprocess), then the exporter is shut down.
    """
    if stop_event is None:
        stop_event = threading.Event()
    if collector is None:
        collector = create_collector(source, config)

    with contextlib.ExitStack() as stack:
        if exporter is None:
            exporter = create_exporter(config)
        stack.callback(exporter.shutdown)

        stack.enter_context(contextlib.closing(collector))
        collector.start()

        registry = GaugeRegistry()
        register_collector(registry, collector)

        reader = PeriodicReader(
            registry,
            exporter,
            interval_ms=config.export_interval_ms,
            collect_timeout_ms=config.collect_timeout_ms,
            shutdown_timeout_ms=config.shutdown_timeout_ms,
        )
        reader.start()
        stack.callback(reader.stop)

        logger.info(
            "%s metrics collection running (every %.1fs to %s); Ctrl+C to exit.",
            collector.name, config.export_interval_ms / 1000.0, config.endpoint,
        )
        stop_event.wait()
        logger.info("stopping %s metrics collection", collector.name)
