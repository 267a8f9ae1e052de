"""Snapshot collector backed by ``nvidia-smi -q -x``."""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass
from types import TracebackType

from gpumon._collector import run_command
from gpumon._context import CollectContext
from gpumon._errors import ParseError
from gpumon._normalize import best_effort, parse_memory, parse_percentage
from gpumon._types import GPUReading

logger = logging.getLogger("gpumon.smi")


@dataclass(frozen=True)
class _SMIDevice:
    """Raw per-GPU fields as they appear in the XML document."""

    id: str
    product_name: str
    memory_used: str
    gpu_util: str


def _text(node: ET.Element, path: str) -> str:
    found = node.find(path)
    if found is None or found.text is None:
        return ""
    return found.text.strip()


def parse_smi_xml(document: str) -> list[_SMIDevice]:
    """Extract the ``<gpu>`` entries from an ``nvidia-smi -q -x`` document."""
    try:
        root = ET.fromstring(document)
    except ET.ParseError as exc:
        raise ParseError(f"nvidia-smi: malformed XML: {exc}") from exc
    return [
        _SMIDevice(
            id=gpu.get("id", ""),
            product_name=_text(gpu, "product_name"),
            memory_used=_text(gpu, "fb_memory_usage/used"),
            gpu_util=_text(gpu, "utilization/gpu_util"),
        )
        for gpu in root.findall("gpu")
    ]


class NvidiaSMICollector:
    """Spawns one ``nvidia-smi`` process per collect. Holds no state between polls."""

    name = "nvidia-smi"

    def __init__(self, command: Sequence[str] = ("nvidia-smi", "-q", "-x")) -> None:
        self._command = tuple(command)
        self.conversion_errors: Counter[str] = Counter()

    @property
    def command(self) -> tuple[str, ...]:
        return self._command

    def start(self) -> None:
        pass

    def close(self) -> None:
        pass

    def __enter__(self) -> NvidiaSMICollector:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    def collect(self, ctx: CollectContext) -> list[GPUReading]:
        logger.debug("Collecting nvidia-smi metrics")
        document = run_command(self._command, ctx)
        return [self._to_reading(dev) for dev in parse_smi_xml(document)]

    def _to_reading(self, dev: _SMIDevice) -> GPUReading:
        memory = best_effort(
            parse_memory, dev.memory_used,
            field="memory_used", source=self.name, device=dev.id,
            counter=self.conversion_errors,
        )
        util = best_effort(
            parse_percentage, dev.gpu_util,
            field="gpu_util", source=self.name, device=dev.id,
            counter=self.conversion_errors,
        )
        return GPUReading(
            device_id=dev.id,
            device_name=dev.product_name,
            memory_used_bytes=memory,
            utilization_percent=util,
        )
