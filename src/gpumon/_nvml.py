"""Snapshot collector backed by NVML through pynvml."""

from __future__ import annotations

import logging
import warnings
from types import TracebackType
from typing import Any

from gpumon._context import CollectContext
from gpumon._errors import CollectionError, LaunchError
from gpumon._types import GPUReading

logger = logging.getLogger("gpumon.nvml")

# pynvml is optional; only the nvml-poll source needs it.
# Suppress deprecation warning from pynvml (recommends nvidia-ml-py).
warnings.filterwarnings("ignore", category=FutureWarning, message=".*pynvml.*deprecated.*")
try:
    import pynvml

    _HAS_PYNVML = True
except ImportError:
    pynvml = None  # type: ignore[assignment,unused-ignore]
    _HAS_PYNVML = False


def _as_str(value: Any) -> str:
    # Older pynvml releases return bytes.
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class NvmlCollector:
    """Queries every NVML device on each collect, without spawning a process."""

    name = "nvml"

    def __init__(self) -> None:
        if not _HAS_PYNVML:
            raise LaunchError("nvml: pynvml is not installed (pip install 'gpumon[nvml]')")
        self._initialized = False

    def start(self) -> None:
        if self._initialized:
            return
        assert pynvml is not None
        try:
            pynvml.nvmlInit()
        except pynvml.NVMLError as exc:
            raise LaunchError(f"nvml: initialization failed: {exc}") from exc
        try:
            count = pynvml.nvmlDeviceGetCount()
        except pynvml.NVMLError as exc:
            try:
                pynvml.nvmlShutdown()
            except pynvml.NVMLError:
                logger.debug("nvmlShutdown failed", exc_info=True)
            raise LaunchError(f"nvml: device enumeration failed: {exc}") from exc
        self._initialized = True
        logger.info("NVML initialized, %d device(s)", count)

    def close(self) -> None:
        if not self._initialized:
            return
        self._initialized = False
        assert pynvml is not None
        try:
            pynvml.nvmlShutdown()
        except pynvml.NVMLError:
            logger.debug("nvmlShutdown failed", exc_info=True)

    def __enter__(self) -> NvmlCollector:
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
        if not self._initialized:
            raise CollectionError("nvml: collector not started")
        assert pynvml is not None
        logger.debug("Collecting NVML metrics")
        readings: list[GPUReading] = []
        try:
            count = pynvml.nvmlDeviceGetCount()
            for i in range(count):
                ctx.check("nvml")
                handle = pynvml.nvmlDeviceGetHandleByIndex(i)
                mem = pynvml.nvmlDeviceGetMemoryInfo(handle)
                util = pynvml.nvmlDeviceGetUtilizationRates(handle)
                readings.append(GPUReading(
                    device_id=_as_str(pynvml.nvmlDeviceGetUUID(handle)),
                    device_name=_as_str(pynvml.nvmlDeviceGetName(handle)),
                    memory_used_bytes=int(mem.used),
                    utilization_percent=int(util.gpu),
                ))
        except pynvml.NVMLError as exc:
            raise CollectionError(f"nvml: device query failed: {exc}") from exc
        return readings
