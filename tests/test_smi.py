"""Tests for the nvidia-smi snapshot collector: fake commands, no GPU required."""

from __future__ import annotations

import sys
import threading
import time

import pytest

from gpumon._collector import SourceCollector, run_command
from gpumon._context import CollectContext
from gpumon._errors import CollectionCancelled, CommandError, ParseError
from gpumon._smi import NvidiaSMICollector, parse_smi_xml
from gpumon._types import GPUReading


def _gpu_xml(gpu_id: str, name: str, used: str, util: str) -> str:
    return (
        f'<gpu id="{gpu_id}">'
        f"<product_name>{name}</product_name>"
        f"<fb_memory_usage><total>81559 MiB</total><used>{used}</used></fb_memory_usage>"
        f"<utilization><gpu_util>{util}</gpu_util><memory_util>0 %</memory_util></utilization>"
        f"</gpu>"
    )


def _smi_document(*gpus: str) -> str:
    return (
        '<?xml version="1.0" ?>'
        "<nvidia_smi_log><driver_version>550.54.15</driver_version>"
        f"<attached_gpus>{len(gpus)}</attached_gpus>{''.join(gpus)}</nvidia_smi_log>"
    )


def _echo_command(document: str) -> list[str]:
    """A stand-in for ``nvidia-smi -q -x`` that prints ``document``."""
    return [sys.executable, "-c", "import sys; sys.stdout.write(sys.argv[1])", document]


def _script(code: str) -> list[str]:
    return [sys.executable, "-c", code]


class TestParseSmiXml:
    def test_single_device(self) -> None:
        devices = parse_smi_xml(_smi_document(_gpu_xml("0", "Test-GPU", "1024 MiB", "42%")))
        assert len(devices) == 1
        assert devices[0].id == "0"
        assert devices[0].product_name == "Test-GPU"
        assert devices[0].memory_used == "1024 MiB"
        assert devices[0].gpu_util == "42%"

    def test_no_devices(self) -> None:
        assert parse_smi_xml(_smi_document()) == []

    def test_missing_elements_are_empty(self) -> None:
        devices = parse_smi_xml('<nvidia_smi_log><gpu id="x"/></nvidia_smi_log>')
        assert devices[0].product_name == ""
        assert devices[0].memory_used == ""
        assert devices[0].gpu_util == ""

    def test_malformed_document(self) -> None:
        with pytest.raises(ParseError):
            parse_smi_xml("<nvidia_smi_log><gpu>")

    def test_empty_document(self) -> None:
        with pytest.raises(ParseError):
            parse_smi_xml("")


class TestNvidiaSMICollector:
    def test_satisfies_protocol(self) -> None:
        assert isinstance(NvidiaSMICollector(), SourceCollector)

    def test_single_device_reading(self) -> None:
        doc = _smi_document(_gpu_xml("0", "Test-GPU", "1024 MiB", "42%"))
        collector = NvidiaSMICollector(_echo_command(doc))
        readings = collector.collect(CollectContext.with_timeout(10.0))
        assert readings == [GPUReading(
            device_id="0",
            device_name="Test-GPU",
            memory_used_bytes=1073741824,
            utilization_percent=42,
        )]

    def test_multiple_devices(self) -> None:
        doc = _smi_document(
            _gpu_xml("00000000:01:00.0", "NVIDIA H100 80GB HBM3", "40960 MiB", "85 %"),
            _gpu_xml("00000000:02:00.0", "NVIDIA H100 80GB HBM3", "512 MiB", "3 %"),
        )
        collector = NvidiaSMICollector(_echo_command(doc))
        readings = collector.collect(CollectContext.with_timeout(10.0))
        assert [r.device_id for r in readings] == ["00000000:01:00.0", "00000000:02:00.0"]
        assert readings[0].memory_used_bytes == 40960 * 1024 * 1024
        assert readings[1].utilization_percent == 3

    def test_no_devices_is_not_an_error(self) -> None:
        collector = NvidiaSMICollector(_echo_command(_smi_document()))
        assert collector.collect(CollectContext.with_timeout(10.0)) == []

    def test_bad_field_defaults_to_zero(self) -> None:
        doc = _smi_document(_gpu_xml("0", "Test-GPU", "N/A", "[Not Supported]"))
        collector = NvidiaSMICollector(_echo_command(doc))
        (reading,) = collector.collect(CollectContext.with_timeout(10.0))
        assert reading.memory_used_bytes == 0
        assert reading.utilization_percent == 0
        assert reading.device_name == "Test-GPU"
        assert collector.conversion_errors["memory_used"] == 1
        assert collector.conversion_errors["gpu_util"] == 1

    def test_one_bad_field_keeps_the_other(self) -> None:
        doc = _smi_document(_gpu_xml("0", "Test-GPU", "2048 MiB", "N/A"))
        collector = NvidiaSMICollector(_echo_command(doc))
        (reading,) = collector.collect(CollectContext.with_timeout(10.0))
        assert reading.memory_used_bytes == 2048 * 1024 * 1024
        assert reading.utilization_percent == 0

    def test_undecodable_bytes_are_replaced(self) -> None:
        doc = _smi_document(_gpu_xml("0", "GPU \udcff", "1024 MiB", "42%"))
        raw = doc.encode("utf-8", errors="surrogateescape")
        collector = NvidiaSMICollector(
            _script(f"import sys; sys.stdout.buffer.write({raw!r})")
        )
        (reading,) = collector.collect(CollectContext.with_timeout(10.0))
        assert reading.device_name == "GPU \ufffd"
        assert reading.memory_used_bytes == 1024 * 1024 * 1024

    def test_malformed_output_is_parse_error(self) -> None:
        collector = NvidiaSMICollector(_echo_command("this is not xml"))
        with pytest.raises(ParseError):
            collector.collect(CollectContext.with_timeout(10.0))

    def test_nonzero_exit_is_command_error(self) -> None:
        collector = NvidiaSMICollector(
            _script("import sys; sys.stderr.write('NVIDIA-SMI has failed'); sys.exit(9)")
        )
        with pytest.raises(CommandError) as excinfo:
            collector.collect(CollectContext.with_timeout(10.0))
        assert excinfo.value.returncode == 9
        assert "NVIDIA-SMI has failed" in str(excinfo.value)

    def test_missing_binary_is_command_error(self) -> None:
        collector = NvidiaSMICollector(["/nonexistent/nvidia-smi", "-q", "-x"])
        with pytest.raises(CommandError, match="cannot start"):
            collector.collect(CollectContext.with_timeout(10.0))

    def test_context_manager_is_noop(self) -> None:
        doc = _smi_document(_gpu_xml("0", "g", "1 MiB", "1 %"))
        with NvidiaSMICollector(_echo_command(doc)) as collector:
            assert len(collector.collect(CollectContext.with_timeout(10.0))) == 1


class TestCancellation:
    def test_cancel_in_flight_returns_promptly(self) -> None:
        collector = NvidiaSMICollector(_script("import time; time.sleep(30)"))
        ctx = CollectContext()
        timer = threading.Timer(0.2, ctx.cancel)
        timer.start()
        start = time.monotonic()
        try:
            with pytest.raises(CollectionCancelled, match="cancelled"):
                collector.collect(ctx)
        finally:
            timer.cancel()
        assert time.monotonic() - start < 5.0

    def test_deadline_in_flight(self) -> None:
        collector = NvidiaSMICollector(_script("import time; time.sleep(30)"))
        start = time.monotonic()
        with pytest.raises(CollectionCancelled, match="deadline"):
            collector.collect(CollectContext.with_timeout(0.2))
        assert time.monotonic() - start < 5.0

    def test_empty_command(self) -> None:
        with pytest.raises(CommandError, match="empty command"):
            run_command([], CollectContext())

    def test_already_cancelled_does_not_spawn(self) -> None:
        ctx = CollectContext()
        ctx.cancel()
        with pytest.raises(CollectionCancelled):
            run_command(["/nonexistent/binary"], ctx)
