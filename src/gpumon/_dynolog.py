"""Stream-tail collector backed by a long-lived ``dynolog`` process.

dynolog writes free-form log lines to stderr; the GPU monitor's readings are
the lines of the form ``... data = {json}``. A daemon thread copies stderr
into a bounded queue and ``collect`` drains it, so every wait in ``collect``
honors the caller's ``CollectContext``.
"""

from __future__ import annotations

import json
import logging
import queue
import re
import subprocess
import threading
import time
from collections import Counter
from collections.abc import Callable, Sequence
from dataclasses import fields
from types import TracebackType
from typing import IO, Any

from gpumon._collector import WAIT_SLICE_S, terminate_process
from gpumon._context import CollectContext
from gpumon._errors import CollectionError, LaunchError, ParseError, StreamEndedError
from gpumon._normalize import best_effort, parse_json_int, parse_json_number
from gpumon._types import DynologRecord, GPUReading

logger = logging.getLogger("gpumon.dynolog")
stream_logger = logging.getLogger("gpumon.dynolog.stream")

DATA_LINE = re.compile(r"data\s*=\s*(\{.*)$")

DEVICE_NAME = "dynolog"

_EOF = object()

_PARSERS: dict[str, Callable[[Any], int | float]] = {
    f.name: parse_json_int if f.type in (int, "int") else parse_json_number
    for f in fields(DynologRecord)
}


def parse_record(payload: str, *, counter: Counter[str] | None = None) -> DynologRecord:
    """Parse the JSON object that follows ``data =``.

    Invalid JSON is a ``ParseError``. Fields that fail conversion default to
    zero and are counted in ``counter``; missing fields default to zero.
    """
    try:
        raw = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise ParseError(f"dynolog: malformed JSON payload: {exc}") from exc
    if not isinstance(raw, dict):
        raise ParseError(f"dynolog: payload is not a JSON object: {type(raw).__name__}")

    if counter is None:
        counter = Counter()
    device = str(raw.get("device", "?"))
    values: dict[str, int | float] = {}
    for name, parse in _PARSERS.items():
        if name in raw:
            values[name] = best_effort(
                parse, raw[name], field=name, source=DEVICE_NAME, device=device, counter=counter
            )
    return DynologRecord(**values)  # type: ignore[arg-type]


def to_reading(record: DynologRecord, *, memory_scale_bytes: int) -> GPUReading:
    """Map a dynolog record onto the canonical schema.

    Memory is the memory-utilization ratio scaled by ``memory_scale_bytes``;
    utilization is ``sm_active_ratio`` as a float percent.
    """
    return GPUReading(
        device_id=str(record.device),
        device_name=DEVICE_NAME,
        memory_used_bytes=max(0, int(record.gpu_memory_utilization * memory_scale_bytes)),
        utilization_percent=record.sm_active_ratio * 100.0,
    )


def _pump(stream: IO[str], lines: queue.Queue[object]) -> None:
    try:
        for line in stream:
            lines.put(line.rstrip("\r\n"))
    except (OSError, ValueError):
        if not stream.closed:
            logger.exception("dynolog stderr reader failed")
        else:
            # The pipe was closed under us by close().
            logger.debug("dynolog stderr reader stopped", exc_info=True)
    finally:
        lines.put(_EOF)


class DynologCollector:
    """Owns one dynolog process and a forward-only cursor into its stderr."""

    name = "dynolog"

    def __init__(
        self,
        command: Sequence[str],
        *,
        memory_scale_bytes: int = 80 * 1024**3,
        buffer_lines: int = 4096,
        echo_lines: bool = True,
        terminate_timeout_s: float = 2.0,
    ) -> None:
        self._command = tuple(command)
        self._memory_scale_bytes = memory_scale_bytes
        self._echo_lines = echo_lines
        self._terminate_timeout_s = terminate_timeout_s
        self._lines: queue.Queue[object] = queue.Queue(maxsize=buffer_lines)
        self._proc: subprocess.Popen[str] | None = None
        self._reader: threading.Thread | None = None
        self._collect_lock = threading.Lock()
        self._ended = False
        self._closed = False
        self.lines_consumed = 0
        self.conversion_errors: Counter[str] = Counter()

    def start(self) -> None:
        """Launch dynolog and attach the reader thread to its stderr."""
        if self._proc is not None:
            return
        if self._closed:
            raise LaunchError("dynolog: collector already closed")
        if not self._command:
            raise LaunchError("dynolog: empty command")
        try:
            proc = subprocess.Popen(  # noqa: S603
                list(self._command),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as exc:
            raise LaunchError(f"dynolog: cannot start {self._command[0]!r}: {exc}") from exc
        if proc.stderr is None:
            terminate_process(proc)
            raise LaunchError("dynolog: stderr pipe not attached")

        self._proc = proc
        self._reader = threading.Thread(
            target=_pump, args=(proc.stderr, self._lines), name="gpumon-dynolog-reader", daemon=True
        )
        self._reader.start()
        logger.info("dynolog started (pid %d)", proc.pid)

    def close(self) -> None:
        """Terminate and reap dynolog. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        proc, self._proc = self._proc, None
        if proc is None:
            return
        rc = terminate_process(proc, timeout_s=self._terminate_timeout_s)
        if self._stop_reader() and proc.stderr is not None:
            proc.stderr.close()
        logger.info("dynolog stopped (exit status %s)", rc)

    def _stop_reader(self) -> bool:
        """Wait for the reader thread to hit EOF, discarding unread lines."""
        reader, self._reader = self._reader, None
        if reader is None:
            return True
        deadline = time.monotonic() + self._terminate_timeout_s
        while reader.is_alive() and time.monotonic() < deadline:
            # The reader may be blocked on a full queue.
            try:
                while True:
                    self._lines.get_nowait()
            except queue.Empty:
                pass
            reader.join(timeout=WAIT_SLICE_S)
        if reader.is_alive():
            logger.warning("dynolog stderr reader still running after shutdown")
            return False
        return True

    def __enter__(self) -> DynologCollector:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    @property
    def command(self) -> tuple[str, ...]:
        return self._command

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    def collect(self, ctx: CollectContext) -> list[GPUReading]:
        return [self.canonical(self.collect_record(ctx))]

    def canonical(self, record: DynologRecord) -> GPUReading:
        return to_reading(record, memory_scale_bytes=self._memory_scale_bytes)

    def collect_record(self, ctx: CollectContext) -> DynologRecord:
        """Advance the cursor to the next ``data = {...}`` line and parse it."""
        with self._collect_lock:
            if self._closed:
                raise CollectionError("dynolog: collector closed")
            if self._proc is None:
                raise CollectionError("dynolog: collector not started")
            logger.debug("Collecting dynolog metrics")
            while True:
                line = self._next_line(ctx)
                match = DATA_LINE.search(line)
                if match is not None:
                    return parse_record(match.group(1), counter=self.conversion_errors)

    def _next_line(self, ctx: CollectContext) -> str:
        if self._ended:
            raise StreamEndedError(self._ended_message())
        while True:
            ctx.check("dynolog")
            try:
                item = self._lines.get(timeout=ctx.wait_slice(WAIT_SLICE_S))
            except queue.Empty:
                continue
            if item is _EOF:
                self._ended = True
                raise StreamEndedError(self._ended_message())
            assert isinstance(item, str)
            self.lines_consumed += 1
            if self._echo_lines:
                stream_logger.info("%s", item)
            return item

    def _ended_message(self) -> str:
        rc = self._proc.poll() if self._proc is not None else None
        if rc is None:
            return "dynolog: output stream ended before a data line was found"
        return f"dynolog: output stream ended (exit status {rc}) before a data line was found"
