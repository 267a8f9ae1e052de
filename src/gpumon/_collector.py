"""Source collector protocol and shared subprocess helpers."""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from gpumon._context import CollectContext
from gpumon._errors import CommandError
from gpumon._types import GPUReading

logger = logging.getLogger("gpumon.collector")

# Upper bound on how long a cancelled collect can keep blocking.
WAIT_SLICE_S = 0.05


@runtime_checkable
class SourceCollector(Protocol):
    """Structural protocol shared by every GPU data source."""

    name: str

    def start(self) -> None: ...

    def collect(self, ctx: CollectContext) -> list[GPUReading]: ...

    def close(self) -> None: ...


def terminate_process(proc: subprocess.Popen[str], *, timeout_s: float = 2.0) -> int | None:
    """Terminate ``proc`` and reap it, escalating to SIGKILL after ``timeout_s``."""
    if proc.poll() is None:
        proc.terminate()
        try:
            proc.wait(timeout=timeout_s)
        except subprocess.TimeoutExpired:
            logger.warning("pid %d ignored SIGTERM, killing", proc.pid)
            proc.kill()
            proc.wait()
    return proc.returncode


def run_command(argv: Sequence[str], ctx: CollectContext) -> str:
    """Run ``argv`` to completion and return its stdout.

    The child is killed and reaped as soon as ``ctx`` is cancelled or its
    deadline passes, in which case ``CollectionCancelled`` is raised.
    """
    command = argv[0] if argv else "<empty>"
    ctx.check(command)
    if not argv:
        raise CommandError(command, "cannot start: empty command")
    try:
        proc = subprocess.Popen(  # noqa: S603
            list(argv),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            encoding="utf-8",
            errors="replace",
        )
    except OSError as exc:
        raise CommandError(command, f"cannot start: {exc}") from exc

    try:
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=ctx.wait_slice(WAIT_SLICE_S))
                break
            except subprocess.TimeoutExpired:
                if ctx.done():
                    proc.kill()
                    proc.communicate()
                    ctx.check(command)
    except BaseException:
        if proc.poll() is None:
            proc.kill()
            proc.wait()
        raise

    if proc.returncode != 0:
        detail = stderr.strip() or "no stderr output"
        raise CommandError(
            command, f"exited with status {proc.returncode}: {detail}", returncode=proc.returncode
        )
    return stdout
