"""Exception hierarchy.

Launch errors are fatal to a run. Collection errors are transient: the
refresh cycle that raised one is skipped and the next tick retries.
"""

from __future__ import annotations


class GPUMonError(Exception):
    """Base class for all gpumon errors."""


class LaunchError(GPUMonError):
    """A collector could not be started."""


class CollectionError(GPUMonError):
    """A single poll of a collector failed."""


class CommandError(CollectionError):
    """The external query command could not run or exited non-zero."""

    def __init__(self, command: str, message: str, *, returncode: int | None = None) -> None:
        super().__init__(f"{command}: {message}")
        self.command = command
        self.returncode = returncode


class ParseError(CollectionError):
    """The source produced a document or payload that could not be parsed."""


class StreamEndedError(CollectionError):
    """The monitored stream closed before a matching line was found."""


class CollectionCancelled(CollectionError):
    """The collect context was cancelled or its deadline passed."""


class ConversionError(ValueError):
    """A single field could not be converted to its canonical numeric type."""
