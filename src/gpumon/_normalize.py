"""Unit and format normalizers.

Pure conversions from the encodings the sources emit to canonical numbers.
Every parser raises ``ConversionError`` on bad input and nothing else.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from collections.abc import Callable
from typing import Any, TypeVar

from gpumon._errors import ConversionError

logger = logging.getLogger("gpumon.normalize")

T = TypeVar("T", int, float)

_MEMORY_UNITS: dict[str, int] = {
    "KiB": 1024,
    "MiB": 1024**2,
    "GiB": 1024**3,
}


def _parse_int(text: str, original: object) -> int:
    text = text.strip()
    # int() also accepts "1_000", which no source emits.
    if not text or "_" in text:
        raise ConversionError(f"not an integer: {original!r}")
    try:
        return int(text, 10)
    except ValueError:
        raise ConversionError(f"not an integer: {original!r}") from None


def parse_percentage(value: str) -> int:
    """Parse ``"42%"`` or ``"42 %"`` into ``42``."""
    if not isinstance(value, str):
        raise ConversionError(f"percentage must be a string: {value!r}")
    text = value.strip()
    if not text.endswith("%"):
        raise ConversionError(f"missing '%' suffix: {value!r}")
    return _parse_int(text[:-1], value)


def parse_memory(value: str) -> int:
    """Parse a unit-suffixed memory string (``"1024 MiB"``) into bytes."""
    if not isinstance(value, str):
        raise ConversionError(f"memory must be a string: {value!r}")
    text = value.strip()
    for suffix, scale in _MEMORY_UNITS.items():
        if text.endswith(suffix):
            n = _parse_int(text[: -len(suffix)], value)
            if n < 0:
                raise ConversionError(f"negative memory size: {value!r}")
            return n * scale
    raise ConversionError(f"missing memory unit suffix: {value!r}")


def parse_json_number(value: Any) -> float:
    """Parse a JSON number that may arrive bare (``0.5``) or quoted (``"0.5"``)."""
    if isinstance(value, bool):
        raise ConversionError(f"boolean is not a number: {value!r}")
    if isinstance(value, (int, float)):
        result = float(value)
    elif isinstance(value, str):
        try:
            result = float(value.strip())
        except ValueError:
            raise ConversionError(f"not a number: {value!r}") from None
    else:
        raise ConversionError(f"not a number: {value!r}")
    if not math.isfinite(result):
        raise ConversionError(f"not a finite number: {value!r}")
    return result


def parse_json_int(value: Any) -> int:
    """Parse a JSON integer, accepting integral floats and integer strings."""
    if isinstance(value, bool):
        raise ConversionError(f"boolean is not an integer: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not value.is_integer():
            raise ConversionError(f"not an integer: {value!r}")
        return int(value)
    if isinstance(value, str):
        return _parse_int(value, value)
    raise ConversionError(f"not an integer: {value!r}")


def best_effort(
    parse: Callable[[Any], T],
    value: Any,
    *,
    field: str,
    source: str,
    device: str,
    counter: Counter[str],
) -> T | int:
    """Run ``parse`` and fall back to zero on a conversion error.

    The failure is logged at DEBUG and counted under ``field`` in ``counter``
    so the gap is visible in the exported metrics.
    """
    try:
        return parse(value)
    except ConversionError as exc:
        counter[field] += 1
        logger.debug(
            "%s: device %s field %s defaulted to 0 (%s)", source, device, field, exc
        )
        return 0
