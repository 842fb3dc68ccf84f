"""Best-effort extraction of weights and device metadata from raw payloads."""

from __future__ import annotations

import math
import re
from typing import Optional, Union

_NUMBER_PATTERN = re.compile(r"[-+]?(?:\d+\.?\d*|\.\d+)", re.ASCII)


def _as_text(payload: Union[str, bytes, None]) -> str:
    if payload is None:
        return ""
    if isinstance(payload, bytes):
        return payload.decode("utf-8", errors="replace")
    return str(payload)


def _strict_float(text: str) -> Optional[float]:
    # float() also accepts digit separators and non-ASCII digits.
    if "_" in text or not text.isascii():
        return None
    try:
        return float(text)
    except ValueError:
        return None


def parse_weight(payload: Union[str, bytes, None]) -> Optional[float]:
    """Return the weight carried by ``payload`` in kg, or ``None``.

    A strict float parse of the whole string is tried first so that values
    such as ``"1e-3"`` survive; otherwise the first decimal number inside the
    text is used (``"Weight: 75.5"``, ``"75.5kg"``).
    """
    text = _as_text(payload).strip()
    if not text:
        return None

    value = _strict_float(text)
    if value is None:
        match = _NUMBER_PATTERN.search(text)
        if match is None:
            return None
        value = float(match.group(0))

    if not math.isfinite(value):
        return None
    return value


def normalize_status(tag: Optional[str]) -> Optional[str]:
    if tag is None:
        return None
    candidate = str(tag).strip().lower()
    return candidate or None


def device_id_from_topic(topic: Optional[str]) -> Optional[str]:
    """Last path segment of a broker topic like ``weight/sensor/SCALE_7``."""
    if not topic:
        return None
    segment = topic.split("/")[-1].strip()
    return segment or None
