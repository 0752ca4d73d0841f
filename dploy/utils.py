from __future__ import annotations

import math
import re
from typing import Mapping

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def sanitize_label(raw: str, *, max_len: int = 63) -> str:
    """Normalize user-controlled identifiers into stable lowercase labels."""
    value = str(raw).strip().lower()
    if not value:
        return ""
    value = value.replace("_", "-").replace(" ", "-")
    value = re.sub(r"[^a-z0-9.-]", "-", value)
    value = re.sub(r"-{2,}", "-", value)
    value = value.strip("-.")
    if max_len <= 0:
        return value
    return value[:max_len].rstrip("-.")


def parse_duration(raw: str) -> float:
    """Parse ``30``, ``30s``, ``1m30s``, ``500ms`` or ``2h`` into seconds."""
    text = str(raw).strip().lower()
    if not text:
        raise ValueError("duration is empty")
    try:
        seconds = float(text)
    except ValueError:
        pos = 0
        seconds = 0.0
        for match in _DURATION_PART_RE.finditer(text):
            if match.start() != pos:
                break
            seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
            pos = match.end()
        if pos != len(text) or pos == 0:
            raise ValueError(f"invalid duration {raw!r}") from None
    if not math.isfinite(seconds):
        raise ValueError(f"duration must be finite: {raw!r}")
    if seconds < 0:
        raise ValueError(f"duration must not be negative: {raw!r}")
    return seconds


def format_selector(labels: Mapping[str, str]) -> str:
    """Flatten labels into a routing-plane selector, e.g. ``service=web, version=v2``."""
    terms: list[str] = []
    for key, value in labels.items():
        key = key.strip()
        if not key:
            raise ValueError("selector key cannot be empty")
        if "=" in key or "," in key or "," in str(value):
            raise ValueError(f"invalid selector term {key}={value}")
        terms.append(f"{key}={value}")
    return ", ".join(terms)
