from __future__ import annotations

from typing import Mapping


def header_value(headers: Mapping[str, str] | None, name: str) -> str | None:
    # Starlette headers are case-insensitive already; plain mappings are scanned.
    if not headers:
        return None
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None
