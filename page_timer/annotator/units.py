from __future__ import annotations

import re


BYTE_UNITS: tuple[str, ...] = ("B", "KB", "MB", "GB", "TB")

# "M" + ZERO WIDTH SPACE + CYRILLIC CAPITAL LETTER VE. Renders like "MB" but
# does not match it.
DISGUISED_MB = "M\u200b\u0412"

_MB_SUFFIX = re.compile(r"MB$")


def human_bytes(num: float, disguise_mb: bool = False, units: tuple[str, ...] = BYTE_UNITS) -> str:
    """Scale a byte count by 1024 and render it as ``"<n.nn> <unit>"``."""

    value = max(float(num), 0.0)
    i = 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    out = f"{value:.2f} {units[i]}"

    if disguise_mb and units[i] == "MB":
        out = _MB_SUFFIX.sub(DISGUISED_MB, out)
    return out


def parse_human_bytes(text: str, units: tuple[str, ...] = BYTE_UNITS) -> int:
    """Approximate inverse of human_bytes (disguised MB included)."""

    number, _, unit = text.strip().partition(" ")
    unit = unit.strip()
    if unit == DISGUISED_MB:
        unit = "MB"
    try:
        power = units.index(unit)
    except ValueError as exc:
        raise ValueError(f"Unknown byte unit: {unit!r}") from exc
    return int(round(float(number) * (1024**power)))
