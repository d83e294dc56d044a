from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

_SYSTEM_TYPE_PATTERN = re.compile(r"^(GSM|UMTS|LTE|5G|IOT)(\d{3,4})$")

_RAT_BY_TAG = {
    "GSM": "GSM",
    "UMTS": "UMTS",
    "LTE": "LTE",
    "5G": "NR",
    "IOT": "IOT",
}

# Registry files label the n78 band as 3600; the band catalogue uses 3500.
FREQUENCY_REMAP: dict[tuple[str, int], int] = {
    ("NR", 3600): 3500,
}


@dataclass(frozen=True)
class BandKey:
    rat: str
    value: int
    duplex: str | None = None

    @property
    def key(self) -> tuple[str, int, str | None]:
        """Natural key of the matching ``bands`` row."""
        return (self.rat, self.value, self.duplex)

    @property
    def name(self) -> str:
        base = f"{self.rat} {self.value}"
        return f"{base} ({self.duplex})" if self.duplex else base

    def as_row(self) -> dict[str, Any]:
        return {
            "rat": self.rat,
            "value": self.value,
            "duplex": self.duplex,
            "name": self.name,
        }


def decode_band(system_type: Any) -> BandKey | None:
    """
    Decode a registry "system type" token such as ``LTE1800`` or ``5G3600``.

    Returns None when the token is not a string or does not match the
    ``<tech><3-4 digit frequency>`` form.
    """
    if not isinstance(system_type, str):
        return None
    m = _SYSTEM_TYPE_PATTERN.match(system_type.strip().upper())
    if not m:
        return None

    rat = _RAT_BY_TAG[m.group(1)]
    value = int(m.group(2))
    value = FREQUENCY_REMAP.get((rat, value), value)
    return BandKey(rat=rat, value=value)
