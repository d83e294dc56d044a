from __future__ import annotations

import re

_DMS_PATTERN = re.compile(
    r"^(?P<deg>\d{1,3})(?P<hemi>[NSEW])(?P<min>\d{2})'(?P<sec>\d{2})(?:''|\")?$"
)


def convert_dms_to_dd(text: str) -> float:
    """
    Convert a ``<deg><hemisphere><mm>'<ss>''`` string to decimal degrees.

    >>> convert_dms_to_dd("20E58'40''")
    20.977778

    Raises:
        ValueError: the text does not match the pattern, or minutes or
                    seconds are 60 or more.
    """
    m = _DMS_PATTERN.match(text.strip())
    if not m:
        raise ValueError(f"Invalid DMS coordinate: {text!r}")

    degrees = int(m["deg"])
    minutes = int(m["min"])
    seconds = int(m["sec"])
    if minutes >= 60 or seconds >= 60:
        raise ValueError(f"Minutes and seconds must be in [0, 59]: {text!r}")

    dd = degrees + minutes / 60 + seconds / 3600
    if m["hemi"] in ("S", "W"):
        dd = -dd
    return round(dd, 6)


def parse_long_lat(value: str | None, direction: str) -> float | None:
    """
    Parse the fixed-width ``DDMMSS`` coordinate used in device-registry files.

    *direction* is the hemisphere: ``"E"`` for longitude, ``"N"`` for
    latitude (``"W"``/``"S"`` flip the sign). Returns None for empty,
    wrongly sized or out-of-range input.
    """
    if not value:
        return None
    text = str(value).strip()
    if len(text) != 6:
        return None
    dms = f"{text[0:2]}{direction}{text[2:4]}'{text[4:6]}''"
    try:
        return convert_dms_to_dd(dms)
    except ValueError:
        return None
