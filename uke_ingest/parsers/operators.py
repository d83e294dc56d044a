from __future__ import annotations

import re

_COMPANY_SUFFIXES = [
    re.compile(r"\bsp\.?\s*z\.?\s*o\.?\s*o\.?(?=\W|$)", re.IGNORECASE),
    re.compile(r"\bs\.?a\.?(?=\W|$)", re.IGNORECASE),
    re.compile(r"\bspółka z ograniczoną odpowiedzialnością\b", re.IGNORECASE),
    re.compile(r"\bspolka z ograniczona odpowiedzialnoscia\b", re.IGNORECASE),
    re.compile(r"\bsp\.?\s*k\.?(?=\W|$)", re.IGNORECASE),
    re.compile(r"\bsa\b", re.IGNORECASE),
]


def strip_company_suffix(name: str) -> str:
    """Drop legal-form suffixes, e.g. ``"P4 Sp. z o.o."`` -> ``"P4"``."""
    for pattern in _COMPANY_SUFFIXES:
        name = pattern.sub("", name)
    return re.sub(r"\s{2,}", " ", name).strip()
