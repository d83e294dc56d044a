from __future__ import annotations

import csv
import logging
import re
import unicodedata
from collections.abc import Iterator
from datetime import datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def _cell_to_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def normalize_header(label: str | None) -> str:
    """``"Dł. geogr."`` -> ``"dl geogr"``; ``"Rodzaj systemu komórki"`` -> ``"rodzaj systemu komorki"``."""
    text = (label or "").strip().lower().replace("ł", "l")
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = text.replace(".", " ")
    return re.sub(r"\s+", " ", text).strip()


def read_rows(filepath: str | Path, sheet_index: int | None = None) -> Iterator[list[str]]:
    """
    Yield every row of a registry file, header included, as a list of strings.

    ``.csv`` files are read with the csv module. ``.xlsx`` files are opened
    read-only with openpyxl; the data of device-registry workbooks lives on
    the second sheet, so by default that sheet is used when present and the
    first otherwise. *sheet_index* picks a sheet explicitly.
    Empty cells become ``""`` and integral floats lose their ``.0``, so
    ``205840.0`` reads back as ``"205840"``.
    """
    filepath = Path(filepath)
    suffix = filepath.suffix.lower()

    if suffix == ".csv":
        with open(filepath, newline="", encoding="utf-8-sig") as f:
            for row in csv.reader(f):
                yield row
        return

    if suffix not in (".xlsx", ".xlsm"):
        raise ValueError(f"Unsupported file type: {filepath.name}")

    import openpyxl

    wb = openpyxl.load_workbook(filepath, read_only=True, data_only=True)
    try:
        sheets = wb.worksheets
        if not sheets:
            logger.warning("Workbook %s has no sheets", filepath.name)
            return
        if sheet_index is None:
            sheet_index = 1 if len(sheets) > 1 else 0
        ws = sheets[sheet_index]
        logger.info("Reading sheet %r of %s", ws.title, filepath.name)
        for row in ws.iter_rows(values_only=True):
            yield [_cell_to_str(v) for v in row]
    finally:
        wb.close()
