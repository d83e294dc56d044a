"""
Import of the UKE station permit lists (one spreadsheet per band).

Classes:
    StationRow        - one validated permit row
    StationsImporter  - discover, download, parse and write the files

Usage:
    importer = StationsImporter(engine=engine, config=config)
    importer.run()

Every file on the stations listing page holds the permits of a single band
for all operators. The band is read from the link label (``"LTE800 plik
XLSX"``), the region from each row's TERYT code and the operator from the
``Nazwa Operatora`` column. GSM-R files are not imported.
"""

from __future__ import annotations

import logging
import math
import re
import threading
from collections import Counter
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from functools import partial
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from uke_ingest.collectors import uke as uke_collectors
from uke_ingest.config import (
    PERMIT_FILE_OPERATORS,
    REGION_BY_TERYT_PREFIX,
    ImporterConfig,
    OperatorInfo,
    RegionInfo,
)
from uke_ingest.db.tables import UKE_LOCATIONS
from uke_ingest.exceptions import ImportCancelledError, MissingColumnsError
from uke_ingest.parsers.bands import BandKey, decode_band
from uke_ingest.parsers.coordinates import convert_dms_to_dd
from uke_ingest.parsers.operators import strip_company_suffix
from uke_ingest.parsers.rows import normalize_header
from uke_ingest.parsers.rows import read_rows as read_file_rows
from uke_ingest.pipeline.device_registry import FileResult, RunSummary
from uke_ingest.tracking.import_tracker import ImportTracker
from uke_ingest.writers.upserts import (
    IdMap,
    write_bands,
    write_locations,
    write_operators,
    write_permits,
    write_regions,
)

logger = logging.getLogger(__name__)

IMPORT_TYPE = "stations"
STATIONS_SOURCE = "stations"

COLUMN_ALIASES: dict[str, str] = {
    "nazwa operatora": "operator_name",
    "nr decyzji": "decision_number",
    "rodzaj decyzji": "decision_type",
    "data waznosci": "expiry_date",
    "dl geogr stacji": "longitude",
    "szer geogr stacji": "latitude",
    "miejscowosc": "city",
    "lokalizacja": "address",
    "idstacji": "station_id",
    "id stacji": "station_id",
    "teryt": "teryt",
}

REQUIRED_COLUMNS: dict[str, str] = {
    "operator_name": "nazwa operatora",
    "decision_number": "nr decyzji",
    "station_id": "idstacji",
    "longitude": "dl geogr stacji",
    "latitude": "szer geogr stacji",
    "teryt": "teryt",
}

# Day zero of Excel serial dates (1900 date system).
EXCEL_EPOCH = datetime(1899, 12, 30, tzinfo=UTC)

# Stripped legal names and short names of the known operators.
OPERATOR_BY_NAME: dict[str, OperatorInfo] = {
    **{info.name.lower(): info for info in PERMIT_FILE_OPERATORS.values()},
    **{
        strip_company_suffix(info.full_name).lower(): info
        for info in PERMIT_FILE_OPERATORS.values()
    },
}


@dataclass
class StationColumns:
    operator_name: int
    decision_number: int
    station_id: int
    longitude: int
    latitude: int
    teryt: int
    decision_type: int | None = None
    expiry_date: int | None = None
    city: int | None = None
    address: int | None = None


def find_station_columns(header: list[str]) -> StationColumns:
    """
    Locate the permit list columns in a header row.

    Raises:
        MissingColumnsError: any required column is absent.
    """
    found: dict[str, int] = {}
    for i, label in enumerate(header):
        name = COLUMN_ALIASES.get(normalize_header(label))
        if name is not None and name not in found:
            found[name] = i

    missing = [label for name, label in REQUIRED_COLUMNS.items() if name not in found]
    if missing:
        raise MissingColumnsError(missing)
    return StationColumns(**found)


def parse_band_from_label(label: str | None) -> BandKey | None:
    """``"LTE800 plik XLSX"`` -> ``BandKey("LTE", 800)``. ``"GSM-R ..."`` gives None."""
    first = re.split(r"[\s-]", (label or "").strip(), maxsplit=1)[0]
    return decode_band(first) if first else None


def parse_expiry_date(text: str | None) -> datetime | None:
    """
    Parse an expiry date cell: an ISO date or datetime, ``dd.mm.yyyy``, or an
    Excel serial day number such as ``"45292"`` (2024-01-01). Naive values
    are taken as UTC. Returns None when the text is empty or unparsable.
    """
    text = (text or "").strip()
    if not text:
        return None

    try:
        serial = float(text.replace(",", "."))
    except ValueError:
        pass
    else:
        if not math.isfinite(serial) or serial <= 0:
            return None
        return EXCEL_EPOCH + timedelta(seconds=round(serial * 86400))

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        try:
            parsed = datetime.strptime(text, "%d.%m.%Y")
        except ValueError:
            return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def region_for_teryt_code(code: str | None) -> RegionInfo | None:
    """
    Voivodeship of a TERC/TERYT code. Numeric cells lose their leading zero,
    so six-digit codes are padded back to seven.
    """
    digits = (code or "").strip()
    if digits.isdigit() and len(digits) == 6:
        digits = digits.zfill(7)
    return REGION_BY_TERYT_PREFIX.get(digits[:2])


def operator_for_name(name: str) -> OperatorInfo | None:
    return OPERATOR_BY_NAME.get(strip_company_suffix(name).lower())


@dataclass
class StationRow:
    station_id: str
    operator_name: str
    longitude: float
    latitude: float
    region_name: str
    city: str | None
    address: str | None
    decision_number: str
    decision_type: str
    expiry_date: datetime


def _cell(cells: list[str], index: int | None) -> str:
    if index is None or index >= len(cells):
        return ""
    value = cells[index]
    return "" if value is None else str(value).strip()


def parse_station_row(
    cells: list[str],
    cols: StationColumns,
    row_number: int,
    file_label: str,
    default_expiry: datetime,
) -> StationRow | None:
    """
    Validate one data row. Returns None, after logging a warning, for rows
    that cannot be placed; blank rows are skipped silently.
    """
    if all(not (c or "").strip() for c in cells):
        return None

    try:
        lon = convert_dms_to_dd(_cell(cells, cols.longitude))
        lat = convert_dms_to_dd(_cell(cells, cols.latitude))
    except ValueError:
        logger.warning("Invalid coordinates in row %d of %s", row_number, file_label)
        return None

    station_id = _cell(cells, cols.station_id)
    if not station_id:
        logger.warning("Missing station ID in row %d of %s", row_number, file_label)
        return None

    operator_name = _cell(cells, cols.operator_name)
    if not operator_name:
        logger.warning("Missing operator name in row %d of %s", row_number, file_label)
        return None

    teryt = _cell(cells, cols.teryt)
    region = region_for_teryt_code(teryt)
    if region is None:
        logger.warning(
            "Could not find region mapping for TERYT code %r for station %s",
            teryt,
            station_id,
        )
        return None

    raw_expiry = _cell(cells, cols.expiry_date)
    expiry_date = parse_expiry_date(raw_expiry)
    if expiry_date is None:
        if raw_expiry:
            logger.warning(
                "Unparsable expiry date %r for station %s", raw_expiry, station_id
            )
        expiry_date = default_expiry

    return StationRow(
        station_id=station_id,
        operator_name=operator_name,
        longitude=lon,
        latitude=lat,
        region_name=region.name,
        city=_cell(cells, cols.city) or None,
        address=_cell(cells, cols.address) or None,
        decision_number=_cell(cells, cols.decision_number),
        decision_type="zmP" if _cell(cells, cols.decision_type).lower() == "zmp" else "P",
        expiry_date=expiry_date,
    )


def _label_of(source: Any) -> str:
    return source.text or Path(urlparse(source.href).path).name


class StationsImporter:
    """
    Imports the per-band station permit spreadsheets into ``uke_locations``,
    ``bands``, ``operators`` and ``uke_permits``.

    Parameters
    ----------
    engine : PostgresEngine
    tracker : ImportTracker, optional
    config : ImporterConfig, optional
    discover_sources : callable(url) -> list[SourceDescriptor], optional
    download : callable(source, directory) -> Path, optional
    read_rows : callable(path) -> iterator of list[str], optional
        Defaults to the first sheet of each workbook.
    cancel_event : threading.Event, optional
    """

    def __init__(
        self,
        engine: Any,
        tracker: ImportTracker | None = None,
        config: ImporterConfig | None = None,
        discover_sources: Callable[[str], list[Any]] | None = None,
        download: Callable[[Any, Path], Path] | None = None,
        read_rows: Callable[[Path], Iterable[list[str]]] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.engine = engine
        self.config = config or ImporterConfig()
        self.tracker = tracker or ImportTracker(engine, schema=self.config.target_schema)
        self.discover_sources = discover_sources or uke_collectors.discover_sources
        self.download = download or uke_collectors.download
        self.read_rows = read_rows or partial(read_file_rows, sheet_index=0)
        self.cancel_event = cancel_event or threading.Event()
        self.logger = logging.getLogger("uke_ingest.stations")
        self.last_summary: RunSummary | None = None

    @property
    def _write_options(self) -> dict[str, Any]:
        return {
            "schema": self.config.target_schema,
            "batch_size": self.config.batch_size,
            "cancel_event": self.cancel_event,
        }

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise ImportCancelledError("Stations import cancelled")

    # ------------------------------------------------------------------ #
    #  Chunk
    # ------------------------------------------------------------------ #

    def process_chunk(
        self,
        rows: list[StationRow],
        band_key: BandKey,
        operator_ids: IdMap,
        region_ids: IdMap,
        band_ids: IdMap,
    ) -> int:
        """Write one chunk of rows and return the number of permits newly inserted."""
        self._check_cancelled()
        options = self._write_options

        location_ids = write_locations(
            self.engine,
            (
                {
                    "region_id": r.region_name,
                    "city": r.city,
                    "address": r.address,
                    "longitude": r.longitude,
                    "latitude": r.latitude,
                }
                for r in rows
            ),
            region_ids=region_ids,
            table=UKE_LOCATIONS,
            **options,
        )

        permits = [
            {
                "station_id": r.station_id,
                "operator_id": operator_for_name(r.operator_name).mnc,
                "location_id": (r.longitude, r.latitude),
                "band_id": band_key.key,
                "decision_number": r.decision_number,
                "decision_type": r.decision_type,
                "expiry_date": r.expiry_date,
                "source": STATIONS_SOURCE,
            }
            for r in rows
        ]
        permit_ids = write_permits(
            self.engine,
            permits,
            operator_ids=operator_ids,
            location_ids=location_ids,
            band_ids=band_ids,
            **options,
        )
        return permit_ids.inserted

    # ------------------------------------------------------------------ #
    #  File
    # ------------------------------------------------------------------ #

    def process_file(
        self,
        path: Path,
        band_key: BandKey,
        operator_ids: IdMap,
        region_ids: IdMap,
        band_ids: IdMap,
    ) -> FileResult:
        label = path.name
        self.logger.info("Processing: %s", label)
        rows: Iterator[list[str]] = iter(self.read_rows(path))

        header = next(rows, None)
        if header is None:
            self.logger.warning("File %s is empty", label)
            return FileResult()

        try:
            cols = find_station_columns(header)
        except MissingColumnsError as e:
            self.logger.error(
                "Could not find required columns in header row of %s: %s", label, e
            )
            return FileResult()

        result = FileResult(processed=True)
        unknown_operators: Counter[str] = Counter()
        chunk: list[StationRow] = []

        for row_number, cells in enumerate(rows, start=2):
            result.row_count += 1
            parsed = parse_station_row(
                cells, cols, row_number, label, self.config.permit_expiry
            )
            if parsed is None:
                continue
            if operator_for_name(parsed.operator_name) is None:
                unknown_operators[parsed.operator_name] += 1
                continue
            chunk.append(parsed)

            if len(chunk) >= self.config.chunk_size:
                result.inserted_count += self.process_chunk(
                    chunk, band_key, operator_ids, region_ids, band_ids
                )
                chunk = []

        if chunk:
            result.inserted_count += self.process_chunk(
                chunk, band_key, operator_ids, region_ids, band_ids
            )

        for name, count in unknown_operators.items():
            self.logger.warning(
                "Skipped %d rows of %s: unknown operator %r", count, label, name
            )
        self.logger.info(
            "Done: %d data rows, %d permits inserted",
            result.row_count,
            result.inserted_count,
        )
        return result

    # ------------------------------------------------------------------ #
    #  Run
    # ------------------------------------------------------------------ #

    def run(self) -> bool:
        """
        Run one import. Returns False when the file list is unchanged since
        the last successful run (no writes happen), True once an import
        completed.
        """
        self.logger.info("Starting stations import...")
        sources = [
            s
            for s in self.discover_sources(self.config.stations_url)
            if "gsm-r" not in s.text.lower()
        ]
        self.logger.info("Found %d files to process", len(sources))

        if self.tracker.is_up_to_date(IMPORT_TYPE, sources):
            self.logger.info("Data is up-to-date, skipping import")
            return False

        band_by_href: dict[str, BandKey] = {}
        for source in sources:
            band_key = parse_band_from_label(_label_of(source))
            if band_key is None:
                self.logger.warning(
                    "Could not parse band from label %r, skipping file", _label_of(source)
                )
                continue
            band_by_href[source.href] = band_key
        bands = list(dict.fromkeys(band_by_href.values()))
        self.logger.info("Found %d bands: %s", len(bands), ", ".join(b.name for b in bands))

        summary = RunSummary()
        options = self._write_options

        with self.tracker.track(IMPORT_TYPE, sources) as run:
            band_ids = write_bands(self.engine, bands, **options)
            region_ids = write_regions(
                self.engine, REGION_BY_TERYT_PREFIX.values(), **options
            )
            operator_ids = write_operators(
                self.engine, PERMIT_FILE_OPERATORS.values(), **options
            )

            for source in sources:
                self._check_cancelled()
                band_key = band_by_href.get(source.href)
                if band_key is None:
                    continue

                path = Path(self.download(source, self.config.download_dir))
                try:
                    result = self.process_file(
                        path, band_key, operator_ids, region_ids, band_ids
                    )
                finally:
                    path.unlink(missing_ok=True)
                    self.logger.info("Deleted: %s", path.name)

                summary.files += 1
                summary.rows_processed += result.row_count
                summary.records_inserted += result.inserted_count

            self.logger.info(
                "Total: %d rows processed, %d records inserted",
                summary.rows_processed,
                summary.records_inserted,
            )
            run.rows_processed = summary.rows_processed
            run.records_inserted = summary.records_inserted

        self.logger.info("Import completed successfully")
        self.last_summary = summary
        return True
