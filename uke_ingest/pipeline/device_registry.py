"""
Import of the UKE radio device registry (one spreadsheet per operator).

Classes:
    ParsedRow               - one validated registry row
    DeviceRegistryImporter  - discover, download, parse and write the files

Usage:
    importer = DeviceRegistryImporter(
        engine=engine,
        resolver=RegionResolver.from_geojson(config.regions_geojson),
        config=config,
    )
    importer.run()

Every file is streamed row by row; valid rows are accumulated into chunks
of ``config.chunk_size`` and each chunk goes through the writers in
dependency order: bands, locations, permits, permit sectors.
"""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from uke_ingest.collectors import uke as uke_collectors
from uke_ingest.config import (
    PERMIT_FILE_OPERATORS,
    REGION_BY_TERYT_PREFIX,
    ImporterConfig,
)
from uke_ingest.db.tables import UKE_LOCATIONS, UKE_PERMITS
from uke_ingest.exceptions import ImportCancelledError, MissingColumnsError
from uke_ingest.geo.region_resolver import RegionResolver, region_for_teryt
from uke_ingest.parsers.bands import BandKey, decode_band
from uke_ingest.parsers.coordinates import parse_long_lat
from uke_ingest.parsers.rows import normalize_header
from uke_ingest.parsers.rows import read_rows as read_file_rows
from uke_ingest.pipeline.permits import (
    DEVICE_REGISTRY_SOURCE,
    sweep_stale_permits,
    touch_permits,
)
from uke_ingest.tracking.import_tracker import ImportTracker
from uke_ingest.writers.upserts import (
    resolve_foreign_keys,
    write_bands,
    write_locations,
    write_operators,
    write_permit_sectors,
    write_permits,
    write_regions,
)

logger = logging.getLogger(__name__)

IMPORT_TYPE = "permits"

# Normalised header label -> ColumnIndices attribute.
COLUMN_ALIASES: dict[str, str] = {
    "nr alternatywny": "decision_number",
    "rodzaj wniosku": "decision_type",
    "id stacji": "station_id",
    "miejscowosc": "city",
    "ulica": "street",
    "nr domu": "house_number",
    "dodatkowy opis lokalizacji": "location_note",
    "dl geogr": "longitude",
    "szer geogr": "latitude",
    "kod gus": "gus_code",
    "rodzaj systemu komorki": "system_type",
    "azymut": "azimuth",
    "elewacja": "elevation",
    "h anteny": "antenna_height",
    "typ komorki": "antenna_type",
}

REQUIRED_COLUMNS: dict[str, str] = {
    "decision_number": "nr alternatywny",
    "station_id": "id stacji",
    "longitude": "dl geogr",
    "latitude": "szer geogr",
    "system_type": "rodzaj systemu komorki",
}

# Registry files repeat "nr alternatywny"; the first one is the decision number.
FIRST_OCCURRENCE_WINS = {"decision_number"}

PERMIT_COLUMNS = (
    "station_id",
    "operator_id",
    "location_id",
    "band_id",
    "decision_number",
    "decision_type",
    "expiry_date",
    "source",
)
SECTOR_COLUMNS = ("azimuth", "elevation", "antenna_height", "antenna_type")

ANTENNA_TYPES = {"w": "indoor", "z": "outdoor"}


@dataclass
class ColumnIndices:
    decision_number: int
    station_id: int
    longitude: int
    latitude: int
    system_type: int
    decision_type: int | None = None
    city: int | None = None
    street: int | None = None
    house_number: int | None = None
    location_note: int | None = None
    gus_code: int | None = None
    azimuth: int | None = None
    elevation: int | None = None
    antenna_height: int | None = None
    antenna_type: int | None = None


def find_column_indices(header: list[str]) -> ColumnIndices:
    """
    Locate the registry columns in a header row.

    Raises:
        MissingColumnsError: any required column is absent.
    """
    found: dict[str, int] = {}
    for i, label in enumerate(header):
        name = COLUMN_ALIASES.get(normalize_header(label))
        if name is None:
            continue
        if name in FIRST_OCCURRENCE_WINS and name in found:
            continue
        found[name] = i

    missing = [label for name, label in REQUIRED_COLUMNS.items() if name not in found]
    if missing:
        raise MissingColumnsError(missing)
    return ColumnIndices(**found)


@dataclass
class ParsedRow:
    station_id: str
    longitude: float
    latitude: float
    region_name: str
    city: str | None
    address: str | None
    decision_number: str
    decision_type: str
    band_key: BandKey
    azimuth: float | None = None
    elevation: float | None = None
    antenna_height: float | None = None
    antenna_type: str | None = None

    @property
    def band_info(self) -> dict[str, Any]:
        return {"rat": self.band_key.rat, "value": self.band_key.value}


def _cell(cells: list[str], index: int | None) -> str:
    if index is None or index >= len(cells):
        return ""
    value = cells[index]
    return "" if value is None else str(value).strip()


def _to_float(text: str) -> float | None:
    if not text:
        return None
    try:
        value = float(text.replace(",", "."))
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def parse_row(
    cells: list[str],
    cols: ColumnIndices,
    resolver: RegionResolver,
    row_number: int,
    operator_key: str,
) -> ParsedRow | None:
    """
    Validate one data row. Returns None, after logging a warning, for rows
    that cannot be placed; blank rows are skipped silently.
    """
    if all(not (c or "").strip() for c in cells):
        return None

    lon = parse_long_lat(_cell(cells, cols.longitude), "E")
    lat = parse_long_lat(_cell(cells, cols.latitude), "N")
    if lon is None or lat is None:
        logger.warning(
            "Invalid coordinates in row %d for operator %s", row_number, operator_key
        )
        return None

    station_id = _cell(cells, cols.station_id)
    if not station_id:
        logger.warning(
            "Missing station ID in row %d for operator %s", row_number, operator_key
        )
        return None

    system_type = _cell(cells, cols.system_type)
    band_key = decode_band(system_type)
    if band_key is None:
        logger.warning(
            "Could not parse band from system type %r for station %s",
            system_type,
            station_id,
        )
        return None

    teryt = resolver.resolve(lon, lat)
    if teryt is None:
        logger.warning(
            "Could not determine region from coordinates (%s, %s) for station %s",
            lon,
            lat,
            station_id,
        )
        return None

    region = region_for_teryt(teryt)
    if region is None:
        logger.warning(
            "Could not find region mapping for TERYT code %r for station %s",
            teryt,
            station_id,
        )
        return None

    address_parts = [
        part
        for part in (
            _cell(cells, cols.street),
            _cell(cells, cols.house_number),
            _cell(cells, cols.location_note),
        )
        if part
    ]

    return ParsedRow(
        station_id=station_id,
        longitude=lon,
        latitude=lat,
        region_name=region.name,
        city=_cell(cells, cols.city) or None,
        address=" ".join(address_parts) or None,
        decision_number=_cell(cells, cols.decision_number),
        decision_type="zmP" if _cell(cells, cols.decision_type).upper() == "M" else "P",
        band_key=band_key,
        azimuth=_to_float(_cell(cells, cols.azimuth)),
        elevation=_to_float(_cell(cells, cols.elevation)),
        antenna_height=_to_float(_cell(cells, cols.antenna_height)),
        antenna_type=ANTENNA_TYPES.get(_cell(cells, cols.antenna_type).lower()),
    )


@dataclass
class FileResult:
    row_count: int = 0
    inserted_count: int = 0
    processed: bool = False


@dataclass
class RunSummary:
    files: int = 0
    rows_processed: int = 0
    records_inserted: int = 0
    stale_deleted: int = 0
    operator_ids: list[int] = field(default_factory=list)


class DeviceRegistryImporter:
    """
    Imports the per-operator device registry spreadsheets into
    ``uke_locations``, ``bands``, ``uke_permits`` and ``uke_permit_sectors``.

    Collaborators (source discovery, download, row reading) are injectable
    so the importer can run against local files or test doubles.

    Parameters
    ----------
    engine : PostgresEngine
    resolver : RegionResolver
    tracker : ImportTracker, optional
    config : ImporterConfig, optional
    discover_sources : callable(url) -> list[SourceDescriptor], optional
    download : callable(source, directory) -> Path, optional
    read_rows : callable(path) -> iterator of list[str], optional
    cancel_event : threading.Event, optional
    """

    def __init__(
        self,
        engine: Any,
        resolver: RegionResolver,
        tracker: ImportTracker | None = None,
        config: ImporterConfig | None = None,
        discover_sources: Callable[[str], list[Any]] | None = None,
        download: Callable[[Any, Path], Path] | None = None,
        read_rows: Callable[[Path], Iterable[list[str]]] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.engine = engine
        self.resolver = resolver
        self.config = config or ImporterConfig()
        self.tracker = tracker or ImportTracker(engine, schema=self.config.target_schema)
        self.discover_sources = discover_sources or uke_collectors.discover_sources
        self.download = download or uke_collectors.download
        self.read_rows = read_rows or read_file_rows
        self.cancel_event = cancel_event or threading.Event()
        self.logger = logging.getLogger("uke_ingest.device_registry")
        self.last_summary: RunSummary | None = None
        self.run_started_at: datetime | None = None

    @property
    def _write_options(self) -> dict[str, Any]:
        return {
            "schema": self.config.target_schema,
            "batch_size": self.config.batch_size,
            "cancel_event": self.cancel_event,
        }

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise ImportCancelledError("Device registry import cancelled")

    # ------------------------------------------------------------------ #
    #  Chunk
    # ------------------------------------------------------------------ #

    def process_chunk(
        self,
        rows: list[ParsedRow],
        operator_id: int,
        region_ids: dict[str, int],
        file_band_keys: Iterable[BandKey],
    ) -> int:
        """
        Write one chunk of parsed rows and return the number of permits
        newly inserted.
        """
        self._check_cancelled()
        options = self._write_options

        band_ids = write_bands(self.engine, file_band_keys, **options)
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

        candidates = [
            {
                "station_id": r.station_id,
                "operator_id": operator_id,
                "location_id": (r.longitude, r.latitude),
                "band_id": r.band_key.key,
                "decision_number": r.decision_number,
                "decision_type": r.decision_type,
                "expiry_date": self.config.permit_expiry,
                "source": DEVICE_REGISTRY_SOURCE,
                "azimuth": r.azimuth,
                "elevation": r.elevation,
                "antenna_height": r.antenna_height,
                "antenna_type": r.antenna_type,
            }
            for r in rows
        ]
        candidates = resolve_foreign_keys(candidates, "location_id", location_ids, "uke_permits")
        candidates = resolve_foreign_keys(candidates, "band_id", band_ids, "uke_permits")

        permits = [{c: row[c] for c in PERMIT_COLUMNS} for row in candidates]
        sectors = [
            {"permit_id": UKE_PERMITS.key_of(row), **{c: row[c] for c in SECTOR_COLUMNS}}
            for row in candidates
        ]

        permit_ids = write_permits(self.engine, permits, **options)
        touch_permits(
            self.engine,
            list(permit_ids.values()),
            self.run_started_at or datetime.now(UTC),
            self.config.target_schema,
        )
        write_permit_sectors(self.engine, sectors, permit_ids=permit_ids, **options)
        return permit_ids.inserted

    # ------------------------------------------------------------------ #
    #  File
    # ------------------------------------------------------------------ #

    def process_file(
        self,
        path: Path,
        operator_key: str,
        operator_id: int,
        region_ids: dict[str, int],
    ) -> FileResult:
        self.logger.info("Reading file for %s", operator_key)
        rows: Iterator[list[str]] = iter(self.read_rows(path))

        header = next(rows, None)
        if header is None:
            self.logger.warning("File for %s is empty", operator_key)
            return FileResult()

        try:
            cols = find_column_indices(header)
        except MissingColumnsError as e:
            self.logger.error(
                "Could not find required columns in header row of %s: %s",
                operator_key,
                e,
            )
            return FileResult()

        result = FileResult(processed=True)
        chunk: list[ParsedRow] = []
        file_band_keys: dict[BandKey, None] = {}

        for row_number, cells in enumerate(rows, start=2):
            result.row_count += 1
            parsed = parse_row(cells, cols, self.resolver, row_number, operator_key)
            if parsed is None:
                continue
            file_band_keys[parsed.band_key] = None
            chunk.append(parsed)

            if len(chunk) >= self.config.chunk_size:
                result.inserted_count += self.process_chunk(
                    chunk, operator_id, region_ids, list(file_band_keys)
                )
                chunk = []

        if chunk:
            result.inserted_count += self.process_chunk(
                chunk, operator_id, region_ids, list(file_band_keys)
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

    def _select_sources(self, sources: list[Any], only_new_files: bool) -> list[Any] | None:
        """Sources to process, or None when the run should be skipped."""
        if not only_new_files:
            if self.tracker.is_up_to_date(IMPORT_TYPE, sources):
                self.logger.info("Data is up-to-date, skipping import")
                return None
            return sources

        previous = self.tracker.last_imported_file_names(IMPORT_TYPE)
        if previous is None:
            return sources

        def _name(source: Any) -> str:
            return source.href.rstrip("/").rsplit("/", 1)[-1]

        new_sources = [s for s in sources if _name(s) not in previous]
        if new_sources:
            self.logger.info(
                "Processing %d new file(s) (skipping %d already imported)",
                len(new_sources),
                len(sources) - len(new_sources),
            )
            return new_sources

        if previous != {_name(s) for s in sources}:
            self.logger.info("No new files to process, updating metadata")
            self.tracker.record_success(IMPORT_TYPE, sources)
        else:
            self.logger.info("Data is up-to-date, skipping import")
        return None

    def run(self, only_new_files: bool = False) -> bool:
        """
        Run one import. Returns False when nothing changed since the last
        successful run (no writes happen), True once an import completed.
        """
        self.logger.info("Starting import from device registry...")
        started_at = self.run_started_at = datetime.now(UTC)
        sources = list(self.discover_sources(self.config.permits_devices_url))
        self.logger.info(
            "Found %d files: %s",
            len(sources),
            ", ".join(str(s.operator_key) for s in sources),
        )

        to_process = self._select_sources(sources, only_new_files)
        if to_process is None:
            return False

        summary = RunSummary()
        options = self._write_options

        with self.tracker.track(IMPORT_TYPE, sources) as run:
            operator_ids = write_operators(
                self.engine, PERMIT_FILE_OPERATORS.values(), **options
            )
            region_ids = write_regions(
                self.engine, REGION_BY_TERYT_PREFIX.values(), **options
            )

            for source in to_process:
                self._check_cancelled()
                info = PERMIT_FILE_OPERATORS.get(source.operator_key or "")
                if info is None:
                    self.logger.warning("Unknown operator key: %s", source.operator_key)
                    continue
                operator_id = operator_ids.get(info.mnc)
                if operator_id is None:
                    self.logger.warning("Operator not found in database: %s", info.name)
                    continue

                path = Path(self.download(source, self.config.download_dir))
                try:
                    result = self.process_file(path, source.operator_key, operator_id, region_ids)
                finally:
                    path.unlink(missing_ok=True)
                    self.logger.info("Deleted: %s", path.name)

                summary.files += 1
                summary.rows_processed += result.row_count
                summary.records_inserted += result.inserted_count
                if result.processed and operator_id not in summary.operator_ids:
                    summary.operator_ids.append(operator_id)

            self.logger.info(
                "Total: %d rows processed, %d records inserted",
                summary.rows_processed,
                summary.records_inserted,
            )
            run.rows_processed = summary.rows_processed
            run.records_inserted = summary.records_inserted

        self.logger.info("Deleting stale device registry permits...")
        summary.stale_deleted = sweep_stale_permits(
            self.engine,
            summary.operator_ids,
            started_at,
            run.import_id,
            schema=self.config.target_schema,
            batch_size=self.config.batch_size,
        )
        self.logger.info("Import completed successfully")
        self.last_summary = summary
        return True
