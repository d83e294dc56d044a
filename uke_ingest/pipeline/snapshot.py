"""
Dependency-ordered load of a prepared network snapshot.

A snapshot is a set of already-parsed records (regions, operators, locations,
stations, bands, cells with their technology details, permits) that refer to
one another by natural keys or by identifiers local to the snapshot
(``source_id``). SnapshotLoader writes them stage by stage, feeding each
stage's id map into the foreign-key resolution of the next:

    regions -> operators -> locations -> stations -> bands -> cells
            -> cell details -> permit locations -> permits

Rows whose parent did not make it into the store are dropped and logged.
Earlier stages are not rolled back when a later one fails; every stage is
idempotent so the load can simply be re-run.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from uke_ingest.config import PERMIT_EXPIRY
from uke_ingest.db.tables import CELLS, STATIONS, UKE_LOCATIONS, UKE_PERMITS
from uke_ingest.exceptions import ImportCancelledError
from uke_ingest.parsers.bands import BandKey
from uke_ingest.parsers.operators import strip_company_suffix
from uke_ingest.tracking.import_tracker import ImportTracker
from uke_ingest.writers.dedupe import dedupe_by
from uke_ingest.writers.upserts import (
    DETAIL_KEY_COLUMNS,
    IdMap,
    write_bands,
    write_cell_details,
    write_cells,
    write_locations,
    write_operators,
    write_permit_sectors,
    write_permits,
    write_regions,
    write_stations,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreparedRegion:
    name: str
    code: str


@dataclass(frozen=True)
class PreparedOperator:
    name: str
    mnc: int
    full_name: str | None = None


@dataclass(frozen=True)
class PreparedLocation:
    source_id: Any
    region_name: str
    longitude: float
    latitude: float
    city: str | None = None
    address: str | None = None


@dataclass(frozen=True)
class PreparedStation:
    source_id: Any
    station_id: str
    operator_mnc: int
    location_source_id: Any
    notes: str | None = None


@dataclass(frozen=True)
class PreparedCell:
    """
    One cell of a station. ``details`` holds the technology columns
    (``lac``/``cid`` for GSM, ``rnc``/``cid`` for UMTS, ``enbid``/``clid``
    for LTE, ``gnbid``/``clid`` for NR, plus any optional extras).
    """

    source_id: Any
    station_source_id: Any
    band: BandKey
    rat: str
    details: dict[str, Any] = field(default_factory=dict)
    notes: str | None = None

    @property
    def cell_key(self) -> str:
        """Technology identity, e.g. ``"LTE:12345:1"``; ``"src:<id>"`` when incomplete."""
        columns = DETAIL_KEY_COLUMNS.get(self.rat)
        if columns and all(self.details.get(c) is not None for c in columns):
            return ":".join([self.rat, *(str(self.details[c]) for c in columns)])
        return f"src:{self.source_id}"


@dataclass(frozen=True)
class PreparedSector:
    azimuth: float | None = None
    elevation: float | None = None
    antenna_height: float | None = None
    antenna_type: str | None = None


@dataclass(frozen=True)
class PreparedPermit:
    station_id: str
    operator_mnc: int
    region_name: str
    longitude: float
    latitude: float
    band: BandKey
    decision_number: str
    decision_type: str = "P"
    expiry_date: datetime = PERMIT_EXPIRY
    city: str | None = None
    address: str | None = None
    source: str = "stations"
    sectors: tuple[PreparedSector, ...] = ()


@dataclass
class NetworkSnapshot:
    regions: list[PreparedRegion] = field(default_factory=list)
    operators: list[PreparedOperator] = field(default_factory=list)
    locations: list[PreparedLocation] = field(default_factory=list)
    stations: list[PreparedStation] = field(default_factory=list)
    bands: list[BandKey] = field(default_factory=list)
    cells: list[PreparedCell] = field(default_factory=list)
    permits: list[PreparedPermit] = field(default_factory=list)

    def all_bands(self) -> list[BandKey]:
        """Explicit bands plus every band referenced by a cell or permit."""
        referenced = [
            *self.bands,
            *(c.band for c in self.cells),
            *(p.band for p in self.permits),
        ]
        return dedupe_by(referenced, lambda b: b.key)


@dataclass
class StageStats:
    name: str
    candidates: int = 0
    inserted: int = 0
    skipped: int = 0
    dropped: int = 0

    @classmethod
    def from_id_map(cls, name: str, id_map: IdMap, dropped: int = 0) -> StageStats:
        return cls(
            name=name,
            candidates=id_map.candidates,
            inserted=id_map.inserted,
            skipped=id_map.skipped,
            dropped=id_map.dropped + dropped,
        )


@dataclass
class LoadSummary:
    up_to_date: bool = False
    stages: list[StageStats] = field(default_factory=list)

    @property
    def inserted(self) -> int:
        return sum(s.inserted for s in self.stages)

    def stage(self, name: str) -> StageStats | None:
        for s in self.stages:
            if s.name == name:
                return s
        return None


class SnapshotLoader:
    """
    Writes a NetworkSnapshot to the store in dependency order.

    Parameters
    ----------
    engine : PostgresEngine
        Store exposing ``insert_ignoring_conflicts`` and ``select_in``.
    tracker : ImportTracker, optional
        Used for the staleness check and run log when ``load`` is given the
        snapshot's sources.
    schema : str
    batch_size : int, optional
        Rows per insert. None writes each stage in one statement.
    on_progress : callable(stage_name, rows_written), optional
    cancel_event : threading.Event, optional
        Checked before every stage and every batch.
    """

    IMPORT_TYPE = "snapshot"

    def __init__(
        self,
        engine: Any,
        tracker: ImportTracker | None = None,
        schema: str = "public",
        batch_size: int | None = None,
        on_progress: Callable[[str, int], None] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.engine = engine
        self.tracker = tracker or ImportTracker(engine, schema=schema)
        self.schema = schema
        self.batch_size = batch_size
        self.on_progress = on_progress
        self.cancel_event = cancel_event or threading.Event()
        self.logger = logging.getLogger("uke_ingest.snapshot_loader")

    def _options(self, stage: str) -> dict[str, Any]:
        progress = None
        if self.on_progress is not None:
            def progress(n: int) -> None:
                self.on_progress(stage, n)
        return {
            "schema": self.schema,
            "batch_size": self.batch_size,
            "on_progress": progress,
            "cancel_event": self.cancel_event,
        }

    def _begin(self, stage: str) -> None:
        if self.cancel_event.is_set():
            raise ImportCancelledError(f"Snapshot load cancelled before {stage}")
        self.logger.info("Loading %s...", stage)

    # ------------------------------------------------------------------ #
    #  Entry point
    # ------------------------------------------------------------------ #

    def load(
        self,
        snapshot: NetworkSnapshot,
        sources: Iterable[Any] | None = None,
        import_type: str | None = None,
    ) -> LoadSummary:
        """
        Load *snapshot*. When *sources* is given, the load is skipped (no
        writes at all) if the last successful run of *import_type* saw the
        same sources, and otherwise recorded in the import log.
        """
        import_type = import_type or self.IMPORT_TYPE
        if sources is None:
            return self._load_stages(snapshot)

        sources = list(sources)
        if self.tracker.is_up_to_date(import_type, sources):
            self.logger.info("Data is up-to-date, skipping %s import", import_type)
            return LoadSummary(up_to_date=True)

        with self.tracker.track(import_type, sources) as run:
            summary = self._load_stages(snapshot)
            run.records_inserted = summary.inserted
        return summary

    def _load_stages(self, snapshot: NetworkSnapshot) -> LoadSummary:
        summary = LoadSummary()

        region_ids = self._load_regions(snapshot, summary)
        operator_ids = self._load_operators(snapshot, summary)
        location_source_ids = self._load_locations(snapshot, region_ids, summary)
        station_source_ids = self._load_stations(
            snapshot, operator_ids, location_source_ids, summary
        )
        band_ids = self._load_bands(snapshot, summary)
        cell_source_ids = self._load_cells(snapshot, station_source_ids, band_ids, summary)
        self._load_cell_details(snapshot, cell_source_ids, summary)
        self._load_permits(snapshot, region_ids, operator_ids, band_ids, summary)

        self.logger.info("Snapshot loaded: %d records inserted", summary.inserted)
        return summary

    # ------------------------------------------------------------------ #
    #  Stages
    # ------------------------------------------------------------------ #

    def _load_regions(self, snapshot: NetworkSnapshot, summary: LoadSummary) -> IdMap:
        self._begin("regions")
        ids = write_regions(self.engine, snapshot.regions, **self._options("regions"))
        summary.stages.append(StageStats.from_id_map("regions", ids))
        return ids

    def _load_operators(self, snapshot: NetworkSnapshot, summary: LoadSummary) -> IdMap:
        self._begin("operators")
        rows = [
            {
                "name": strip_company_suffix(op.name),
                "full_name": op.full_name or op.name,
                "mnc": op.mnc,
            }
            for op in snapshot.operators
        ]
        ids = write_operators(self.engine, rows, **self._options("operators"))
        summary.stages.append(StageStats.from_id_map("operators", ids))
        return ids

    def _load_locations(
        self, snapshot: NetworkSnapshot, region_ids: IdMap, summary: LoadSummary
    ) -> dict[Any, int]:
        self._begin("locations")
        ids = write_locations(
            self.engine,
            (
                {
                    "region_id": loc.region_name,
                    "city": loc.city,
                    "address": loc.address,
                    "longitude": loc.longitude,
                    "latitude": loc.latitude,
                }
                for loc in snapshot.locations
            ),
            region_ids=region_ids,
            **self._options("locations"),
        )
        summary.stages.append(StageStats.from_id_map("locations", ids))
        return {
            loc.source_id: ids[(loc.longitude, loc.latitude)]
            for loc in snapshot.locations
            if (loc.longitude, loc.latitude) in ids
        }

    def _load_stations(
        self,
        snapshot: NetworkSnapshot,
        operator_ids: IdMap,
        location_source_ids: dict[Any, int],
        summary: LoadSummary,
    ) -> dict[Any, int]:
        self._begin("stations")
        ids = write_stations(
            self.engine,
            (
                {
                    "station_id": st.station_id,
                    "operator_id": st.operator_mnc,
                    "location_id": st.location_source_id,
                    "notes": st.notes,
                }
                for st in snapshot.stations
            ),
            operator_ids=operator_ids,
            location_ids=location_source_ids,
            **self._options("stations"),
        )
        summary.stages.append(StageStats.from_id_map("stations", ids))

        source_ids = {}
        for st in snapshot.stations:
            operator_id = operator_ids.get(st.operator_mnc)
            station_id = ids.get(STATIONS.key_of(
                {"station_id": st.station_id, "operator_id": operator_id}
            ))
            if station_id is not None:
                source_ids[st.source_id] = station_id
        return source_ids

    def _load_bands(self, snapshot: NetworkSnapshot, summary: LoadSummary) -> IdMap:
        self._begin("bands")
        ids = write_bands(self.engine, snapshot.all_bands(), **self._options("bands"))
        summary.stages.append(StageStats.from_id_map("bands", ids))
        return ids

    def _load_cells(
        self,
        snapshot: NetworkSnapshot,
        station_source_ids: dict[Any, int],
        band_ids: IdMap,
        summary: LoadSummary,
    ) -> dict[Any, int]:
        self._begin("cells")
        ids = write_cells(
            self.engine,
            (
                {
                    "station_id": cell.station_source_id,
                    "band_id": cell.band.key,
                    "rat": cell.rat,
                    "cell_key": cell.cell_key,
                    "notes": cell.notes,
                }
                for cell in snapshot.cells
            ),
            station_ids=station_source_ids,
            band_ids=band_ids,
            **self._options("cells"),
        )
        summary.stages.append(StageStats.from_id_map("cells", ids))

        source_ids = {}
        for cell in snapshot.cells:
            key = CELLS.key_of({
                "station_id": station_source_ids.get(cell.station_source_id),
                "rat": cell.rat,
                "cell_key": cell.cell_key,
            })
            if key in ids:
                source_ids[cell.source_id] = ids[key]
        return source_ids

    def _load_cell_details(
        self,
        snapshot: NetworkSnapshot,
        cell_source_ids: dict[Any, int],
        summary: LoadSummary,
    ) -> None:
        by_rat: dict[str, list[dict[str, Any]]] = {}
        for cell in snapshot.cells:
            if cell.rat in DETAIL_KEY_COLUMNS and cell.details:
                by_rat.setdefault(cell.rat, []).append(
                    {"cell_id": cell.source_id, **cell.details}
                )

        for rat, details in by_rat.items():
            stage = f"{rat.lower()}_cells"
            self._begin(stage)
            ids = write_cell_details(
                self.engine, rat, details, cell_ids=cell_source_ids, **self._options(stage)
            )
            summary.stages.append(StageStats.from_id_map(stage, ids))

    def _load_permits(
        self,
        snapshot: NetworkSnapshot,
        region_ids: IdMap,
        operator_ids: IdMap,
        band_ids: IdMap,
        summary: LoadSummary,
    ) -> None:
        if not snapshot.permits:
            return

        self._begin("uke_locations")
        location_ids = write_locations(
            self.engine,
            (
                {
                    "region_id": p.region_name,
                    "city": p.city,
                    "address": p.address,
                    "longitude": p.longitude,
                    "latitude": p.latitude,
                }
                for p in snapshot.permits
            ),
            region_ids=region_ids,
            table=UKE_LOCATIONS,
            **self._options("uke_locations"),
        )
        summary.stages.append(StageStats.from_id_map("uke_locations", location_ids))

        self._begin("uke_permits")
        rows = [
            {
                "station_id": p.station_id,
                "operator_id": p.operator_mnc,
                "location_id": (p.longitude, p.latitude),
                "band_id": p.band.key,
                "decision_number": p.decision_number,
                "decision_type": p.decision_type,
                "expiry_date": p.expiry_date,
                "source": p.source,
            }
            for p in snapshot.permits
        ]
        permit_ids = write_permits(
            self.engine,
            rows,
            operator_ids=operator_ids,
            location_ids=location_ids,
            band_ids=band_ids,
            **self._options("uke_permits"),
        )
        summary.stages.append(StageStats.from_id_map("uke_permits", permit_ids))

        sectors = []
        for p, row in zip(snapshot.permits, rows):
            resolved = {
                **row,
                "operator_id": operator_ids.get(p.operator_mnc),
                "location_id": location_ids.get((p.longitude, p.latitude)),
                "band_id": band_ids.get(p.band.key),
            }
            for sector in p.sectors:
                sectors.append({
                    "permit_id": UKE_PERMITS.key_of(resolved),
                    "azimuth": sector.azimuth,
                    "elevation": sector.elevation,
                    "antenna_height": sector.antenna_height,
                    "antenna_type": sector.antenna_type,
                })
        if sectors:
            self._begin("uke_permit_sectors")
            ids = write_permit_sectors(
                self.engine, sectors, permit_ids=permit_ids, **self._options("uke_permit_sectors")
            )
            summary.stages.append(StageStats.from_id_map("uke_permit_sectors", ids))
