"""
Idempotent writers for every entity of the permit/station graph.

Each writer deduplicates its candidates by natural key, inserts them in
batches while skipping rows that already exist, logs every skipped row, and
finally re-reads the table to build a ``natural key -> id`` map covering
both new rows and rows left by earlier runs.

Usage:
    region_ids = write_regions(engine, REGION_BY_TERYT_PREFIX.values())
    location_ids = write_locations(
        engine, rows, region_ids=region_ids, table=UKE_LOCATIONS, batch_size=50
    )
    location_ids[(18.646667, 54.352222)]     # -> 1234
    location_ids.inserted, location_ids.skipped
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Hashable, Iterable, Mapping
from typing import Any

from uke_ingest.db.tables import (
    BANDS,
    CELLS,
    DETAIL_TABLES,
    LOCATIONS,
    OPERATORS,
    REGIONS,
    STATIONS,
    STATIONS_PERMITS,
    UKE_PERMIT_SECTORS,
    UKE_PERMITS,
    EntityTable,
)
from uke_ingest.exceptions import ImportCancelledError
from uke_ingest.parsers.bands import BandKey
from uke_ingest.writers.dedupe import chunked, dedupe_by

logger = logging.getLogger(__name__)

# Values per ``= any(...)`` re-query.
LOOKUP_BATCH_SIZE = 10000

# Technology identity columns of each cell-detail table.
DETAIL_KEY_COLUMNS: dict[str, tuple[str, str]] = {
    "GSM": ("lac", "cid"),
    "UMTS": ("rnc", "cid"),
    "LTE": ("enbid", "clid"),
    "NR": ("gnbid", "clid"),
}


class IdMap(dict):
    """
    ``natural key -> surrogate id`` for one entity type, plus the counts of
    the write that produced it.
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.candidates = 0
        self.inserted = 0
        self.skipped = 0
        self.dropped = 0


def _describe(row: Mapping[str, Any], table: EntityTable) -> str:
    extras = {
        k: v for k, v in row.items() if k not in table.natural_key and v is not None
    }
    return ", ".join(f"{k}={v!r}" for k, v in extras.items())


def _check_cancelled(cancel_event: threading.Event | None, table: EntityTable) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise ImportCancelledError(f"Import cancelled before writing {table.name}")


def build_id_map(
    engine: Any,
    table: EntityTable,
    candidates: list[dict[str, Any]],
    schema: str = "public",
) -> IdMap:
    """Re-read *table* for every candidate and map natural keys to ids."""
    wanted = {table.key_of(row) for row in candidates}
    lookup_values = dedupe_by(
        (row[table.lookup_column] for row in candidates
         if row.get(table.lookup_column) is not None),
        lambda v: v,
    )

    id_map = IdMap()
    for values in chunked(lookup_values, LOOKUP_BATCH_SIZE):
        for row in engine.select_in(
            table.name, schema, table.lookup_column, values, columns=table.returning
        ):
            key = table.key_of(row)
            if key in wanted:
                id_map[key] = row[table.id_column]
    return id_map


def write_entities(
    engine: Any,
    table: EntityTable,
    rows: Iterable[dict[str, Any]],
    *,
    schema: str = "public",
    batch_size: int | None = None,
    on_progress: Callable[[int], None] | None = None,
    cancel_event: threading.Event | None = None,
) -> IdMap:
    """
    Insert *rows* into *table*, ignoring rows that already exist, and return
    the ``natural key -> id`` map for every candidate.

    Args:
        engine:       Store exposing ``insert_ignoring_conflicts`` and
                      ``select_in`` (a PostgresEngine in production).
        table:        Entity descriptor naming the table and its natural key.
        rows:         Candidate rows whose keys are column names.
        schema:       Target schema.
        batch_size:   Rows per insert. None writes all candidates at once.
        on_progress:  Called with the size of each batch once it is written.
        cancel_event: Checked before each batch; when set, raises
                      ImportCancelledError without touching the store again.

    Returns:
        An IdMap built from a fresh read of the table, so rows inserted by
        earlier runs resolve as well as rows inserted now.
    """
    candidates = dedupe_by(rows, table.key_of)
    inserted_total = 0
    skipped_total = 0

    for batch in chunked(candidates, batch_size):
        _check_cancelled(cancel_event, table)
        inserted = engine.insert_ignoring_conflicts(
            batch,
            table.name,
            schema,
            conflict_column=list(table.conflict_column) if table.conflict_column else None,
            returning=table.returning,
        )
        inserted_keys = {table.key_of(r) for r in inserted}
        for row in batch:
            key = table.key_of(row)
            if key not in inserted_keys:
                skipped_total += 1
                logger.warning(
                    "Skipped existing %s row %r (%s)", table.name, key, _describe(row, table)
                )
        inserted_total += len(inserted)
        if on_progress is not None:
            on_progress(len(batch))

    id_map = build_id_map(engine, table, candidates, schema) if candidates else IdMap()
    id_map.candidates = len(candidates)
    id_map.inserted = inserted_total
    id_map.skipped = skipped_total

    logger.info(
        "%s: %d candidates, %d inserted, %d already present, %d ids resolved",
        table.name,
        len(candidates),
        inserted_total,
        skipped_total,
        len(id_map),
    )
    return id_map


def resolve_foreign_keys(
    rows: Iterable[dict[str, Any]],
    field: str,
    id_map: Mapping[Hashable, int],
    entity: str,
    key_fn: Callable[[dict[str, Any]], Hashable] | None = None,
) -> list[dict[str, Any]]:
    """
    Swap the parent natural key held in ``row[field]`` for the parent's id.

    Rows whose parent is missing from *id_map* are dropped, each with one
    warning naming the unresolved key. *key_fn* overrides how the parent key
    is read from a row.
    """
    resolved = []
    for row in rows:
        parent_key = key_fn(row) if key_fn is not None else row.get(field)
        parent_id = id_map.get(parent_key)
        if parent_id is None:
            logger.warning(
                "Dropping %s row: unresolved %s %r", entity, field, parent_key
            )
            continue
        resolved.append({**row, field: parent_id})
    return resolved


def _resolve_all(
    rows: Iterable[dict[str, Any]],
    entity: str,
    parents: list[tuple[str, Mapping[Hashable, int] | None]],
) -> tuple[list[dict[str, Any]], int]:
    rows = list(rows)
    total = len(rows)
    for field, id_map in parents:
        if id_map is not None:
            rows = resolve_foreign_keys(rows, field, id_map, entity)
    return rows, total - len(rows)


def _write_resolved(
    engine: Any,
    table: EntityTable,
    rows: Iterable[dict[str, Any]],
    parents: list[tuple[str, Mapping[Hashable, int] | None]],
    **options: Any,
) -> IdMap:
    resolved, dropped = _resolve_all(rows, table.name, parents)
    id_map = write_entities(engine, table, resolved, **options)
    id_map.dropped = dropped
    return id_map


# ------------------------------------------------------------------ #
#  Per-entity writers
# ------------------------------------------------------------------ #


def write_regions(engine: Any, regions: Iterable[Any], **options: Any) -> IdMap:
    """Regions keyed by name. Accepts RegionInfo objects or dicts."""
    rows = []
    for region in regions:
        name = region["name"] if isinstance(region, Mapping) else region.name
        code = region["code"] if isinstance(region, Mapping) else region.code
        if name and code:
            rows.append({"name": name, "code": code})
    return write_entities(engine, REGIONS, rows, **options)


def write_operators(engine: Any, operators: Iterable[Any], **options: Any) -> IdMap:
    """Operators keyed by MNC. Accepts OperatorInfo objects or dicts."""
    rows = []
    for op in operators:
        row = dict(op) if isinstance(op, Mapping) else {
            "name": op.name,
            "full_name": op.full_name,
            "mnc": op.mnc,
        }
        if row.get("mnc") is None:
            logger.warning("Skipping operator %r without an MNC", row.get("name"))
            continue
        rows.append(row)
    return write_entities(engine, OPERATORS, rows, **options)


def write_locations(
    engine: Any,
    locations: Iterable[dict[str, Any]],
    region_ids: Mapping[Hashable, int] | None = None,
    table: EntityTable = LOCATIONS,
    **options: Any,
) -> IdMap:
    """
    Locations keyed by ``(longitude, latitude)``. Rows reference their
    region by name in ``region_id``.
    """
    rows = (
        {
            "region_id": loc["region_id"],
            "city": loc.get("city"),
            "address": loc.get("address"),
            "longitude": loc["longitude"],
            "latitude": loc["latitude"],
        }
        for loc in locations
    )
    return _write_resolved(engine, table, rows, [("region_id", region_ids)], **options)


def write_stations(
    engine: Any,
    stations: Iterable[dict[str, Any]],
    operator_ids: Mapping[Hashable, int] | None = None,
    location_ids: Mapping[Hashable, int] | None = None,
    **options: Any,
) -> IdMap:
    """
    Stations keyed by ``(station_id, operator_id)``. ``operator_id`` holds
    the operator's MNC and ``location_id`` its ``(lon, lat)`` pair until
    resolved.
    """
    return _write_resolved(
        engine,
        STATIONS,
        stations,
        [("operator_id", operator_ids), ("location_id", location_ids)],
        **options,
    )


def write_bands(engine: Any, bands: Iterable[BandKey], **options: Any) -> IdMap:
    """Bands keyed by ``(rat, value, duplex)``."""
    return write_entities(engine, BANDS, (b.as_row() for b in bands), **options)


def write_cells(
    engine: Any,
    cells: Iterable[dict[str, Any]],
    station_ids: Mapping[Hashable, int] | None = None,
    band_ids: Mapping[Hashable, int] | None = None,
    **options: Any,
) -> IdMap:
    """
    Cells keyed by ``(station_id, rat, cell_key)``. ``station_id`` holds the
    station's natural key and ``band_id`` the band's until resolved.
    """
    return _write_resolved(
        engine,
        CELLS,
        cells,
        [("station_id", station_ids), ("band_id", band_ids)],
        **options,
    )


def write_cell_details(
    engine: Any,
    rat: str,
    details: Iterable[dict[str, Any]],
    cell_ids: Mapping[Hashable, int] | None = None,
    **options: Any,
) -> IdMap:
    """
    Technology-specific cell rows for *rat* (GSM, UMTS, LTE or NR), keyed by
    ``(cell_id, <identity columns>)``. Rows missing an identity column are
    dropped with a warning.
    """
    table = DETAIL_TABLES[rat]
    key_columns = DETAIL_KEY_COLUMNS[rat]

    complete = []
    incomplete = 0
    for row in details:
        missing = [c for c in key_columns if row.get(c) is None]
        if missing:
            incomplete += 1
            logger.warning(
                "Dropping %s row for cell %r: missing %s",
                table.name,
                row.get("cell_id"),
                ", ".join(missing),
            )
            continue
        complete.append(row)

    id_map = _write_resolved(engine, table, complete, [("cell_id", cell_ids)], **options)
    id_map.dropped += incomplete
    return id_map


def write_permits(
    engine: Any,
    permits: Iterable[dict[str, Any]],
    operator_ids: Mapping[Hashable, int] | None = None,
    location_ids: Mapping[Hashable, int] | None = None,
    band_ids: Mapping[Hashable, int] | None = None,
    **options: Any,
) -> IdMap:
    """
    Permits keyed by the seven-column permit identity. Parent references may
    be given as natural keys together with the matching id maps.
    """
    return _write_resolved(
        engine,
        UKE_PERMITS,
        permits,
        [
            ("operator_id", operator_ids),
            ("location_id", location_ids),
            ("band_id", band_ids),
        ],
        **options,
    )


def write_permit_sectors(
    engine: Any,
    sectors: Iterable[dict[str, Any]],
    permit_ids: Mapping[Hashable, int] | None = None,
    **options: Any,
) -> IdMap:
    return _write_resolved(
        engine, UKE_PERMIT_SECTORS, sectors, [("permit_id", permit_ids)], **options
    )


def write_station_permits(
    engine: Any, pairs: Iterable[dict[str, Any]], **options: Any
) -> IdMap:
    return write_entities(engine, STATIONS_PERMITS, pairs, **options)
