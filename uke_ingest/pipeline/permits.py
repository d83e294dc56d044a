from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from uke_ingest.writers.dedupe import chunked
from uke_ingest.writers.upserts import write_station_permits

logger = logging.getLogger(__name__)

DEVICE_REGISTRY_SOURCE = "device_registry"
STATIONS_PERMITS_IMPORT = "stations_permits"


def touch_permits(
    engine: Any, permit_ids: list[int], seen_at: datetime, schema: str = "public"
) -> None:
    """
    Stamp permits with the run start so the stale sweep keeps them.

    *seen_at* must be the same app-side timestamp later passed to
    ``sweep_stale_permits`` as *started_at*.
    """
    if not permit_ids:
        return
    engine.execute(
        f"update {schema}.uke_permits set updated_at = %(seen_at)s where id = any(%(ids)s)",
        {"seen_at": seen_at, "ids": [int(i) for i in permit_ids]},
    )


def sweep_stale_permits(
    engine: Any,
    operator_ids: list[int],
    started_at: datetime,
    import_id: int | None,
    schema: str = "public",
    batch_size: int | None = None,
) -> int:
    """
    Archive and delete device-registry permits the current run did not see.

    Only permits of *operator_ids* (the operators whose files were processed)
    with ``updated_at`` older than *started_at* are affected. Each one is
    copied as JSON into ``deleted_entries`` before it is removed.

    Returns:
        Number of permits deleted.
    """
    operator_ids = sorted({int(i) for i in operator_ids})
    if not operator_ids:
        logger.info("No processed operators, skipping stale permit sweep")
        return 0

    stale: list[dict[str, Any]] = []
    for batch in engine.query_batches(
        f"""
        select *
        from {schema}.uke_permits
        where
            source = %(source)s
            and operator_id = any(%(operator_ids)s)
            and updated_at < %(started_at)s
        order by id
        """,
        {
            "source": DEVICE_REGISTRY_SOURCE,
            "operator_ids": operator_ids,
            "started_at": started_at,
        },
    ):
        stale.extend(batch)

    if not stale:
        logger.info("Deleted 0 stale device registry permits")
        return 0

    for group in chunked(stale, batch_size):
        engine.ingest_batch(
            [
                {
                    "source_table": "uke_permits",
                    "source_id": row["id"],
                    "source_type": DEVICE_REGISTRY_SOURCE,
                    "data": row,
                    "import_id": import_id,
                }
                for row in group
            ],
            "deleted_entries",
            schema,
        )

    for group in chunked([row["id"] for row in stale], batch_size):
        engine.execute(
            f"delete from {schema}.uke_permits where id = any(%(ids)s)",
            {"ids": group},
        )

    logger.info("Deleted %d stale device registry permits", len(stale))
    return len(stale)


def associate_stations_with_permits(
    engine: Any,
    tracker: Any,
    schema: str = "public",
    batch_size: int | None = None,
) -> bool:
    """
    Link each permit to the station sharing its station identifier.

    Returns False (and still records a successful run) when there is
    nothing to link.
    """
    logger.info("Associating stations with permits...")
    permits = engine.query(f"select id, station_id from {schema}.uke_permits")
    if permits.empty:
        logger.info("No permits found, skipping association")
        tracker.record_success(STATIONS_PERMITS_IMPORT, [])
        return False

    station_codes = sorted(set(permits["station_id"]))
    logger.info("Looking for %d unique station IDs", len(station_codes))
    stations = engine.select_in(
        "stations", schema, "station_id", station_codes, columns=("id", "station_id")
    )
    if not stations:
        logger.info("No matching stations found, skipping association")
        tracker.record_success(STATIONS_PERMITS_IMPORT, [])
        return False

    station_id_map = {s["station_id"]: int(s["id"]) for s in stations}
    pairs = [
        {"station_id": station_id_map[p.station_id], "permit_id": int(p.id)}
        for p in permits.itertuples(index=False)
        if p.station_id in station_id_map
    ]
    if not pairs:
        logger.info("No associations to create")
        tracker.record_success(STATIONS_PERMITS_IMPORT, [])
        return False

    logger.info("Creating %d associations", len(pairs))
    write_station_permits(engine, pairs, schema=schema, batch_size=batch_size)
    tracker.record_success(STATIONS_PERMITS_IMPORT, [])
    logger.info("Association completed successfully")
    return True
