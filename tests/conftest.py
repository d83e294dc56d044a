from __future__ import annotations

import re
from collections import defaultdict
from datetime import UTC, datetime, timedelta
from typing import Any

import pandas as pd
import pytest
from shapely.geometry import MultiPolygon, Polygon

from uke_ingest.db import tables
from uke_ingest.geo.region_resolver import RegionPolygon, RegionResolver

TABLES_BY_NAME = {
    t.name: t
    for t in vars(tables).values()
    if isinstance(t, tables.EntityTable)
}

# Columns the database fills in on insert.
TIMESTAMPED = {"uke_permits", "locations", "uke_locations", "stations", "cells"}


class FakeStore:
    """
    In-memory stand-in for PostgresEngine.

    Enforces the natural-key uniqueness of every EntityTable, hands out
    sequential ids per table, and understands the handful of raw SQL
    statements the pipeline issues.
    """

    def __init__(self) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self._next_id: dict[str, int] = defaultdict(int)
        self.writes: list[tuple[str, str]] = []
        self.executed: list[str] = []
        # Offset of the database clock from the app clock.
        self.clock_offset = timedelta(0)

    # -- helpers ------------------------------------------------------------

    def now(self) -> datetime:
        return datetime.now(UTC) + self.clock_offset

    def _store(self, table: str, row: dict[str, Any], id_column: str = "id") -> dict:
        stored = dict(row)
        if id_column not in stored:
            self._next_id[table] += 1
            stored[id_column] = self._next_id[table]
        if table in TIMESTAMPED:
            stored.setdefault("updated_at", self.now())
        self.tables[table].append(stored)
        return stored

    def rows(self, table: str) -> list[dict[str, Any]]:
        return list(self.tables.get(table, []))

    def write_count(self) -> int:
        return len(self.writes)

    # -- store interface ----------------------------------------------------

    def insert_ignoring_conflicts(
        self,
        rows,
        target_table,
        target_schema,
        conflict_column=None,
        returning=("id",),
    ):
        if not rows:
            return []
        self.writes.append(("insert", target_table))
        desc = TABLES_BY_NAME[target_table]
        existing = {desc.key_of(r) for r in self.tables[target_table]}
        inserted = []
        for row in rows:
            key = desc.key_of(row)
            if key in existing:
                continue
            existing.add(key)
            stored = self._store(target_table, row, desc.id_column)
            inserted.append({c: stored.get(c) for c in returning})
        return inserted

    def select_in(self, target_table, target_schema, column, values, columns=None):
        wanted = set(values)
        if not wanted:
            return []
        found = [r for r in self.tables.get(target_table, []) if r.get(column) in wanted]
        if columns is None:
            return [dict(r) for r in found]
        return [{c: r.get(c) for c in columns} for r in found]

    def insert_returning(self, row, target_table, target_schema, returning=("id",)):
        self.writes.append(("insert_returning", target_table))
        stored = self._store(target_table, row)
        return {c: stored.get(c) for c in returning}

    def ingest_batch(self, rows, target_table, target_schema):
        if not rows:
            return 0
        self.writes.append(("ingest", target_table))
        for row in rows:
            self._store(target_table, row)
        return len(rows)

    def execute(self, sql, params=None):
        self.writes.append(("execute", sql.split()[0].lower()))
        self.executed.append(sql)
        ids = set((params or {}).get("ids", []))
        if re.match(r"\s*update \S+\.uke_permits set updated_at", sql):
            for row in self.tables["uke_permits"]:
                if row["id"] in ids:
                    row["updated_at"] = params["seen_at"]
        elif re.match(r"\s*delete from \S+\.uke_permits", sql):
            self.tables["uke_permits"] = [
                r for r in self.tables["uke_permits"] if r["id"] not in ids
            ]

    def query(self, sql, params=None):
        params = params or {}
        if "uke_import_metadata" in sql:
            runs = [
                r
                for r in self.tables["uke_import_metadata"]
                if r["import_type"] == params["import_type"] and r["status"] == "success"
            ]
            runs.sort(key=lambda r: (r["last_import_date"], r["id"]), reverse=True)
            return pd.DataFrame(
                [{"file_list": r["file_list"]} for r in runs[:1]], columns=["file_list"]
            )
        if "from public.uke_permits" in sql:
            return pd.DataFrame(
                [{"id": r["id"], "station_id": r["station_id"]} for r in self.tables["uke_permits"]],
                columns=["id", "station_id"],
            )
        raise AssertionError(f"Unexpected query: {sql}")

    def query_batches(self, sql, params=None, batch_size=10000):
        params = params or {}
        stale = [
            dict(r)
            for r in self.tables["uke_permits"]
            if r.get("source") == params["source"]
            and r["operator_id"] in params["operator_ids"]
            and r["updated_at"] < params["started_at"]
        ]
        for start in range(0, len(stale), batch_size):
            yield stale[start : start + batch_size]


@pytest.fixture
def store():
    return FakeStore()


def square(x0: float, y0: float, size: float) -> Polygon:
    return Polygon([(x0, y0), (x0 + size, y0), (x0 + size, y0 + size), (x0, y0 + size)])


@pytest.fixture
def resolver():
    """
    Two synthetic regions: Mazowieckie ("14") as one square around
    (20-22E, 51-53N) and Pomorskie ("22") as two islands further north.
    """
    return RegionResolver(
        [
            RegionPolygon("14", "Mazowieckie", square(20.0, 51.0, 2.0)),
            *(
                RegionPolygon("22", "Pomorskie", part)
                for part in MultiPolygon([square(17.0, 54.0, 1.0), square(19.0, 54.0, 0.4)]).geoms
            ),
        ]
    )
