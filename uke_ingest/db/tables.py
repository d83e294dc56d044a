from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Hashable


@dataclass(frozen=True)
class EntityTable:
    """
    Describes how one entity type is identified in the store.

    Attributes:
        name:            Target table name (unqualified).
        natural_key:     Columns forming the business identity of a row.
        lookup_column:   Single column used to re-read candidate rows after
                         a write. Must be one of the natural-key columns so
                         every candidate is reachable by ``= any(...)``.
        conflict_column: Conflict target for the insert. None skips rows
                         that violate any unique constraint on the table.
        id_column:       Surrogate identifier column.
    """

    name: str
    natural_key: tuple[str, ...]
    lookup_column: str
    conflict_column: tuple[str, ...] | None = None
    id_column: str = "id"

    def key_of(self, row: dict[str, Any]) -> Hashable:
        if len(self.natural_key) == 1:
            return row.get(self.natural_key[0])
        return tuple(row.get(c) for c in self.natural_key)

    @property
    def returning(self) -> tuple[str, ...]:
        cols = [self.id_column]
        cols.extend(c for c in self.natural_key if c != self.id_column)
        return tuple(cols)


REGIONS = EntityTable("regions", ("name",), lookup_column="name")
OPERATORS = EntityTable("operators", ("mnc",), lookup_column="mnc")
LOCATIONS = EntityTable(
    "locations",
    ("longitude", "latitude"),
    lookup_column="longitude",
    conflict_column=("longitude", "latitude"),
)
UKE_LOCATIONS = EntityTable(
    "uke_locations",
    ("longitude", "latitude"),
    lookup_column="longitude",
    conflict_column=("longitude", "latitude"),
)
STATIONS = EntityTable(
    "stations",
    ("station_id", "operator_id"),
    lookup_column="station_id",
    conflict_column=("station_id", "operator_id"),
)
BANDS = EntityTable("bands", ("rat", "value", "duplex"), lookup_column="value")
CELLS = EntityTable(
    "cells",
    ("station_id", "rat", "cell_key"),
    lookup_column="station_id",
    conflict_column=("station_id", "rat", "cell_key"),
)
GSM_CELLS = EntityTable(
    "gsm_cells", ("cell_id", "lac", "cid"), lookup_column="cell_id", id_column="cell_id"
)
UMTS_CELLS = EntityTable(
    "umts_cells", ("cell_id", "rnc", "cid"), lookup_column="cell_id", id_column="cell_id"
)
LTE_CELLS = EntityTable(
    "lte_cells", ("cell_id", "enbid", "clid"), lookup_column="cell_id", id_column="cell_id"
)
NR_CELLS = EntityTable(
    "nr_cells", ("cell_id", "gnbid", "clid"), lookup_column="cell_id", id_column="cell_id"
)
UKE_PERMITS = EntityTable(
    "uke_permits",
    (
        "station_id",
        "operator_id",
        "location_id",
        "band_id",
        "decision_number",
        "decision_type",
        "expiry_date",
    ),
    lookup_column="station_id",
    conflict_column=(
        "station_id",
        "operator_id",
        "location_id",
        "band_id",
        "decision_number",
        "decision_type",
        "expiry_date",
    ),
)
UKE_PERMIT_SECTORS = EntityTable(
    "uke_permit_sectors",
    ("permit_id", "azimuth", "elevation", "antenna_height", "antenna_type"),
    lookup_column="permit_id",
)
STATIONS_PERMITS = EntityTable(
    "stations_permits",
    ("station_id", "permit_id"),
    lookup_column="permit_id",
    conflict_column=("station_id", "permit_id"),
)

DETAIL_TABLES: dict[str, EntityTable] = {
    "GSM": GSM_CELLS,
    "UMTS": UMTS_CELLS,
    "LTE": LTE_CELLS,
    "NR": NR_CELLS,
}
