"""
Point-in-polygon lookup of Polish voivodeships.

Classes:
    RegionPolygon   - one Polygon tagged with its region
    RegionResolver  - STRtree-backed (lon, lat) -> TERYT code lookup

Usage:
    resolver = RegionResolver.from_geojson("data/voivodeships.geojson")
    code = resolver.resolve(18.6466, 54.352)       # "22"
    region = region_for_teryt(code)                 # RegionInfo("Pomorskie", "POM")

The resolver is built once per process and passed to whatever needs it.
The tree is never mutated after construction, so concurrent reads are safe.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from shapely import STRtree
from shapely.geometry import MultiPolygon, Point, Polygon, shape
from shapely.geometry.base import BaseGeometry

from uke_ingest.config import BOUNDARY_OVERRIDES, REGION_BY_TERYT_PREFIX, RegionInfo
from uke_ingest.exceptions import RegionDatasetError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegionPolygon:
    region_code: str
    region_name: str | None
    boundary: Polygon


def explode_multipolygons(
    features: Iterable[tuple[str, str | None, BaseGeometry]],
) -> list[RegionPolygon]:
    """
    Flatten ``(region_code, region_name, geometry)`` triples into single
    polygons. Each member of a MultiPolygon becomes its own RegionPolygon
    carrying the parent's code and name; non-polygonal geometries are dropped.
    """
    polygons: list[RegionPolygon] = []
    for code, name, geometry in features:
        if isinstance(geometry, Polygon):
            polygons.append(RegionPolygon(code, name, geometry))
        elif isinstance(geometry, MultiPolygon):
            polygons.extend(RegionPolygon(code, name, part) for part in geometry.geoms)
        else:
            logger.debug(
                "Ignoring %s geometry for region %s", geometry.geom_type, code
            )
    return polygons


def region_for_teryt(code: str | None) -> RegionInfo | None:
    if code is None:
        return None
    return REGION_BY_TERYT_PREFIX.get(code)


class RegionResolver:
    def __init__(
        self,
        polygons: list[RegionPolygon],
        overrides: Mapping[tuple[float, float], str] | None = None,
    ) -> None:
        self._polygons = list(polygons)
        self._overrides = dict(BOUNDARY_OVERRIDES if overrides is None else overrides)
        self._tree = STRtree([p.boundary for p in self._polygons])

    def __len__(self) -> int:
        return len(self._polygons)

    @property
    def overrides(self) -> dict[tuple[float, float], str]:
        return dict(self._overrides)

    def resolve(self, lon: float, lat: float) -> str | None:
        """
        Return the TERYT code of the region covering ``(lon, lat)``.

        Candidates come from the bounding-box index and are tested in
        dataset order; points on a shared border go to the first polygon
        listed. Points outside every polygon fall back to the literal
        override table, then to None.
        """
        point = Point(lon, lat)
        for idx in sorted(int(i) for i in self._tree.query(point)):
            candidate = self._polygons[idx]
            if candidate.boundary.covers(point):
                return candidate.region_code
        return self._overrides.get((lon, lat))

    @classmethod
    def from_geojson(
        cls,
        filepath: str | Path,
        code_property: str = "terc",
        name_property: str = "name",
        overrides: Mapping[tuple[float, float], str] | None = None,
    ) -> RegionResolver:
        """
        Load and index a voivodeship boundary FeatureCollection.

        Args:
            filepath:      GeoJSON file; each feature carries its TERYT code
                           in *code_property*.
            code_property: Property holding the two-digit TERYT code.
            name_property: Property holding the region name, if any.
            overrides:     Literal coordinate fallbacks. Defaults to
                           BOUNDARY_OVERRIDES.

        Raises:
            RegionDatasetError: the file is missing or contains no polygons.
        """
        import ijson

        filepath = Path(filepath)
        if not filepath.exists():
            raise RegionDatasetError(f"Region dataset not found: {filepath}")

        def _features() -> Iterable[tuple[str, str | None, BaseGeometry]]:
            with open(filepath, "rb") as f:
                for feat in ijson.items(f, "features.item", use_float=True):
                    props: dict[str, Any] = feat.get("properties") or {}
                    geom = feat.get("geometry")
                    code = props.get(code_property)
                    if geom is None or code is None:
                        logger.warning(
                            "Skipping feature without geometry or %s", code_property
                        )
                        continue
                    yield str(code).zfill(2), props.get(name_property), shape(geom)

        polygons = explode_multipolygons(_features())
        if not polygons:
            raise RegionDatasetError(f"No polygons found in {filepath}")

        logger.info("Indexed %d region polygons from %s", len(polygons), filepath)
        return cls(polygons, overrides=overrides)
