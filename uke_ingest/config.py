from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from pathlib import Path

STATIONS_URL = (
    "https://bip.uke.gov.pl/pozwolenia-radiowe/wykaz-pozwolen-radiowych-tresci/"
    "stacje-gsm-umts-lte-5gnr-oraz-cdma,12,0.html"
)

# Rows written per store round-trip.
BATCH_SIZE = 50

# Parsed rows accumulated before a chunk is pushed through the writers.
CHUNK_SIZE = 1000

PERMIT_EXPIRY = datetime(2099, 12, 31, 23, 59, 59, tzinfo=UTC)


@dataclass(frozen=True)
class RegionInfo:
    name: str
    code: str


@dataclass(frozen=True)
class OperatorInfo:
    name: str
    full_name: str
    mnc: int


# Voivodeships keyed by the two-digit TERYT prefix.
REGION_BY_TERYT_PREFIX: dict[str, RegionInfo] = {
    "02": RegionInfo("Dolnośląskie", "DLN"),
    "04": RegionInfo("Kujawsko-pomorskie", "KPM"),
    "06": RegionInfo("Lubelskie", "LUB"),
    "08": RegionInfo("Lubuskie", "LBS"),
    "10": RegionInfo("Łódzkie", "LDZ"),
    "12": RegionInfo("Małopolskie", "MLP"),
    "14": RegionInfo("Mazowieckie", "MAZ"),
    "16": RegionInfo("Opolskie", "OPO"),
    "18": RegionInfo("Podkarpackie", "PDK"),
    "20": RegionInfo("Podlaskie", "POD"),
    "22": RegionInfo("Pomorskie", "POM"),
    "24": RegionInfo("Śląskie", "SLK"),
    "26": RegionInfo("Świętokrzyskie", "SWK"),
    "28": RegionInfo("Warmińsko-mazurskie", "WRM"),
    "30": RegionInfo("Wielkopolskie", "WKP"),
    "32": RegionInfo("Zachodniopomorskie", "ZPM"),
}

# Operator keys as they appear in device-registry link texts.
PERMIT_FILE_OPERATORS: dict[str, OperatorInfo] = {
    "Plus": OperatorInfo("Plus", "Polkomtel Sp. z o.o.", 26001),
    "T-Mobile": OperatorInfo("T-Mobile", "T-Mobile Polska S.A.", 26002),
    "Orange": OperatorInfo("Orange", "Orange Polska S.A.", 26003),
    "Play": OperatorInfo("Play", "P4 Sp. z o.o.", 26006),
}

# Coastal points that fall just outside the digitised Pomorskie boundary.
BOUNDARY_OVERRIDES: dict[tuple[float, float], str] = {
    (18.576667, 54.448056): "22",
    (18.679444, 54.693056): "22",
    (18.576944, 54.448056): "22",
}


@dataclass
class ImporterConfig:
    """
    Runtime settings for an import run.

    Attributes:
        batch_size:           Rows per store write. None writes each chunk
                              in a single round-trip.
        chunk_size:           Parsed rows accumulated before the writer
                              cascade runs.
        download_dir:         Where source files are stored while processed.
        permits_devices_url:  Listing page of the device-registry files.
        stations_url:         Listing page of the per-band station permit
                              files.
        regions_geojson:      Voivodeship boundary dataset (GeoJSON with a
                              ``terc`` property per feature).
        target_schema:        Postgres schema holding the target tables.
        permit_expiry:        Expiry date stamped on device-registry permits.
    """

    batch_size: int | None = BATCH_SIZE
    chunk_size: int = CHUNK_SIZE
    download_dir: Path = field(default_factory=lambda: Path("downloads"))
    permits_devices_url: str = ""
    stations_url: str = STATIONS_URL
    regions_geojson: Path = field(default_factory=lambda: Path("data/voivodeships.geojson"))
    target_schema: str = "public"
    permit_expiry: datetime = PERMIT_EXPIRY

    ENV_PREFIX = "UKE_"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> ImporterConfig:
        """
        Build a config from ``UKE_*`` variables, e.g. ``UKE_BATCH_SIZE``,
        ``UKE_DOWNLOAD_DIR``, ``UKE_PERMITS_DEVICES_URL``. Unset variables
        keep their defaults.
        """
        environ = os.environ if environ is None else environ
        config = cls()
        for f in fields(cls):
            raw = environ.get(f"{cls.ENV_PREFIX}{f.name.upper()}")
            if raw is None or raw == "":
                continue
            if f.name in ("batch_size", "chunk_size"):
                value = int(raw)
            elif f.name in ("download_dir", "regions_geojson"):
                value = Path(raw)
            elif f.name == "permit_expiry":
                value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
            else:
                value = raw
            setattr(config, f.name, value)
        return config
