"""Command-line entry point: ``python -m uke_ingest <command>``."""

from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Sequence

from uke_ingest.config import ImporterConfig
from uke_ingest.db.core import DatabaseCredentials, PostgresEngine, ensure_schema, get_logger
from uke_ingest.exceptions import UkeIngestError
from uke_ingest.geo.region_resolver import RegionResolver
from uke_ingest.pipeline.device_registry import DeviceRegistryImporter
from uke_ingest.pipeline.permits import associate_stations_with_permits
from uke_ingest.pipeline.stations import StationsImporter
from uke_ingest.tracking.import_tracker import ImportTracker

COMMANDS = ("device-registry", "stations", "associate", "schema")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="uke-ingest",
        description="Import UKE permit and device registry data into Postgres.",
    )
    parser.add_argument("command", choices=COMMANDS)
    parser.add_argument("--env-file", default=".env", help="Path to the .env file (default: .env)")
    parser.add_argument("--env-prefix", default="POSTGRES_", help="Credential variable prefix (default: POSTGRES_)")
    parser.add_argument("--only-new-files", action="store_true", help="Only process files not seen by the last successful run")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return parser.parse_args(list(argv) if argv is not None else None)


def run_command(args: argparse.Namespace, engine: PostgresEngine | None = None) -> int:
    level = getattr(logging, args.log_level)
    logger = get_logger("uke_ingest", level=level)
    config = ImporterConfig.from_env()

    if engine is None:
        creds = DatabaseCredentials.from_env_file(args.env_file, args.env_prefix)
        logger.info("Connecting with %s", creds.redacted_connection_string)
        engine = PostgresEngine(creds)

    with engine:
        tracker = ImportTracker(engine, schema=config.target_schema)

        if args.command == "schema":
            ensure_schema(engine, config.target_schema)
            return 0

        if args.command == "associate":
            associate_stations_with_permits(
                engine, tracker, schema=config.target_schema, batch_size=config.batch_size
            )
            return 0

        if args.command == "stations":
            StationsImporter(engine=engine, tracker=tracker, config=config).run()
            return 0

        if not config.permits_devices_url:
            logger.error("UKE_PERMITS_DEVICES_URL is not set")
            return 1

        importer = DeviceRegistryImporter(
            engine=engine,
            resolver=RegionResolver.from_geojson(config.regions_geojson),
            tracker=tracker,
            config=config,
        )
        importer.run(only_new_files=args.only_new_files)
        return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        return run_command(args)
    except UkeIngestError as e:
        logging.getLogger("uke_ingest").error("Import failed: %s", e)
        return 1
    except Exception:
        logging.getLogger("uke_ingest").exception("Import failed")
        return 1


if __name__ == "__main__":
    sys.exit(main())
