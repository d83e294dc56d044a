from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from uke_ingest import cli
from uke_ingest.config import BATCH_SIZE, PERMIT_EXPIRY, STATIONS_URL, ImporterConfig


class TestImporterConfig:
    def test_defaults(self):
        config = ImporterConfig()
        assert config.batch_size == BATCH_SIZE
        assert config.chunk_size == 1000
        assert config.target_schema == "public"
        assert config.stations_url == STATIONS_URL
        assert config.permit_expiry == datetime(2099, 12, 31, 23, 59, 59, tzinfo=UTC)

    def test_from_env(self):
        config = ImporterConfig.from_env({
            "UKE_BATCH_SIZE": "200",
            "UKE_DOWNLOAD_DIR": "/tmp/uke",
            "UKE_PERMITS_DEVICES_URL": "https://uke.example/list",
            "UKE_PERMIT_EXPIRY": "2030-01-01T00:00:00Z",
            "UKE_CHUNK_SIZE": "",
        })
        assert config.batch_size == 200
        assert config.chunk_size == 1000
        assert config.download_dir == Path("/tmp/uke")
        assert config.permits_devices_url == "https://uke.example/list"
        assert config.permit_expiry == datetime(2030, 1, 1, tzinfo=UTC)

    def test_from_env_ignores_unrelated(self):
        assert ImporterConfig.from_env({"OTHER": "x"}).permit_expiry == PERMIT_EXPIRY


class TestParseArgs:
    def test_defaults(self):
        args = cli.parse_args(["device-registry"])
        assert args.command == "device-registry"
        assert args.env_file == ".env"
        assert args.only_new_files is False
        assert args.log_level == "INFO"

    def test_rejects_unknown_command(self):
        with pytest.raises(SystemExit):
            cli.parse_args(["radiolines"])


class TestRunCommand:
    @pytest.fixture
    def engine(self):
        engine = MagicMock()
        engine.__enter__.return_value = engine
        return engine

    def test_schema(self, engine, monkeypatch):
        monkeypatch.delenv("UKE_TARGET_SCHEMA", raising=False)
        with patch.object(cli, "ensure_schema") as ensure:
            assert cli.run_command(cli.parse_args(["schema"]), engine=engine) == 0
        ensure.assert_called_once_with(engine, "public")

    def test_associate(self, engine):
        with patch.object(cli, "associate_stations_with_permits") as associate:
            assert cli.run_command(cli.parse_args(["associate"]), engine=engine) == 0
        associate.assert_called_once()

    def test_stations_runs_importer(self, engine):
        with patch.object(cli, "StationsImporter") as importer_cls:
            assert cli.run_command(cli.parse_args(["stations"]), engine=engine) == 0
        importer_cls.return_value.run.assert_called_once_with()
        assert importer_cls.call_args.kwargs["engine"] is engine

    def test_device_registry_requires_url(self, engine, monkeypatch):
        monkeypatch.delenv("UKE_PERMITS_DEVICES_URL", raising=False)
        assert cli.run_command(cli.parse_args(["device-registry"]), engine=engine) == 1

    def test_device_registry_runs_importer(self, engine, monkeypatch):
        monkeypatch.setenv("UKE_PERMITS_DEVICES_URL", "https://uke.example/list")
        with patch.object(cli, "RegionResolver") as resolver_cls, \
                patch.object(cli, "DeviceRegistryImporter") as importer_cls:
            code = cli.run_command(
                cli.parse_args(["device-registry", "--only-new-files"]), engine=engine
            )
        assert code == 0
        resolver_cls.from_geojson.assert_called_once()
        importer_cls.return_value.run.assert_called_once_with(only_new_files=True)

    def test_main_returns_one_on_failure(self, monkeypatch):
        monkeypatch.setattr(cli, "run_command", MagicMock(side_effect=RuntimeError("db down")))
        assert cli.main(["schema"]) == 1
