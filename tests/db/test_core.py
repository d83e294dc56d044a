import json
from datetime import UTC, datetime
from unittest.mock import MagicMock
from urllib.parse import quote_plus

import pandas as pd
import psycopg2
import pytest

from uke_ingest.db.core import DatabaseCredentials, PostgresEngine, ensure_schema


@pytest.fixture
def sample_creds():
    return DatabaseCredentials(
        host="db.example.com",
        port=5432,
        database="btsearch",
        username="etl_user",
        password="s3cret!@#",
    )


@pytest.fixture
def mock_cursor():
    cur = MagicMock()
    cur.description = [("col_a",), ("col_b",)]
    cur.fetchall.return_value = [("val1", "val2"), ("val3", "val4")]
    cur.rowcount = 2
    cur.close.return_value = None
    return cur


@pytest.fixture
def mock_conn(mock_cursor):
    conn = MagicMock()
    conn.closed = False
    conn.cursor.return_value = mock_cursor
    conn.commit.return_value = None
    conn.rollback.return_value = None
    return conn


@pytest.fixture
def engine(mock_conn, sample_creds):
    eng = PostgresEngine(sample_creds)
    eng._conn = mock_conn
    return eng


def executed_sql(mock_cursor) -> list[str]:
    return [c[0][0] for c in mock_cursor.execute.call_args_list if c[0]]


class TestDatabaseCredentials:
    def test_direct_construction(self, sample_creds):
        assert sample_creds.host == "db.example.com"
        assert sample_creds.port == 5432
        assert sample_creds.database == "btsearch"
        assert sample_creds.driver == "postgresql"

    def test_connection_string(self, sample_creds):
        cs = sample_creds.connection_string
        assert cs.startswith("postgresql://etl_user:")
        assert "@db.example.com:5432/btsearch" in cs
        assert quote_plus("s3cret!@#") in cs

    def test_redacted_connection_string(self, sample_creds):
        rcs = sample_creds.redacted_connection_string
        assert "s3cret" not in rcs
        assert "db.example.com" not in rcs
        assert rcs == "postgresql://etl_user:****@****:5432/btsearch"

    def test_str_redacts_sensitive_fields(self, sample_creds):
        s = str(sample_creds)
        assert "s3cret" not in s
        assert "db.example.com" not in s
        assert "etl_user" in s
        assert repr(sample_creds) == s

    # -- from_env_file -------------------------------------------------------

    def test_from_env_file(self, tmp_path):
        env = tmp_path / ".env"
        env.write_text(
            "# comment\n"
            "POSTGRES_HOST=localhost\n"
            "POSTGRES_PORT=5433\n"
            "POSTGRES_DATABASE=btsearch\n"
            "POSTGRES_USER='admin'\n"
            'POSTGRES_PASSWORD="pw"\n'
        )
        creds = DatabaseCredentials.from_env_file(env, "POSTGRES_")
        assert creds.host == "localhost"
        assert creds.port == 5433
        assert creds.username == "admin"
        assert creds.password == "pw"

    def test_from_env_file_falls_back_to_environ(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PG_HOST", "envhost")
        monkeypatch.setenv("PG_DATABASE", "db")
        monkeypatch.setenv("PG_USER", "u")
        monkeypatch.setenv("PG_PASSWORD", "p")
        creds = DatabaseCredentials.from_env_file(tmp_path / "missing.env", "PG_")
        assert creds.host == "envhost"
        assert creds.port == 5432

    def test_from_env_file_missing_variable(self, tmp_path, monkeypatch):
        monkeypatch.delenv("NOPE_HOST", raising=False)
        with pytest.raises(ValueError, match="NOPE_HOST"):
            DatabaseCredentials.from_env_file(tmp_path / "missing.env", "NOPE_")


class TestPgRetry:
    def test_retries_on_operational_error(self, engine, mock_cursor):
        mock_cursor.execute.side_effect = [
            psycopg2.OperationalError("connection reset"),
            None,
        ]
        engine.query("SELECT 1")
        assert mock_cursor.execute.call_count == 2

    def test_no_retry_on_programming_error(self, engine, mock_cursor):
        mock_cursor.execute.side_effect = psycopg2.ProgrammingError("syntax error")
        with pytest.raises(psycopg2.ProgrammingError):
            engine.query("SELECT bad syntax")
        assert mock_cursor.execute.call_count == 1

    def test_exhausts_retries(self, engine, mock_cursor):
        mock_cursor.execute.side_effect = psycopg2.OperationalError("down")
        with pytest.raises(psycopg2.OperationalError):
            engine.query("SELECT 1")
        assert mock_cursor.execute.call_count == 3

    def test_check_violation_is_not_retried(self, engine, mock_cursor):
        mock_cursor.execute.side_effect = psycopg2.IntegrityError("check constraint")
        with pytest.raises(psycopg2.IntegrityError):
            engine.execute("insert into t values (1)")
        assert mock_cursor.execute.call_count == 1


class TestQueries:
    def test_query_returns_dataframe(self, engine, mock_cursor):
        mock_cursor.description = [("id",), ("name",)]
        mock_cursor.fetchall.return_value = [(1, "Plus"), (2, "Play")]
        df = engine.query("SELECT id, name FROM operators WHERE mnc = %s", params=(26001,))
        assert isinstance(df, pd.DataFrame)
        assert list(df.columns) == ["id", "name"]
        assert len(df) == 2

    def test_transaction_rolls_back_on_error(self, engine, mock_conn, mock_cursor):
        mock_cursor.execute.side_effect = psycopg2.ProgrammingError("boom")
        with pytest.raises(psycopg2.ProgrammingError):
            engine.execute("DROP TABLE nope")
        mock_conn.rollback.assert_called()

    def test_query_batches_yields_dicts(self, engine, mock_conn):
        batch_cursor = MagicMock()
        batch_cursor.description = [("x",)]
        batch_cursor.fetchmany.side_effect = [[(1,), (2,)], []]
        mock_conn.cursor.return_value = batch_cursor

        batches = list(engine.query_batches("SELECT x FROM t", batch_size=100))
        assert batches == [[{"x": 1}, {"x": 2}]]
        mock_conn.commit.assert_called()


class TestSelectIn:
    def test_empty_values_skip_database(self, engine, mock_cursor):
        assert engine.select_in("bands", "public", "value", []) == []
        mock_cursor.execute.assert_not_called()

    def test_builds_any_query(self, engine, mock_cursor):
        mock_cursor.description = [("id",), ("name",)]
        mock_cursor.fetchall.return_value = [(3, "Pomorskie")]

        rows = engine.select_in(
            "regions", "public", "name", ["Pomorskie"], columns=("id", "name")
        )

        sql, params = mock_cursor.execute.call_args[0]
        assert sql == 'select "id", "name" from public.regions where "name" = any(%(values)s)'
        assert params == {"values": ["Pomorskie"]}
        assert rows == [{"id": 3, "name": "Pomorskie"}]

    def test_select_star_without_columns(self, engine, mock_cursor):
        engine.select_in("regions", "public", "name", ["Pomorskie"])
        assert executed_sql(mock_cursor)[0].startswith("select * from public.regions")


class TestInsertIgnoringConflicts:
    def test_empty_rows_return_empty_list(self, engine, mock_cursor):
        assert engine.insert_ignoring_conflicts([], "regions", "public") == []
        mock_cursor.execute.assert_not_called()

    def test_bare_on_conflict(self, engine, mock_cursor):
        mock_cursor.description = [("id",), ("name",)]
        mock_cursor.fetchall.return_value = [(1, "Pomorskie")]

        inserted = engine.insert_ignoring_conflicts(
            [{"name": "Pomorskie", "code": "POM"}, {"name": "Opolskie", "code": "OPO"}],
            "regions",
            "public",
            returning=("id", "name"),
        )

        sqls = executed_sql(mock_cursor)
        assert "create temp table _staging" in sqls[0]
        insert_sql = [s for s in sqls if s.startswith("insert into")][0]
        assert insert_sql.endswith('on conflict do nothing returning "id", "name"')
        assert inserted == [{"id": 1, "name": "Pomorskie"}]
        mock_cursor.copy_expert.assert_called_once()

    def test_composite_conflict_target(self, engine, mock_cursor):
        mock_cursor.description = [("id",)]
        mock_cursor.fetchall.return_value = []
        engine.insert_ignoring_conflicts(
            [{"longitude": 18.1, "latitude": 54.2, "region_id": 1}],
            "uke_locations",
            "public",
            conflict_column=["longitude", "latitude"],
        )
        insert_sql = [s for s in executed_sql(mock_cursor) if s.startswith("insert into")][0]
        assert 'on conflict ("longitude", "latitude") do nothing' in insert_sql

    def test_single_conflict_column_string(self, engine, mock_cursor):
        mock_cursor.description = [("id",)]
        mock_cursor.fetchall.return_value = []
        engine.insert_ignoring_conflicts(
            [{"mnc": 26001, "name": "Plus"}], "operators", "public", conflict_column="mnc"
        )
        insert_sql = [s for s in executed_sql(mock_cursor) if s.startswith("insert into")][0]
        assert 'on conflict ("mnc") do nothing' in insert_sql


class TestCopyBuffer:
    def test_nulls_and_escaping(self):
        buf = PostgresEngine._rows_to_copy_buffer(
            [{"a": None, "b": "x\ty\nz", "c": "back\\slash"}], ["a", "b", "c"]
        )
        assert buf.getvalue() == "\\N\tx y z\tback\\\\slash\n"

    def test_carriage_returns_flattened(self):
        buf = PostgresEngine._rows_to_copy_buffer(
            [{"address": "ul. Długa 1\r\nlok. 2", "city": "Gdańsk\r"}], ["address", "city"]
        )
        assert buf.getvalue() == "ul. Długa 1  lok. 2\tGdańsk \n"
        assert "\r" not in buf.getvalue()

    def test_datetime_rendered_as_text(self):
        ts = datetime(2099, 12, 31, 23, 59, 59, tzinfo=UTC)
        buf = PostgresEngine._rows_to_copy_buffer([{"expiry_date": ts}], ["expiry_date"])
        assert buf.getvalue() == "2099-12-31 23:59:59+00:00\n"

    def test_json_values_serialized(self):
        rows = PostgresEngine._normalize_json_values(
            [{"data": {"id": 1, "updated_at": datetime(2024, 1, 1)}}]
        )
        assert json.loads(rows[0]["data"]) == {"id": 1, "updated_at": "2024-01-01 00:00:00"}


class TestInsertReturningAndIngest:
    def test_insert_returning(self, engine, mock_cursor):
        mock_cursor.description = [("id",)]
        mock_cursor.fetchone.return_value = (7,)
        row = engine.insert_returning(
            {"import_type": "permits", "status": "success"}, "uke_import_metadata", "public"
        )
        sql = executed_sql(mock_cursor)[0]
        assert sql.startswith('insert into public.uke_import_metadata ("import_type", "status")')
        assert sql.endswith('returning "id"')
        assert row == {"id": 7}

    def test_ingest_batch_appends(self, engine, mock_cursor):
        mock_cursor.rowcount = 1
        count = engine.ingest_batch(
            [{"source_table": "uke_permits", "data": {"id": 1}}], "deleted_entries", "public"
        )
        insert_sql = [s for s in executed_sql(mock_cursor) if s.startswith("insert into")][0]
        assert "on conflict" not in insert_sql
        assert count == 1

    def test_ingest_batch_empty(self, engine):
        assert engine.ingest_batch([], "deleted_entries", "public") == 0


class TestEnsureSchema:
    def test_applies_bundled_ddl(self):
        eng = MagicMock()
        ensure_schema(eng, "uke")
        sql = eng.execute.call_args[0][0]
        assert sql.startswith("create schema if not exists uke;")
        assert "set local search_path to uke;" in sql
        assert "create table if not exists uke_permits" in sql
        assert "create table if not exists uke_import_metadata" in sql
