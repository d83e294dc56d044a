import io
import json
import logging
import os
import re
from contextlib import contextmanager
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from urllib.parse import quote_plus
from typing import Any, Iterator, Optional, Sequence

import pandas as pd
import psycopg2

from psycopg2.extensions import connection as Psycopg2Connection
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)


def get_logger(
    name: str,
    level: int = logging.INFO,
    log_format: Optional[str] = None,
) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if logger.handlers:
        return logger

    log_format = log_format or "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    formatter = logging.Formatter(log_format)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


@dataclass
class DatabaseCredentials:
    host: str
    port: int
    database: str
    username: str
    password: str
    driver: str = "postgresql"

    @classmethod
    def from_env_file(
        cls, env_path: str | Path, prefix: str, driver: str = "postgresql"
    ) -> "DatabaseCredentials":
        """
        Load credentials from a .env file using variables matching a prefix pattern.
        Variables missing from the file are looked up in the process environment.

        Expected variables:
            prefix_HOST, prefix_PORT, prefix_DATABASE, prefix_USER,
            prefix_PASSWORD, prefix_DRIVER (optional)
        """
        env_vars = cls._parse_env_file(env_path)

        def get_var(name: str, default: Optional[str] = None) -> str:
            key = f"{prefix}{name}"
            value = env_vars.get(key) or os.environ.get(key) or default
            if value is None:
                raise ValueError(f"Missing required environment variable: {key}")
            return value

        return cls(
            host=get_var("HOST"),
            port=int(get_var("PORT", "5432")),
            database=get_var("DATABASE"),
            username=get_var("USER"),
            password=get_var("PASSWORD"),
            driver=get_var("DRIVER", driver),
        )

    @staticmethod
    def _parse_env_file(env_path: str | Path) -> dict[str, str]:
        env_vars = {}
        path = Path(env_path)

        if not path.exists():
            return env_vars

        with open(path, "r") as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#"):
                    continue

                match = re.match(r"^([A-Za-z_][A-Za-z0-9_]*)=(.*)$", line)
                if match:
                    key, value = match.groups()
                    value = value.strip()
                    if (value.startswith('"') and value.endswith('"')) or (
                        value.startswith("'") and value.endswith("'")
                    ):
                        value = value[1:-1]
                    env_vars[key] = value

        return env_vars

    @property
    def connection_string(self) -> str:
        encoded_password = quote_plus(self.password)
        return (
            f"{self.driver}://{self.username}:{encoded_password}"
            f"@{self.host}:{self.port}/{self.database}"
        )

    @property
    def redacted_connection_string(self) -> str:
        return f"{self.driver}://{self.username}:****@****:{self.port}/{self.database}"

    def __str__(self) -> str:
        return (
            f"DatabaseCredentials(driver={self.driver!r}, "
            f"host='****', port={self.port}, database={self.database!r}, "
            f"username={self.username!r}, password='****')"
        )

    def __repr__(self) -> str:
        return self.__str__()


def pg_retry():
    return retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(
            (psycopg2.OperationalError, psycopg2.InterfaceError)
        ),
        reraise=True,
    )


def _quote_columns(columns: Sequence[str]) -> str:
    return ", ".join(f'"{c}"' for c in columns)


class PostgresEngine:
    def __init__(
        self, creds: DatabaseCredentials, db_name: Optional[str] = None
    ) -> None:
        self.creds = creds
        self.db_name = db_name or creds.database
        self._conn: Optional[Psycopg2Connection] = None
        self.logger = get_logger("postgres_engine")

    def _connect(self) -> Psycopg2Connection:
        return psycopg2.connect(
            host=self.creds.host,
            port=self.creds.port,
            dbname=self.db_name,
            user=self.creds.username,
            password=self.creds.password,
        )

    @contextmanager
    def transaction(self):
        try:
            yield self.connection
            self.connection.commit()
        except Exception as e:
            self.logger.error(f"Transaction failed with error {e}")
            self.connection.rollback()
            raise

    @contextmanager
    def cursor(self):
        with self.transaction():
            cur = self.connection.cursor()
            try:
                yield cur
            finally:
                cur.close()

    @property
    def connection(self) -> Psycopg2Connection:
        if self._conn is None or self._conn.closed:
            self._conn = self._connect()
        return self._conn

    def close(self) -> None:
        if self._conn is not None and not self._conn.closed:
            self._conn.close()
            self._conn = None

    @pg_retry()
    def query(
        self,
        sql: str,
        params: dict[str, Any] | tuple | None = None,
    ) -> pd.DataFrame:
        """
        Execute a SELECT and return results as a DataFrame.

        Args:
            sql:    SQL string. Use %(name)s for named params or %s for positional.
            params: Dict for named params, tuple for positional, or None.
        """
        with self.cursor() as cur:
            cur.execute(sql, params)
            columns = [desc[0] for desc in cur.description]
            return pd.DataFrame(cur.fetchall(), columns=columns)

    @pg_retry()
    def execute(
        self,
        sql: str,
        params: dict[str, Any] | tuple | None = None,
    ) -> None:
        """
        Execute a DDL/DML statement (no result set).

        Args:
            sql:    SQL string. Use %(name)s for named params or %s for positional.
            params: Dict for named params, tuple for positional, or None.
        """
        try:
            with self.cursor() as cur:
                cur.execute(sql, params)
        except Exception as e:
            self.logger.error(f"Command failed with error {e}")
            raise

    @pg_retry()
    def query_batches(
        self,
        sql: str,
        params: dict[str, Any] | tuple | None = None,
        batch_size: int = 10000,
    ) -> Iterator[list[dict]]:
        """
        Server-side cursor for large result sets, yielded as lists of dicts.

        Args:
            sql:        SQL string with optional parameter placeholders.
            params:     Dict for named params, tuple for positional, or None.
            batch_size: Rows per batch.
        """
        cursor = self.connection.cursor(name="batch_cursor")
        cursor.itersize = batch_size
        try:
            cursor.execute(sql, params)
            columns = None

            while True:
                rows = cursor.fetchmany(batch_size)
                if not rows:
                    break

                if columns is None:
                    columns = [desc[0] for desc in cursor.description]

                yield [dict(zip(columns, row)) for row in rows]
            self.connection.commit()
        except Exception as e:
            self.logger.error(f"Query batches failed: {e}")
            self.connection.rollback()
            raise
        finally:
            cursor.close()

    @pg_retry()
    def select_in(
        self,
        target_table: str,
        target_schema: str,
        column: str,
        values: Sequence[Any],
        columns: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]:
        """
        Fetch the rows of *target_table* whose *column* matches any of *values*.

        Args:
            target_table:  Table name.
            target_schema: Schema name.
            column:        Column compared against the value set.
            values:        Values to match. An empty sequence returns [] without
                           touching the database.
            columns:       Columns to return. None returns every column.

        Returns:
            Matching rows as dicts.
        """
        values = list(values)
        if not values:
            return []
        fqn = f"{target_schema}.{target_table}"
        select_list = _quote_columns(columns) if columns else "*"

        with self.cursor() as cur:
            cur.execute(
                f'select {select_list} from {fqn} where "{column}" = any(%(values)s)',
                {"values": values},
            )
            names = [desc[0] for desc in cur.description]
            return [dict(zip(names, row)) for row in cur.fetchall()]

    @pg_retry()
    def insert_returning(
        self,
        row: dict[str, Any],
        target_table: str,
        target_schema: str,
        returning: Sequence[str] = ("id",),
    ) -> dict[str, Any]:
        """Plain single-row insert with no conflict handling, for append-only logs."""
        fqn = f"{target_schema}.{target_table}"
        columns = list(row.keys())
        placeholders = ", ".join(f"%({c})s" for c in columns)

        with self.cursor() as cur:
            cur.execute(
                f"insert into {fqn} ({_quote_columns(columns)}) "
                f"values ({placeholders}) returning {_quote_columns(returning)}",
                self._normalize_json_values([dict(row)])[0],
            )
            names = [desc[0] for desc in cur.description]
            return dict(zip(names, cur.fetchone()))

    @staticmethod
    def _normalize_json_values(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        for row in rows:
            for key, val in row.items():
                if isinstance(val, (dict, list)):
                    row[key] = json.dumps(val, default=str)
        return rows

    @staticmethod
    def _rows_to_copy_buffer(
        rows: list[dict[str, Any]], columns: Sequence[str]
    ) -> io.StringIO:
        buf = io.StringIO()
        for row in rows:
            vals = []
            for c in columns:
                v = row.get(c)
                if v is None:
                    vals.append("\\N")
                else:
                    vals.append(
                        str(v)
                        .replace("\\", "\\\\")
                        .replace("\t", " ")
                        .replace("\n", " ")
                        .replace("\r", " ")
                    )
            buf.write("\t".join(vals) + "\n")
        buf.seek(0)
        return buf

    def _stage_rows(self, cur, rows: list[dict[str, Any]], fqn: str) -> list[str]:
        """COPY *rows* into a temp table shaped like the listed target columns."""
        columns = list(rows[0].keys())
        col_list = _quote_columns(columns)

        cur.execute(f"""
            create temp table _staging on commit drop as
            select {col_list} from {fqn} with no data
        """)
        cur.copy_expert(
            f"copy _staging ({col_list}) from stdin with (format text, NULL '\\N')",
            self._rows_to_copy_buffer(rows, columns),
        )
        return columns

    @pg_retry()
    def ingest_batch(
        self,
        rows: list[dict[str, Any]],
        target_table: str,
        target_schema: str,
    ) -> int:
        """
        Bulk append a list of dicts into *target_table* using COPY via a
        staging table. Dict and list values are stored as JSON text.

        Returns:
            Number of rows inserted.
        """
        if not rows:
            return 0
        fqn = f"{target_schema}.{target_table}"
        rows = self._normalize_json_values([dict(r) for r in rows])

        with self.cursor() as cur:
            columns = self._stage_rows(cur, rows, fqn)
            col_list = _quote_columns(columns)
            cur.execute(
                f"insert into {fqn} ({col_list}) select {col_list} from _staging"
            )
            count = cur.rowcount

        self.logger.info("Inserted %d rows into %s", count, fqn)
        return count

    @pg_retry()
    def insert_ignoring_conflicts(
        self,
        rows: list[dict[str, Any]],
        target_table: str,
        target_schema: str,
        conflict_column: str | list[str] | None = None,
        returning: Sequence[str] = ("id",),
    ) -> list[dict[str, Any]]:
        """
        Bulk insert a list of dicts, silently skipping rows that violate a
        uniqueness constraint, and return the rows that were actually written.

        Rows are COPYed into a staging table first, then merged with
        ``insert ... on conflict do nothing returning ...``. Rows that already
        existed return nothing, so callers must re-read the table to resolve
        their ids.

        Args:
            rows:            List of dicts, all with the same keys.
            target_table:    Table name.
            target_schema:   Schema name.
            conflict_column: Column name (str) or list of column names naming
                             the conflict target. None skips rows violating
                             any unique constraint.
            returning:       Columns to return for each inserted row.

        Returns:
            One dict per inserted row, holding the *returning* columns.
        """
        if not rows:
            return []
        fqn = f"{target_schema}.{target_table}"
        rows = self._normalize_json_values([dict(r) for r in rows])

        if isinstance(conflict_column, str):
            conflict_columns = [conflict_column]
        else:
            conflict_columns = conflict_column

        with self.cursor() as cur:
            columns = self._stage_rows(cur, rows, fqn)
            col_list = _quote_columns(columns)

            insert_sql = (
                f"insert into {fqn} ({col_list}) select {col_list} from _staging"
            )
            if conflict_columns:
                insert_sql += f" on conflict ({_quote_columns(conflict_columns)}) do nothing"
            else:
                insert_sql += " on conflict do nothing"
            insert_sql += f" returning {_quote_columns(returning)}"

            cur.execute(insert_sql)
            names = [desc[0] for desc in cur.description]
            inserted = [dict(zip(names, row)) for row in cur.fetchall()]

        self.logger.info(
            "Inserted %d of %d rows into %s", len(inserted), len(rows), fqn
        )
        return inserted

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def ensure_schema(engine: PostgresEngine, schema: str = "public") -> None:
    """Create every table the importer writes to. Safe to run repeatedly."""
    ddl = resources.files("uke_ingest.db").joinpath("schema.sql").read_text("utf-8")
    engine.execute(
        f"create schema if not exists {schema};\n"
        f"set local search_path to {schema};\n{ddl}"
    )
    engine.logger.info("Schema %s is up to date", schema)
