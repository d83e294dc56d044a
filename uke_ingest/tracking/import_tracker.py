from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import psycopg2

logger = logging.getLogger(__name__)


def _href(source: Any) -> str:
    if isinstance(source, str):
        return source
    if isinstance(source, dict):
        return source["href"]
    return source.href


def fingerprint(sources: Iterable[Any]) -> str:
    """
    Canonical, order-independent serialization of a set of source files.

    Accepts SourceDescriptors, ``{"href": ...}`` dicts or bare hrefs and
    returns the sorted hrefs as compact JSON, e.g. ``'["a.xlsx","b.xlsx"]'``.
    """
    hrefs = sorted(_href(s) for s in sources)
    return json.dumps(hrefs, separators=(",", ":"), ensure_ascii=False)


def _basename(href: str) -> str:
    return href.rstrip("/").rsplit("/", 1)[-1]


@dataclass
class ImportRun:
    """Tracks a single import run's state."""

    import_type: str
    file_list: str
    metadata: dict[str, Any] = field(default_factory=dict)
    rows_processed: int = 0
    records_inserted: int = 0
    status: str = "running"
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    import_id: int | None = None

    def __enter__(self) -> ImportRun:
        self.started_at = datetime.now(UTC)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.completed_at = datetime.now(UTC)
        if exc_type is not None:
            self.status = "failed"
            self.error = str(exc_val)
        else:
            self.status = "success"
        return False


class ImportTracker:
    """
    Records import runs and answers "has anything changed since the last
    successful import?".

    Runs are appended to ``uke_import_metadata`` and never updated. When no
    engine is provided, operates in memory-only mode (useful for testing or
    dry runs).
    """

    TABLE_NAME = "uke_import_metadata"

    def __init__(self, engine: Any | None = None, schema: str = "public") -> None:
        self.engine = engine
        self.schema = schema
        self.logger = logging.getLogger("uke_ingest.import_tracker")
        self._runs: list[ImportRun] = []

    @property
    def _fqn(self) -> str:
        return f"{self.schema}.{self.TABLE_NAME}"

    def _latest_success(self, import_type: str) -> str | None:
        if self.engine is None:
            for run in reversed(self._runs):
                if run.import_type == import_type and run.status == "success":
                    return run.file_list
            return None

        df = self.engine.query(
            f"""
            select file_list
            from {self._fqn}
            where import_type = %(import_type)s and status = 'success'
            order by last_import_date desc, id desc
            limit 1
            """,
            {"import_type": import_type},
        )
        if df.empty:
            return None
        return str(df.iloc[0]["file_list"])

    def is_up_to_date(self, import_type: str, sources: Iterable[Any]) -> bool:
        """True iff the latest successful run of *import_type* saw exactly *sources*."""
        current = fingerprint(sources)
        try:
            previous = self._latest_success(import_type)
        except psycopg2.Error as e:
            self.logger.warning("Failed to read last import of %s: %s", import_type, e)
            return False
        return previous is not None and previous == current

    def last_imported_file_names(self, import_type: str) -> set[str] | None:
        """Basenames of the files of the latest successful run, or None if there is none."""
        try:
            previous = self._latest_success(import_type)
        except psycopg2.Error as e:
            self.logger.warning("Failed to read last import of %s: %s", import_type, e)
            return None
        if previous is None:
            return None
        return {_basename(href) for href in json.loads(previous)}

    def record(
        self, import_type: str, sources: Iterable[Any], status: str
    ) -> int | None:
        """Append a run row and return its id (None in memory-only mode or on error)."""
        run = ImportRun(import_type=import_type, file_list=fingerprint(sources))
        run.status = status
        run.started_at = run.completed_at = datetime.now(UTC)
        self._runs.append(run)
        return self._persist_run(run)

    def record_success(self, import_type: str, sources: Iterable[Any]) -> int | None:
        return self.record(import_type, sources, "success")

    @contextmanager
    def track(
        self,
        import_type: str,
        sources: Iterable[Any],
        metadata: dict[str, Any] | None = None,
    ) -> Iterator[ImportRun]:
        """Create, yield, and persist an ImportRun; failed runs are persisted too."""
        run = ImportRun(
            import_type=import_type,
            file_list=fingerprint(sources),
            metadata=metadata or {},
        )
        self._runs.append(run)
        try:
            with run:
                yield run
        finally:
            self._persist_run(run)

    def _persist_run(self, run: ImportRun) -> int | None:
        if self.engine is None:
            return None
        try:
            row = self.engine.insert_returning(
                {
                    "import_type": run.import_type,
                    "file_list": run.file_list,
                    "status": run.status,
                    "last_import_date": run.completed_at or datetime.now(UTC),
                },
                self.TABLE_NAME,
                self.schema,
            )
            run.import_id = row["id"]
            return run.import_id
        except Exception as e:
            self.logger.error("Failed to persist import run: %s", e)
            return None

    @property
    def runs(self) -> list[ImportRun]:
        return list(self._runs)

    @property
    def last_run(self) -> ImportRun | None:
        return self._runs[-1] if self._runs else None
