from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

RUN_LOG_DDL = """
create schema if not exists {schema};
create table if not exists {table} (
    id bigserial primary key,
    operation text not null,
    source text,
    status text not null,
    elements bigint,
    rows_written bigint,
    rows_deleted bigint,
    defects bigint,
    metadata jsonb,
    started_at timestamptz,
    completed_at timestamptz,
    error_message text
);
"""


@dataclass
class PipelineRun:
    """Tracks a single import, deploy, or diff run."""

    operation: str
    source: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    elements: int = 0
    rows_written: int = 0
    rows_deleted: int = 0
    defects: int = 0
    status: str = "running"
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None

    def __enter__(self) -> PipelineRun:
        self.started_at = datetime.now(UTC)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.completed_at = datetime.now(UTC)
        if exc_type is not None:
            self.status = "failed"
            self.error = str(exc_val) or exc_type.__name__
        else:
            self.status = "success"
        return False

    @property
    def elapsed(self) -> float | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


class RunTracker:
    """
    Records pipeline runs and remembers the last diff applied.

    When backed by a PostgresEngine, persists run history to the database.
    When no engine is provided, operates in memory-only mode.
    """

    SCHEMA_NAME = "osmdeploy_meta"
    TABLE_NAME = "osmdeploy_meta.run_log"

    def __init__(self, engine: Any | None = None) -> None:
        self.engine = engine
        self.logger = logger
        self._runs: list[PipelineRun] = []
        self._last_diff: str | None = None

    def ensure_table(self) -> None:
        if self.engine is None:
            return
        self.engine.execute(RUN_LOG_DDL.format(schema=self.SCHEMA_NAME, table=self.TABLE_NAME))

    @contextmanager
    def track(
        self,
        operation: str,
        source: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> PipelineRun:
        """Create, yield, and persist a PipelineRun. Failed runs are persisted too."""
        run = PipelineRun(operation=operation, source=source, metadata=metadata or {})
        self._runs.append(run)
        try:
            with run:
                yield run
        finally:
            self._persist_run(run)
        if operation == "diff" and source:
            self._last_diff = source

    def _persist_run(self, run: PipelineRun) -> None:
        if self.engine is None:
            return
        try:
            self.engine.execute(
                f"""
                insert into {self.TABLE_NAME}
                    (operation, source, status,
                     elements, rows_written, rows_deleted, defects,
                     metadata, started_at, completed_at, error_message)
                values
                    (%(operation)s, %(source)s, %(status)s,
                     %(elements)s, %(rows_written)s, %(rows_deleted)s, %(defects)s,
                     %(metadata)s, %(started_at)s, %(completed_at)s, %(error_message)s)
                """,
                {
                    "operation": run.operation,
                    "source": run.source,
                    "status": run.status,
                    "elements": run.elements,
                    "rows_written": run.rows_written,
                    "rows_deleted": run.rows_deleted,
                    "defects": run.defects,
                    "metadata": json.dumps(run.metadata),
                    "started_at": run.started_at,
                    "completed_at": run.completed_at,
                    "error_message": run.error,
                },
            )
        except Exception as e:
            self.logger.error("Failed to persist pipeline run: %s", e)

    def get_last_diff(self) -> str | None:
        """The source of the last successfully applied diff, if any."""
        if self._last_diff is not None:
            return self._last_diff

        if self.engine is None:
            return None

        try:
            df = self.engine.query(
                f"""
                select source
                from {self.TABLE_NAME}
                where
                    operation = 'diff'
                    and status = 'success'
                    and source is not null
                order by completed_at desc
                limit 1
                """
            )
            if not df.empty:
                self._last_diff = str(df.iloc[0]["source"])
                return self._last_diff
        except Exception as e:
            self.logger.warning("Failed to retrieve last diff: %s", e)

        return None

    @property
    def runs(self) -> list[PipelineRun]:
        return list(self._runs)

    @property
    def last_run(self) -> PipelineRun | None:
        return self._runs[-1] if self._runs else None
