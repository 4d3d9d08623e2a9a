"""
Output rows and the single-writer path to the storage driver.

Workers collect rows in their own RowBuffer and hand the finished buffer to
the RowWriter. The writer runs on one thread, accumulates rows per table and
flushes them in COPY batches, so only that thread talks to the database
during a stage.

Usage:
    with RowWriter(storage, schema="import", srid=3857, batch_size=5000) as writer:
        buffer = RowBuffer()
        buffer.add(OutputRow("osm_roads", 42, ElementKind.WAY, "primary", {}, line))
        writer.submit(buffer)
    writer.rows_written
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

from shapely import wkb as shapely_wkb
from shapely.geometry.base import BaseGeometry

from osmdeploy.elements import ElementKind

logger = logging.getLogger(__name__)

_STOP = object()


@dataclass
class OutputRow:
    """
    One row of an output table.

    ``osm_id`` already follows the sign convention: relation-built rows carry
    the negated relation id. ``level`` is 0 for base tables and the position
    (1-based) of the generalized table among its source's generalizations.
    """

    table: str
    osm_id: int
    osm_kind: ElementKind
    type: str
    tags: dict[str, Any]
    geometry: BaseGeometry
    level: int = 0

    def to_record(self, srid: int) -> dict[str, Any]:
        return {
            "osm_id": self.osm_id,
            "type": self.type,
            "tags": self.tags,
            "geometry": shapely_wkb.dumps(self.geometry, hex=True, srid=srid),
        }

    def sort_key(self) -> tuple:
        return (self.table, self.osm_id, self.type, self.geometry.wkb)


@dataclass
class RowBuffer:
    """Append-only rows grouped by table."""

    rows: dict[str, list[OutputRow]] = field(default_factory=dict)

    def add(self, row: OutputRow) -> None:
        self.rows.setdefault(row.table, []).append(row)

    def extend(self, rows: Iterable[OutputRow]) -> None:
        for row in rows:
            self.add(row)

    def merge(self, other: RowBuffer) -> None:
        for table, rows in other.rows.items():
            self.rows.setdefault(table, []).extend(rows)

    def __iter__(self) -> Iterator[OutputRow]:
        for rows in self.rows.values():
            yield from rows

    def __len__(self) -> int:
        return sum(len(rows) for rows in self.rows.values())

    def records(self, srid: int) -> dict[str, list[dict[str, Any]]]:
        """Rows per table as storage records, in deterministic order."""
        return {
            table: [r.to_record(srid) for r in sorted(rows, key=OutputRow.sort_key)]
            for table, rows in self.rows.items()
        }


class RowWriter:
    """
    Single consumer that flushes submitted buffers to ``storage.copy_rows``.

    A failed flush stops the writer; the error is re-raised by the next
    ``submit`` and by ``close``.
    """

    def __init__(self, storage, schema: str, srid: int, batch_size: int = 5000) -> None:
        self.storage = storage
        self.schema = schema
        self.srid = srid
        self.batch_size = batch_size
        self.rows_written = 0
        self._queue: queue.Queue = queue.Queue(maxsize=64)
        self._pending: dict[str, list[OutputRow]] = {}
        self._error: BaseException | None = None
        self._aborted = False
        self._thread = threading.Thread(target=self._run, name="row-writer", daemon=True)
        self._started = False

    def start(self) -> RowWriter:
        if not self._started:
            self._thread.start()
            self._started = True
        return self

    def submit(self, buffer: RowBuffer) -> None:
        self._raise_if_failed()
        if len(buffer):
            self._queue.put(buffer)

    def close(self) -> None:
        """Flush everything still pending and stop the writer thread."""
        if self._started:
            self._queue.put(_STOP)
            self._thread.join()
            self._started = False
        self._raise_if_failed()

    def __enter__(self) -> RowWriter:
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is None:
            self.close()
        else:
            self._abort()
        return False

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _raise_if_failed(self) -> None:
        if self._error is not None:
            raise self._error

    def _abort(self) -> None:
        self._aborted = True
        if self._started:
            self._queue.put(_STOP)
            self._thread.join()
            self._started = False

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            if self._error is not None or self._aborted:
                continue
            try:
                self._accept(item)
            except Exception as e:
                logger.error("Row writer failed: %s", e)
                self._error = e
        if self._error is None and not self._aborted:
            try:
                for table in list(self._pending):
                    self._flush(table)
            except Exception as e:
                logger.error("Row writer failed on final flush: %s", e)
                self._error = e

    def _accept(self, buffer: RowBuffer) -> None:
        for table, rows in buffer.rows.items():
            pending = self._pending.setdefault(table, [])
            pending.extend(rows)
            if len(pending) >= self.batch_size:
                self._flush(table)

    def _flush(self, table: str) -> None:
        rows = self._pending.pop(table, [])
        if not rows:
            return
        records = [r.to_record(self.srid) for r in sorted(rows, key=OutputRow.sort_key)]
        self.storage.copy_rows(self.schema, table, records)
        self.rows_written += len(records)
