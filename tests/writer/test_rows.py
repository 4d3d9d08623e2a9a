from __future__ import annotations

import threading

import pytest
from shapely import wkb as shapely_wkb
from shapely.geometry import LineString, Point

from osmdeploy.elements import ElementKind
from osmdeploy.writer.rows import OutputRow, RowBuffer, RowWriter


def road(osm_id, type="primary"):
    return OutputRow("osm_roads", osm_id, ElementKind.WAY, type, {}, LineString([(0, 0), (osm_id, 1)]))


def place(osm_id):
    return OutputRow("osm_places", osm_id, ElementKind.NODE, "city", {"name": "x"}, Point(osm_id, 0))


class RecordingStorage:
    def __init__(self, fail_on=None):
        self.batches: list[tuple[str, str, list[dict]]] = []
        self.fail_on = fail_on
        self.threads: set[str] = set()

    def copy_rows(self, schema, table, rows):
        self.threads.add(threading.current_thread().name)
        if table == self.fail_on:
            raise RuntimeError("disk full")
        self.batches.append((schema, table, rows))
        return len(rows)


class TestOutputRow:
    def test_to_record(self):
        row = OutputRow("osm_landusages", -42, ElementKind.RELATION, "park", {"enum": 1}, Point(1, 2))
        record = row.to_record(3857)
        assert record["osm_id"] == -42
        assert record["type"] == "park"
        assert record["tags"] == {"enum": 1}
        geom = shapely_wkb.loads(record["geometry"], hex=True)
        assert geom.equals(Point(1, 2))
        assert record["geometry"].upper().startswith("0101000020110F0000")


class TestRowBuffer:
    def test_groups_by_table(self):
        buffer = RowBuffer()
        buffer.extend([road(1), place(2), road(3)])
        assert len(buffer) == 3
        assert set(buffer.rows) == {"osm_roads", "osm_places"}

    def test_merge(self):
        a, b = RowBuffer(), RowBuffer()
        a.add(road(1))
        b.extend([road(2), place(3)])
        a.merge(b)
        assert len(a) == 3
        assert [r.osm_id for r in a.rows["osm_roads"]] == [1, 2]

    def test_records_are_sorted(self):
        buffer = RowBuffer()
        buffer.extend([road(3, "tram"), road(1), road(3, "residential")])
        records = buffer.records(4326)["osm_roads"]
        assert [(r["osm_id"], r["type"]) for r in records] == [
            (1, "primary"),
            (3, "residential"),
            (3, "tram"),
        ]


class TestRowWriter:
    def test_flushes_in_batches_on_one_thread(self):
        storage = RecordingStorage()
        with RowWriter(storage, "import", 4326, batch_size=2) as writer:
            for i in range(5):
                buffer = RowBuffer()
                buffer.add(road(i))
                writer.submit(buffer)

        assert writer.rows_written == 5
        sizes = [len(rows) for _, _, rows in storage.batches]
        assert sizes == [2, 2, 1]
        assert storage.threads == {"row-writer"}
        assert {schema for schema, _, _ in storage.batches} == {"import"}

    def test_empty_buffers_are_ignored(self):
        storage = RecordingStorage()
        with RowWriter(storage, "import", 4326) as writer:
            writer.submit(RowBuffer())
        assert storage.batches == []
        assert writer.rows_written == 0

    def test_error_is_raised_on_close(self):
        storage = RecordingStorage(fail_on="osm_places")
        writer = RowWriter(storage, "import", 4326, batch_size=1).start()
        buffer = RowBuffer()
        buffer.add(place(1))
        writer.submit(buffer)
        with pytest.raises(RuntimeError, match="disk full"):
            writer.close()

    def test_exception_in_block_aborts_without_flushing(self):
        storage = RecordingStorage()
        with pytest.raises(ValueError):
            with RowWriter(storage, "import", 4326, batch_size=100) as writer:
                buffer = RowBuffer()
                buffer.add(road(1))
                writer.submit(buffer)
                raise ValueError("stage failed")
        assert storage.batches == []
