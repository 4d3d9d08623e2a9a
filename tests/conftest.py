from __future__ import annotations

import copy
import json
import re
import threading
from pathlib import Path

import geopandas as gpd
import pandas as pd
import pytest
from shapely import wkb as shapely_wkb

from osmdeploy.config import ImportConfig
from osmdeploy.db import schema as ddl
from osmdeploy.mapping.loader import parse_mapping

TEST_MAPPING = {
    "tables": {
        "places": {
            "geometry": "point",
            "mapping": {"place": ["city", "town", "village"], "amenity": ["__any__"]},
            "columns": ["name"],
        },
        "roads": {
            "geometry": "linestring",
            "mapping": {"highway": ["__any__"], "railway": ["tram", "rail"]},
            "columns": ["name"],
            "enumerate": {
                "key": "highway",
                "values": ["motorway", "primary", "secondary", "residential"],
            },
        },
        "landusages": {
            "geometry": "polygon",
            "mapping": {
                "landuse": ["park", "forest", "residential", "farmland"],
                "leisure": ["park"],
            },
            "columns": ["name"],
        },
        "buildings": {
            "geometry": "polygon",
            "mapping": {"building": ["__any__"]},
        },
    },
    "generalized_tables": {
        "landusages_gen0": {"source": "landusages", "tolerance": 0.0005},
        "landusages_gen1": {"source": "landusages", "tolerance": 0.002},
        "roads_gen0": {"source": "roads", "tolerance": 0.0005, "types": ["motorway", "primary"]},
    },
}


class FakeStorage:
    """
    In-memory stand-in for PostgresEngine.

    Tables are lists of COPY records keyed by (schema, table). Schema moves
    replay the same statements PostgresEngine would execute, against a copy
    of the tables that replaces the live state only when every statement
    succeeded.
    """

    _DROP = re.compile(r'^drop table "([^"]+)"\."([^"]+)"$')
    _MOVE = re.compile(r'^alter table "([^"]+)"\."([^"]+)" set schema "([^"]+)"$')

    def __init__(self) -> None:
        self.tables: dict[tuple[str, str], list[dict]] = {}
        self.geometry_types: dict[tuple[str, str], str] = {}
        self.indexed: set[tuple[str, str]] = set()
        self.executed: list[str] = []
        self.fail_deploy = False
        self.fail_replace = False
        self.on_copy = None
        self.closed = False
        self._lock = threading.Lock()

    # -- storage driver surface -------------------------------------------

    def existing_tables(self, schema_names):
        existing: dict[str, set[str]] = {}
        for schema, table in self.tables:
            if schema in schema_names:
                existing.setdefault(schema, set()).add(table)
        return existing

    def read_rows(self, schema, table, osm_id=None, srid=3857):
        records = [
            r for r in self.tables[(schema, table)] if osm_id is None or r["osm_id"] == osm_id
        ]
        df = pd.DataFrame(
            [{k: r[k] for k in ("osm_id", "type", "tags")} for r in records],
            columns=["osm_id", "type", "tags"],
        )
        return gpd.GeoDataFrame(df, geometry=[decode(r) for r in records], crs=f"EPSG:{srid}")

    def create_tables(self, schema, table_types, srid):
        for table, geometry in table_types.items():
            self.tables[(schema, table)] = []
            self.geometry_types[(schema, table)] = geometry

    def drop_schema(self, schema):
        for key in [k for k in self.tables if k[0] == schema]:
            del self.tables[key]

    def copy_rows(self, schema, table, rows):
        if self.on_copy is not None:
            self.on_copy(schema, table, rows)
        with self._lock:
            self.tables[(schema, table)].extend(copy.deepcopy(rows))
        return len(rows)

    def create_indexes(self, schema, tables):
        self.indexed.update((schema, t) for t in tables)

    def count_invalid_geometries(self, schema, table):
        return sum(1 for r in self.tables[(schema, table)] if not decode(r).is_valid)

    def replace_rows(self, schema, deletions, insertions):
        if self.fail_replace:
            raise RuntimeError("connection lost")
        staged = copy.deepcopy(self.tables)
        deleted = inserted = 0
        for table, ids in deletions.items():
            ids = set(ids)
            before = staged[(schema, table)]
            staged[(schema, table)] = [r for r in before if r["osm_id"] not in ids]
            deleted += len(before) - len(staged[(schema, table)])
        for table, rows in insertions.items():
            staged[(schema, table)].extend(copy.deepcopy(rows))
            inserted += len(rows)
        self.tables = staged
        return deleted, inserted

    def deploy(self, tables, schemas):
        existing = self.existing_tables(
            [schemas.import_schema, schemas.production_schema, schemas.backup_schema]
        )
        self._apply(ddl.deploy_statements(tables, existing, schemas), fail=self.fail_deploy)

    def revert_deploy(self, tables, schemas):
        existing = self.existing_tables(
            [schemas.import_schema, schemas.production_schema, schemas.backup_schema]
        )
        self._apply(ddl.revert_statements(tables, existing, schemas))

    def remove_backup(self, tables, schemas):
        existing = self.existing_tables([schemas.backup_schema])
        self._apply(ddl.remove_backup_statements(tables, existing, schemas))

    def execute(self, sql, params=None):
        self.executed.append(sql)

    def query(self, sql, params=None):
        return pd.DataFrame({"source": []})

    def close(self):
        self.closed = True

    # -- helpers for assertions --------------------------------------------

    def _apply(self, statements, fail=False):
        staged = dict(self.tables)
        for i, statement in enumerate(statements):
            if fail and i == len(statements) - 1:
                raise RuntimeError("deadlock detected")
            if statement.startswith("create schema"):
                continue
            if m := self._DROP.match(statement):
                del staged[(m.group(1), m.group(2))]
            elif m := self._MOVE.match(statement):
                src = (m.group(1), m.group(2))
                dst = (m.group(3), m.group(2))
                assert dst not in staged, f"{dst} already exists"
                staged[dst] = staged.pop(src)
            else:
                raise AssertionError(f"unexpected statement {statement!r}")
        self.tables = staged

    def rows(self, schema, table):
        return self.tables[(schema, table)]

    def ids(self, schema, table):
        return sorted(r["osm_id"] for r in self.tables[(schema, table)])

    def types(self, schema, table, osm_id):
        return sorted(r["type"] for r in self.tables[(schema, table)] if r["osm_id"] == osm_id)

    def geometry(self, schema, table, osm_id):
        matches = [decode(r) for r in self.tables[(schema, table)] if r["osm_id"] == osm_id]
        assert len(matches) == 1, f"expected one row for {osm_id} in {table}, got {len(matches)}"
        return matches[0]

    def snapshot(self, schema):
        """Every row of ``schema`` as a comparable set."""
        return {
            (table, r["osm_id"], r["type"], repr(sorted(r["tags"].items())), r["geometry"])
            for (s, table), rows in self.tables.items()
            if s == schema
            for r in rows
        }


def decode(record):
    return shapely_wkb.loads(record["geometry"], hex=True)


@pytest.fixture
def mapping():
    return parse_mapping(copy.deepcopy(TEST_MAPPING))


@pytest.fixture
def mapping_file(tmp_path: Path) -> Path:
    path = tmp_path / "mapping.json"
    path.write_text(json.dumps(TEST_MAPPING))
    return path


@pytest.fixture
def config(tmp_path: Path):
    return ImportConfig(
        mapping_path=tmp_path / "mapping.json",
        cache_dir=tmp_path / "cache",
        srid=4326,
        workers=3,
        shards=8,
        batch_size=2,
    )


@pytest.fixture
def storage():
    return FakeStorage()
