from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import osmium
import pytest
from osmium.osm.mutable import Node, Way

from osmdeploy.cli import build_parser, config_from_args, main, run
from osmdeploy.exceptions import MappingError, PipelineStateError


@pytest.fixture
def extract(tmp_path: Path) -> Path:
    fp = tmp_path / "town.osm.pbf"
    with osmium.SimpleWriter(str(fp)) as w:
        w.add_node(Node(id=1, location=(7.42, 43.73), tags={"place": "town", "name": "Monaco"}))
        w.add_node(Node(id=2, location=(7.43, 43.74)))
        w.add_way(Way(id=10, nodes=[1, 2], tags={"highway": "primary"}))
    return fp


@pytest.fixture
def change_file(tmp_path: Path) -> Path:
    fp = tmp_path / "000001.osc"
    fp.write_text(
        """<?xml version='1.0' encoding='UTF-8'?>
<osmChange version="0.6">
  <modify>
    <way id="10" version="2">
      <nd ref="1"/>
      <nd ref="2"/>
      <tag k="highway" v="secondary"/>
    </way>
  </modify>
</osmChange>
""",
        encoding="utf-8",
    )
    return fp


@pytest.fixture
def base_args(mapping_file, tmp_path):
    return ["--mapping", str(mapping_file), "--cache-dir", str(tmp_path / "cache"), "--srid", "4326"]


def test_parser_defaults(base_args):
    args = build_parser().parse_args(base_args + ["deploy"])
    config = config_from_args(args)
    assert config.srid == 4326
    assert config.workers == 4
    assert config.schemas.production_schema == "public"
    assert config.ring_gap_tolerance == 1e-6
    assert config.inherit_outer_tags


def test_parser_options(base_args):
    args = build_parser().parse_args(
        base_args
        + ["--role-policy", "geometry", "--no-inherit-outer-tags", "--import-schema", "staging"]
        + ["import", "extract.osm.pbf", "--overwrite"]
    )
    config = config_from_args(args)
    assert config.role_policy == "geometry"
    assert not config.inherit_outer_tags
    assert config.schemas.import_schema == "staging"
    assert args.overwrite
    assert not args.deploy


def test_parser_requires_command(base_args):
    with pytest.raises(SystemExit):
        build_parser().parse_args(base_args)


def test_import_deploy_diff(base_args, extract, change_file, storage, capsys):
    parser = build_parser()

    assert run(parser.parse_args(base_args + ["import", str(extract), "--deploy"]), engine=storage) == 0
    assert storage.ids("public", "osm_places") == [1]
    assert storage.types("public", "osm_roads", 10) == ["primary"]
    assert storage.closed
    assert any("osmdeploy_meta.run_log" in sql for sql in storage.executed)

    assert run(parser.parse_args(base_args + ["diff", str(change_file)]), engine=storage) == 0
    assert storage.types("public", "osm_roads", 10) == ["secondary"]

    assert run(parser.parse_args(base_args + ["show"]), engine=storage) == 0
    status = json.loads(capsys.readouterr().out)
    assert status["phase"] == "deployed"
    assert "osm_roads" in status["tables"]["public"]

    assert run(parser.parse_args(base_args + ["rows", "osm_roads", "--osm-id", "10"]), engine=storage) == 0
    out = capsys.readouterr().out
    assert "secondary" in out
    assert "LINESTRING" in out


def test_rows_unknown_table(base_args, storage):
    with pytest.raises(MappingError):
        run(build_parser().parse_args(base_args + ["rows", "osm_rivers"]), engine=storage)


def test_deploy_without_import(base_args, storage):
    with pytest.raises(PipelineStateError):
        run(build_parser().parse_args(base_args + ["deploy"]), engine=storage)
    assert storage.closed


def test_main_exit_codes(base_args, storage, tmp_path):
    with patch("osmdeploy.cli.DatabaseCredentials"), patch(
        "osmdeploy.cli.PostgresEngine", return_value=storage
    ):
        assert main(base_args + ["deploy"]) == 1
        assert main(base_args + ["import", str(tmp_path / "missing.osm.pbf")]) == 2


def test_main_bad_mapping(tmp_path):
    argv = ["--mapping", str(tmp_path / "missing.yml"), "--cache-dir", str(tmp_path), "show"]
    assert main(argv) == 1
