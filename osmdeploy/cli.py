"""
Command line entry point.

    osmdeploy import  --mapping mapping.yml --cache-dir ./cache region.osm.pbf
    osmdeploy deploy  --mapping mapping.yml --cache-dir ./cache
    osmdeploy diff    --mapping mapping.yml --cache-dir ./cache 000123.osc.gz [...]
    osmdeploy revert-deploy / remove-backup / show
    osmdeploy rows    --mapping mapping.yml --cache-dir ./cache osm_roads --osm-id 42

Database credentials are read from ``--env-file`` (default ``.env``) or the
environment, using the OSMDEPLOY_ prefix (OSMDEPLOY_HOST, OSMDEPLOY_DATABASE,
...). Every command exits non-zero on failure.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Sequence

from osmdeploy.config import ImportConfig, SchemaNames
from osmdeploy.db.core import DatabaseCredentials, PostgresEngine, get_logger
from osmdeploy.exceptions import OsmDeployError
from osmdeploy.mapping.loader import load_mapping
from osmdeploy.parsers.pbf import read_changes, read_elements
from osmdeploy.parsers.source import SourceFetcher
from osmdeploy.pipeline.controller import PipelineController
from osmdeploy.tracking.run_log import RunTracker

logger = logging.getLogger("osmdeploy.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="osmdeploy",
        description="Import OpenStreetMap data into PostGIS, deploy it, and keep it current with diffs",
    )
    parser.add_argument("--mapping", required=True, help="mapping file (.json, .yml, .yaml)")
    parser.add_argument("--cache-dir", required=True, help="directory for the element cache and state")
    parser.add_argument("--env-file", default=".env", help="file with OSMDEPLOY_* credentials (default: .env)")
    parser.add_argument("--srid", type=int, default=3857, choices=(4326, 3857))
    parser.add_argument("--workers", type=int, default=4, help="worker threads per stage (default: 4)")
    parser.add_argument("--batch-size", type=int, default=5000, help="rows per COPY batch (default: 5000)")
    parser.add_argument("--import-schema", default="import")
    parser.add_argument("--production-schema", default="public")
    parser.add_argument("--backup-schema", default="backup")
    parser.add_argument(
        "--ring-gap-tolerance",
        type=float,
        default=None,
        help="join ring endpoints closer than this, in output units (default depends on --srid)",
    )
    parser.add_argument(
        "--role-policy",
        choices=("auto", "declared", "geometry"),
        default="auto",
        help="how multipolygon member roles decide ring polarity (default: auto)",
    )
    parser.add_argument(
        "--no-inherit-outer-tags",
        dest="inherit_outer_tags",
        action="store_false",
        help="do not give untagged multipolygons the tags of their outer ways",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="log debug output")

    commands = parser.add_subparsers(dest="command", required=True)

    import_cmd = commands.add_parser("import", help="full import into the import schema")
    import_cmd.add_argument("source", help="OSM extract: local path or http(s) URL")
    import_cmd.add_argument("--overwrite", action="store_true", help="drop an existing import first")
    import_cmd.add_argument("--deploy", action="store_true", help="deploy right after the import")

    commands.add_parser("deploy", help="swap the import schema into production")

    diff_cmd = commands.add_parser("diff", help="apply change files to production")
    diff_cmd.add_argument("sources", nargs="+", help="OsmChange files or URLs, applied in order")

    commands.add_parser("revert-deploy", help="restore the backup schema into production")
    commands.add_parser("remove-backup", help="drop the backup tables")
    commands.add_parser("show", help="print the pipeline state as JSON")

    rows_cmd = commands.add_parser("rows", help="print the output rows of one table")
    rows_cmd.add_argument("table", help="mapped table name, e.g. osm_roads")
    rows_cmd.add_argument("--osm-id", type=int, help="only this id (negative for relations)")
    rows_cmd.add_argument("--schema", help="schema to read (default: the production schema)")
    return parser


def config_from_args(args: argparse.Namespace) -> ImportConfig:
    return ImportConfig(
        mapping_path=args.mapping,
        cache_dir=args.cache_dir,
        schemas=SchemaNames(args.import_schema, args.production_schema, args.backup_schema),
        srid=args.srid,
        workers=args.workers,
        batch_size=args.batch_size,
        ring_gap_tolerance=args.ring_gap_tolerance,
        role_policy=args.role_policy,
        inherit_outer_tags=args.inherit_outer_tags,
    )


def run(args: argparse.Namespace, engine=None) -> int:
    config = config_from_args(args)
    mapping = load_mapping(config.mapping_path)
    if engine is None:
        engine = PostgresEngine(DatabaseCredentials.from_env_file(args.env_file))
    tracker = RunTracker(engine)
    tracker.ensure_table()
    controller = PipelineController(config, mapping, engine, tracker=tracker)
    fetcher = SourceFetcher()

    try:
        if args.command == "import":
            with fetcher.local_path(args.source) as path:
                elements, _ = read_elements(path)
                controller.import_(elements, source=args.source, overwrite=args.overwrite)
            if args.deploy:
                controller.deploy()
        elif args.command == "deploy":
            controller.deploy()
        elif args.command == "diff":
            for source in args.sources:
                with fetcher.local_path(source) as path:
                    changes, _ = read_changes(path)
                    # the batch is applied as one unit, so read it fully first
                    controller.apply_diff(list(changes), source=source)
        elif args.command == "revert-deploy":
            controller.revert_deploy()
        elif args.command == "remove-backup":
            controller.remove_backup()
        elif args.command == "show":
            print(json.dumps(controller.status(), indent=2, sort_keys=True))
        elif args.command == "rows":
            rows = controller.read_rows(args.table, osm_id=args.osm_id, schema=args.schema)
            print(rows.to_wkt().to_string(index=False))
    finally:
        engine.close()
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    get_logger("osmdeploy", level=logging.DEBUG if args.verbose else logging.INFO)
    try:
        return run(args)
    except OsmDeployError as e:
        logger.error("%s: %s", type(e).__name__, e)
        return 1
    except Exception as e:
        logger.exception("%s failed: %s", args.command, e)
        return 2


if __name__ == "__main__":
    sys.exit(main())
