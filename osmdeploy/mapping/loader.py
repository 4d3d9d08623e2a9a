"""
Mapping file loader.

Accepts JSON (``.json``) or YAML (``.yml``/``.yaml``) with this layout:

    table_prefix: osm_
    tables:
      roads:
        geometry: linestring
        mapping:
          highway: [primary, secondary, residential]
          railway: [tram]
        columns: [name]
      landusages:
        geometry: polygon
        mapping:
          landuse: [park, farmland, wood]
        enumerate:
          key: landuse
          values: [farmland, park, wood]
    generalized_tables:
      roads_gen0:
        source: roads
        tolerance: 50
        types: [primary, secondary]

Table names are prefixed with ``table_prefix`` (default ``osm_``); a
generalized table's ``source`` refers to the unprefixed name.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml

from osmdeploy.exceptions import MappingError
from osmdeploy.mapping.rules import (
    EnumerateSpec,
    GeneralizedTableSpec,
    Mapping,
    TableSpec,
)

logger = logging.getLogger(__name__)


def load_mapping(path: str | Path) -> Mapping:
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            if path.suffix in (".yml", ".yaml"):
                raw = yaml.safe_load(f)
            else:
                raw = json.load(f)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise MappingError(f"Could not read mapping {path}: {e}") from e

    mapping = parse_mapping(raw)
    logger.info(
        "Loaded mapping %s: %d tables, %d generalized tables",
        path.name,
        len(mapping.tables),
        len(mapping.generalized_tables),
    )
    return mapping


def parse_mapping(raw: Any) -> Mapping:
    if not isinstance(raw, dict) or not isinstance(raw.get("tables"), dict):
        raise MappingError("mapping must be an object with a 'tables' object")

    prefix = raw.get("table_prefix", "osm_")
    try:
        tables = [_parse_table(prefix + name, spec) for name, spec in raw["tables"].items()]
        generalized = [
            GeneralizedTableSpec(
                name=prefix + name,
                source=prefix + spec["source"],
                tolerance=float(spec["tolerance"]),
                types=list(spec["types"]) if spec.get("types") is not None else None,
            )
            for name, spec in (raw.get("generalized_tables") or {}).items()
        ]
        return Mapping(tables=tables, generalized_tables=generalized)
    except (KeyError, TypeError, ValueError) as e:
        raise MappingError(f"Invalid mapping: {e}") from e


def _parse_table(name: str, spec: dict[str, Any]) -> TableSpec:
    mapping = {key: [str(v) for v in values] for key, values in spec["mapping"].items()}
    enumerate_spec = None
    if spec.get("enumerate"):
        enum = spec["enumerate"]
        enumerate_spec = EnumerateSpec(
            key=enum["key"],
            values=[str(v) for v in enum["values"]],
            column=enum.get("column", "enum"),
        )
    return TableSpec(
        name=name,
        geometry=spec["geometry"],
        mapping=mapping,
        columns=list(spec.get("columns", [])),
        enumerate=enumerate_spec,
    )
