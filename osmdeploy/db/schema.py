"""
DDL for the output tables and the statements that move them between the
import, production, and backup schemas.

Every mapped table (base and generalized) has the same layout:

    osm_id    bigint not null   -- negative for relation-built rows
    type      text not null     -- the matched tag value
    tags      jsonb             -- configured tag subset (+ enumerate rank)
    geometry  geometry(<type>, <srid>)
"""

from __future__ import annotations

from osmdeploy.config import SchemaNames
from osmdeploy.mapping.rules import Mapping

POSTGIS_TYPES = {
    "point": "Point",
    "linestring": "LineString",
    "polygon": "Geometry",
}


def table_geometry_types(mapping: Mapping) -> dict[str, str]:
    """Geometry type name of every physical table in the mapping."""
    types = {t.name: t.geometry for t in mapping.tables}
    for gen in mapping.generalized_tables:
        types[gen.name] = types[gen.source]
    return types


def generate_ddl(schema: str, table: str, geometry: str, srid: int) -> str:
    """
    Generate a CREATE TABLE statement for one output table.

    Parameters
    ----------
    schema : str
    table : str
    geometry : str
        One of "point", "linestring", "polygon".
    srid : int

    Returns
    -------
    str
        A CREATE TABLE SQL statement.
    """
    fqn = f'"{schema}"."{table}"'
    lines = [f"create table {fqn} ("]
    lines.append('    "id" bigserial primary key,')
    lines.append('    "osm_id" bigint not null,')
    lines.append('    "type" text not null,')
    lines.append('    "tags" jsonb,')
    lines.append(f'    "geometry" geometry({POSTGIS_TYPES[geometry]}, {srid})')
    lines.append(");")
    return "\n".join(lines)


def generate_index_ddl(schema: str, table: str) -> str:
    fqn = f'"{schema}"."{table}"'
    lines = [f'create index if not exists "ix_{table}_geometry"']
    lines.append(f'    on {fqn} using gist ("geometry");')
    lines.append("")
    lines.append(f'create index if not exists "ix_{table}_osm_id"')
    lines.append(f'    on {fqn} ("osm_id");')
    return "\n".join(lines)


def deploy_statements(
    tables: list[str],
    existing: dict[str, set[str]],
    schemas: SchemaNames,
) -> list[str]:
    """
    Statements that move the import tables into production and the current
    production tables into backup.

    ``existing`` maps each schema name to the tables it currently holds.
    The statements are meant to run inside a single transaction.
    """
    imp, prod, bak = schemas.import_schema, schemas.production_schema, schemas.backup_schema
    statements = [
        f'create schema if not exists "{prod}"',
        f'create schema if not exists "{bak}"',
    ]
    for table in tables:
        if table in existing.get(bak, set()):
            statements.append(f'drop table "{bak}"."{table}"')
        if table in existing.get(prod, set()):
            statements.append(f'alter table "{prod}"."{table}" set schema "{bak}"')
        statements.append(f'alter table "{imp}"."{table}" set schema "{prod}"')
    return statements


def revert_statements(
    tables: list[str],
    existing: dict[str, set[str]],
    schemas: SchemaNames,
) -> list[str]:
    """
    Statements that restore the backup tables into production. The
    production tables go back to the import schema.
    """
    imp, prod, bak = schemas.import_schema, schemas.production_schema, schemas.backup_schema
    statements = [f'create schema if not exists "{imp}"']
    for table in tables:
        if table not in existing.get(bak, set()):
            continue
        if table in existing.get(imp, set()):
            statements.append(f'drop table "{imp}"."{table}"')
        if table in existing.get(prod, set()):
            statements.append(f'alter table "{prod}"."{table}" set schema "{imp}"')
        statements.append(f'alter table "{bak}"."{table}" set schema "{prod}"')
    return statements


def remove_backup_statements(tables: list[str], existing: dict[str, set[str]], schemas: SchemaNames) -> list[str]:
    bak = schemas.backup_schema
    return [f'drop table "{bak}"."{t}"' for t in tables if t in existing.get(bak, set())]
