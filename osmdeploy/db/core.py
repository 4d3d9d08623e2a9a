import io
import json
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote_plus
from typing import Any, Iterable, Optional

import geopandas as gpd
import pandas as pd
import psycopg2

from psycopg2.extensions import connection as Psycopg2Connection
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from osmdeploy.config import SchemaNames
from osmdeploy.db import schema as ddl

# Serializes deploys, reverts, and diff writes across processes
SCHEMA_LOCK_ID = 0x6F736D64

ROW_COLUMNS = ("osm_id", "type", "tags", "geometry")

LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"

# Errors that mean the connection dropped, not that the statement was wrong
TRANSIENT_PG_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError)


def get_logger(
    name: str,
    level: int = logging.INFO,
    log_format: Optional[str] = None,
) -> logging.Logger:
    """Named logger writing to stderr; repeated calls only adjust the level."""
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(log_format or LOG_FORMAT))
        logger.addHandler(handler)
    return logger


def _read_env_file(env_path: str | Path) -> dict[str, str]:
    """KEY=value pairs from a dotenv file; blank lines and comments are skipped."""
    path = Path(env_path)
    if not path.is_file():
        return {}
    found: dict[str, str] = {}
    for raw in path.read_text().splitlines():
        line = raw.strip()
        if line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        key, value = key.strip(), value.strip()
        if not key.isidentifier():
            continue
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
            value = value[1:-1]
        found[key] = value
    return found


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
        cls, env_path: str | Path, prefix: str = "OSMDEPLOY_", driver: str = "postgresql"
    ) -> "DatabaseCredentials":
        """
        Build credentials from ``<prefix>HOST``, ``PORT``, ``DATABASE``, ``USER``,
        ``PASSWORD`` and optionally ``DRIVER``.

        The dotenv file wins over the process environment. HOST and PORT
        default to localhost:5432; the others are required.
        """
        file_vars = _read_env_file(env_path)
        defaults = {"HOST": "localhost", "PORT": "5432", "DRIVER": driver}
        values = {}
        for name in ("HOST", "PORT", "DATABASE", "USER", "PASSWORD", "DRIVER"):
            key = prefix + name
            value = file_vars.get(key) or os.environ.get(key) or defaults.get(name)
            if value is None:
                raise ValueError(f"Missing required environment variable: {key}")
            values[name] = value

        return cls(
            host=values["HOST"],
            port=int(values["PORT"]),
            database=values["DATABASE"],
            username=values["USER"],
            password=values["PASSWORD"],
            driver=values["DRIVER"],
        )

    def _url(self, password: str, host: str) -> str:
        return f"{self.driver}://{self.username}:{password}@{host}:{self.port}/{self.database}"

    @property
    def connection_string(self) -> str:
        return self._url(quote_plus(self.password), self.host)

    @property
    def redacted_connection_string(self) -> str:
        return self._url("****", "****")

    def __repr__(self) -> str:
        return f"DatabaseCredentials({self.redacted_connection_string!r})"

    __str__ = __repr__


def pg_retry():
    """Three attempts with exponential backoff, for dropped connections only."""
    return retry(
        retry=retry_if_exception_type(TRANSIENT_PG_ERRORS),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        stop=stop_after_attempt(3),
        reraise=True,
    )


def rows_to_copy_buffer(rows: Iterable[dict[str, Any]], columns: Iterable[str] = ROW_COLUMNS) -> io.StringIO:
    """Serialize row dicts to COPY text format."""
    columns = list(columns)
    buf = io.StringIO()
    for row in rows:
        vals = []
        for c in columns:
            v = row.get(c)
            if v is None:
                vals.append("\\N")
                continue
            if isinstance(v, dict):
                v = json.dumps(v, sort_keys=True)
            vals.append(str(v).replace("\\", "\\\\").replace("\t", " ").replace("\n", " "))
        buf.write("\t".join(vals) + "\n")
    buf.seek(0)
    return buf


class PostgresEngine:
    """
    psycopg2-backed storage driver.

    Every public write method runs in its own transaction; replace_rows and
    the schema moves run all their statements in one.
    """

    def __init__(self, creds: DatabaseCredentials, db_name: Optional[str] = None) -> None:
        self.creds = creds
        self.db_name = db_name or creds.database
        self._conn: Optional[Psycopg2Connection] = None
        self.logger = logging.getLogger(__name__)

    @property
    def connection(self) -> Psycopg2Connection:
        """Open connection, reconnecting lazily after close() or a server drop."""
        if self._conn is None or self._conn.closed:
            self._conn = psycopg2.connect(
                host=self.creds.host,
                port=self.creds.port,
                dbname=self.db_name,
                user=self.creds.username,
                password=self.creds.password,
            )
        return self._conn

    @contextmanager
    def cursor(self):
        """A cursor whose statements commit together, or roll back on any error."""
        conn = self.connection
        cur = conn.cursor()
        try:
            yield cur
        except Exception as exc:
            conn.rollback()
            self.logger.error("Rolled back %s: %s", type(exc).__name__, exc)
            raise
        else:
            conn.commit()
        finally:
            cur.close()

    def close(self) -> None:
        if self._conn is not None and not self._conn.closed:
            self._conn.close()
        self._conn = None

    def __enter__(self) -> "PostgresEngine":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @pg_retry()
    def query(self, sql: str, params: dict[str, Any] | tuple | None = None) -> pd.DataFrame:
        """Run a SELECT (``%(name)s`` or ``%s`` placeholders) into a DataFrame."""
        with self.cursor() as cur:
            cur.execute(sql, params)
            return pd.DataFrame(cur.fetchall(), columns=[col[0] for col in cur.description])

    @pg_retry()
    def execute(self, sql: str, params: dict[str, Any] | tuple | None = None) -> None:
        with self.cursor() as cur:
            cur.execute(sql, params)

    def read_rows(
        self, schema: str, table: str, osm_id: int | None = None, srid: int = 3857
    ) -> gpd.GeoDataFrame:
        """
        Rows of an output table as a GeoDataFrame, optionally for one osm_id.
        """
        sql = (
            f'select "osm_id", "type", "tags", encode(st_asewkb("geometry"), \'hex\') as "geometry" '
            f'from "{schema}"."{table}"'
        )
        params = None
        if osm_id is not None:
            sql += ' where "osm_id" = %(osm_id)s'
            params = {"osm_id": osm_id}
        df = self.query(sql, params)
        geometry = gpd.GeoSeries.from_wkb(df.pop("geometry"), crs=f"EPSG:{srid}" if srid else None)
        return gpd.GeoDataFrame(df, geometry=geometry)

    def _existing_tables(self, cur, schema_names: Iterable[str]) -> dict[str, set[str]]:
        cur.execute(
            """
            select table_schema, table_name
            from information_schema.tables
            where table_schema = any(%(schemas)s)
            """,
            {"schemas": list(schema_names)},
        )
        existing: dict[str, set[str]] = {}
        for schema, table in cur.fetchall():
            existing.setdefault(schema, set()).add(table)
        return existing

    @pg_retry()
    def existing_tables(self, schema_names: Iterable[str]) -> dict[str, set[str]]:
        """Map each schema name to the set of tables it currently holds."""
        with self.cursor() as cur:
            return self._existing_tables(cur, schema_names)

    def count_invalid_geometries(self, schema: str, table: str) -> int:
        df = self.query(
            f'select count(*) as invalid from "{schema}"."{table}" '
            f'where not st_isvalid("geometry")'
        )
        return int(df.iloc[0]["invalid"])

    # ------------------------------------------------------------------
    # Import schema
    # ------------------------------------------------------------------

    @pg_retry()
    def create_tables(self, schema: str, table_types: dict[str, str], srid: int) -> None:
        """(Re)create ``schema`` with one empty table per entry of ``table_types``."""
        with self.cursor() as cur:
            cur.execute("create extension if not exists postgis")
            cur.execute(f'create schema if not exists "{schema}"')
            for table, geometry in table_types.items():
                cur.execute(f'drop table if exists "{schema}"."{table}"')
                cur.execute(ddl.generate_ddl(schema, table, geometry, srid))
        self.logger.info("Created %d tables in schema %s", len(table_types), schema)

    @pg_retry()
    def create_indexes(self, schema: str, tables: Iterable[str]) -> None:
        with self.cursor() as cur:
            for table in tables:
                cur.execute(ddl.generate_index_ddl(schema, table))
                cur.execute(f'analyze "{schema}"."{table}"')

    def drop_schema(self, schema: str) -> None:
        self.execute(f'drop schema if exists "{schema}" cascade')

    @pg_retry()
    def copy_rows(self, schema: str, table: str, rows: list[dict[str, Any]]) -> int:
        """COPY a batch of row dicts into ``schema.table``. Returns the row count."""
        if not rows:
            return 0
        col_list = ", ".join(f'"{c}"' for c in ROW_COLUMNS)
        with self.cursor() as cur:
            cur.copy_expert(
                f'copy "{schema}"."{table}" ({col_list}) '
                f"from stdin with (format text, NULL '\\N')",
                rows_to_copy_buffer(rows),
            )
        self.logger.debug("Copied %d rows into %s.%s", len(rows), schema, table)
        return len(rows)

    @pg_retry()
    def replace_rows(
        self,
        schema: str,
        deletions: dict[str, list[int]],
        insertions: dict[str, list[dict[str, Any]]],
    ) -> tuple[int, int]:
        """
        Delete rows by osm_id and insert new rows, all in one transaction.

        Returns (rows_deleted, rows_inserted).
        """
        deleted = inserted = 0
        col_list = ", ".join(f'"{c}"' for c in ROW_COLUMNS)
        with self.cursor() as cur:
            cur.execute("select pg_advisory_xact_lock(%s)", (SCHEMA_LOCK_ID,))
            for table, ids in deletions.items():
                if not ids:
                    continue
                cur.execute(
                    f'delete from "{schema}"."{table}" where "osm_id" = any(%s)',
                    (list(ids),),
                )
                deleted += cur.rowcount
            for table, rows in insertions.items():
                if not rows:
                    continue
                cur.copy_expert(
                    f'copy "{schema}"."{table}" ({col_list}) '
                    f"from stdin with (format text, NULL '\\N')",
                    rows_to_copy_buffer(rows),
                )
                inserted += len(rows)
        self.logger.info(
            "Replaced rows in %s: %d deleted, %d inserted", schema, deleted, inserted
        )
        return deleted, inserted

    # ------------------------------------------------------------------
    # Schema moves
    # ------------------------------------------------------------------

    def _move_tables(self, build_statements, tables: list[str], schemas: SchemaNames) -> int:
        with self.cursor() as cur:
            cur.execute("select pg_advisory_xact_lock(%s)", (SCHEMA_LOCK_ID,))
            existing = self._existing_tables(
                cur, [schemas.import_schema, schemas.production_schema, schemas.backup_schema]
            )
            statements = build_statements(tables, existing, schemas)
            for statement in statements:
                cur.execute(statement)
        return len(statements)

    def deploy(self, tables: list[str], schemas: SchemaNames) -> None:
        """Swap the import tables into production in one transaction."""
        count = self._move_tables(ddl.deploy_statements, tables, schemas)
        self.logger.info(
            "Deployed %d tables from %s to %s (%d statements)",
            len(tables),
            schemas.import_schema,
            schemas.production_schema,
            count,
        )

    def revert_deploy(self, tables: list[str], schemas: SchemaNames) -> None:
        count = self._move_tables(ddl.revert_statements, tables, schemas)
        self.logger.info(
            "Restored tables from %s to %s (%d statements)",
            schemas.backup_schema,
            schemas.production_schema,
            count,
        )

    def remove_backup(self, tables: list[str], schemas: SchemaNames) -> None:
        count = self._move_tables(ddl.remove_backup_statements, tables, schemas)
        self.logger.info("Dropped %d backup tables from %s", count, schemas.backup_schema)
