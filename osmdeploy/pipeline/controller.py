"""
Import -> deploy -> diff orchestration.

The controller owns the ImportState, the element store, and the storage
driver. Every schema it touches is taken from the state, never from a
module-level setting.

Storage driver surface used here (PostgresEngine in production, an
in-memory fake in tests):

    existing_tables(schemas) -> {schema: {table, ...}}
    create_tables(schema, {table: geometry}, srid)
    drop_schema(schema)
    copy_rows(schema, table, records)
    create_indexes(schema, tables)
    count_invalid_geometries(schema, table)
    replace_rows(schema, deletions, insertions)
    read_rows(schema, table, osm_id, srid) -> GeoDataFrame
    deploy(tables, schemas) / revert_deploy(tables, schemas) / remove_backup(tables, schemas)

Usage:
    controller = PipelineController(config, mapping, engine)
    controller.import_(read_elements("region.osm.pbf"))
    controller.deploy()
    controller.apply_diff(read_changes("000123.osc.gz"), source="000123.osc.gz")
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from typing import Any

from osmdeploy.cache.store import ElementStore, StoreOverlay
from osmdeploy.config import ImportConfig
from osmdeploy.db.schema import table_geometry_types
from osmdeploy.elements import (
    ChangeAction,
    Element,
    ElementChange,
    ElementKey,
    ElementKind,
    row_id,
)
from osmdeploy.exceptions import (
    DeployError,
    ImportCancelled,
    InconsistentSchemaError,
    MappingError,
    PipelineStateError,
)
from osmdeploy.mapping.rules import Mapping
from osmdeploy.pipeline.derive import DefectLog, Deriver, Suppression
from osmdeploy.pipeline.stages import StageRunner
from osmdeploy.pipeline.state import ImportPhase, ImportState
from osmdeploy.tracking.run_log import PipelineRun, RunTracker
from osmdeploy.writer.rows import RowBuffer, RowWriter

logger = logging.getLogger(__name__)


class _ConsumedWays:
    """Suppression sets collected from the relation stage, keyed by way id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_way: dict[int, Suppression] = {}

    def record(self, suppression: dict[int, Suppression]) -> None:
        with self._lock:
            for way_id, pairs in suppression.items():
                self._by_way.setdefault(way_id, set()).update(pairs)

    def get(self, way_id: int) -> Suppression:
        return self._by_way.get(way_id, set())


class _LockedBuffer:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.buffer = RowBuffer()

    def merge(self, other: RowBuffer) -> None:
        with self._lock:
            self.buffer.merge(other)


class PipelineController:
    def __init__(
        self,
        config: ImportConfig,
        mapping: Mapping,
        storage: Any,
        tracker: RunTracker | None = None,
    ) -> None:
        self.config = config
        self.mapping = mapping
        self.storage = storage
        self.tracker = tracker or RunTracker()
        self.state = ImportState.load(config.state_path, config.schemas)
        self.store: ElementStore | None = None
        self._cancel = threading.Event()

    @property
    def tables(self) -> list[str]:
        return self.mapping.table_names

    def cancel(self) -> None:
        """
        Request cancellation of the running import or diff at the next chunk
        or barrier. The next operation starts with the request cleared.
        """
        logger.warning("Cancellation requested")
        self._cancel.set()

    def _save_state(self) -> None:
        self.state.save(self.config.state_path)

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------

    def import_(
        self,
        elements: Iterable[Element],
        source: str | None = None,
        overwrite: bool = False,
    ) -> PipelineRun:
        """
        Load ``elements`` into a fresh store and write every output table to
        the import schema.

        Refuses to run when the import schema already holds mapped tables,
        unless ``overwrite`` is set, in which case the schema is dropped first.
        """
        schema = self.state.import_schema
        existing = self.storage.existing_tables([schema]).get(schema, set())
        leftover = sorted(set(self.tables) & existing)
        if leftover:
            if not overwrite:
                raise PipelineStateError(
                    f"Import schema {schema!r} already holds {len(leftover)} mapped tables "
                    f"(e.g. {leftover[0]!r}); drop them or import with overwrite"
                )
            logger.info("Dropping import schema %s before re-import", schema)
            self.storage.drop_schema(schema)

        self._cancel.clear()
        self.state.import_complete = False
        self.state.cache_current = False
        self._save_state()

        with self.tracker.track("import", source=source) as run:
            self.storage.create_tables(schema, table_geometry_types(self.mapping), self.config.srid)

            store = ElementStore(shards=self.config.shards)
            for element in elements:
                store.put(element)
                run.elements += 1
            self.store = store
            logger.info(
                "Loaded %d nodes, %d ways, %d relations",
                store.count(ElementKind.NODE),
                store.count(ElementKind.WAY),
                store.count(ElementKind.RELATION),
            )

            defects = DefectLog()
            runner = self._runner()
            writer = RowWriter(self.storage, schema, self.config.srid, self.config.batch_size)
            try:
                with writer:
                    self._derive(store, runner, writer.submit, self._all_keys(store), defects)
                # the final flush is a barrier too
                runner.check_cancelled()
            except ImportCancelled:
                logger.warning("Import cancelled; schema %s must not be deployed", schema)
                raise
            run.rows_written = writer.rows_written
            run.defects = defects.count
            self._log_defects(defects)

            self.storage.create_indexes(schema, self.tables)
            run.metadata["invalid_geometries"] = self.validate()

            store.dump(self.config.cache_path)
            self.state.import_complete = True
            self._save_state()

        logger.info(
            "Import finished: %d elements -> %d rows in schema %s",
            run.elements,
            run.rows_written,
            schema,
        )
        return run

    def validate(self) -> dict[str, int]:
        """
        Check that every mapped table exists in the import schema.

        Returns the number of invalid geometries per table that has any.
        """
        schema = self.state.import_schema
        existing = self.storage.existing_tables([schema]).get(schema, set())
        missing = [t for t in self.tables if t not in existing]
        if missing:
            raise PipelineStateError(f"Import schema {schema!r} is missing tables: {missing}")
        invalid = {}
        for table in self.tables:
            count = self.storage.count_invalid_geometries(schema, table)
            if count:
                logger.warning("%s.%s has %d invalid geometries", schema, table, count)
                invalid[table] = count
        return invalid

    # ------------------------------------------------------------------
    # Deploy / revert
    # ------------------------------------------------------------------

    def deploy(self) -> None:
        if not self.state.import_complete:
            raise PipelineStateError("No completed import to deploy")
        schemas = self.state.schemas
        with self.tracker.track("deploy"):
            try:
                self.storage.deploy(self.tables, schemas)
            except Exception as e:
                logger.error("Deploy failed; %s left untouched: %s", schemas.production_schema, e)
                raise DeployError(f"Deploy failed: {e}") from e
            self.state.phase = ImportPhase.DEPLOYED
            self.state.import_complete = False
            self.state.backup_present = True
            self.state.cache_current = True
            self._save_state()

    def revert_deploy(self) -> None:
        """
        Put the backup tables back into production. The tables that were in
        production move to the import schema, where they can be deployed again.
        The element cache no longer matches production, so diffs are refused
        until the next import and deploy.
        """
        if self.state.phase is not ImportPhase.DEPLOYED or not self.state.backup_present:
            raise PipelineStateError("Nothing to revert: no deploy with a backup")
        with self.tracker.track("revert-deploy"):
            try:
                self.storage.revert_deploy(self.tables, self.state.schemas)
            except Exception as e:
                raise DeployError(f"Revert failed: {e}") from e
            self.state.backup_present = False
            self.state.import_complete = True
            self.state.cache_current = False
            self._save_state()

    def remove_backup(self) -> None:
        with self.tracker.track("remove-backup"):
            self.storage.remove_backup(self.tables, self.state.schemas)
            self.state.backup_present = False
            self._save_state()

    def check_consistency(self) -> None:
        """
        Raise InconsistentSchemaError unless every mapped table is in at
        least one of the import and production schemas, and in production
        once deployed. A table may be in both only while a completed import
        waits to be deployed.
        """
        imp, prod = self.state.import_schema, self.state.production_schema
        existing = self.storage.existing_tables([imp, prod])
        in_imp, in_prod = existing.get(imp, set()), existing.get(prod, set())
        problems = []
        for table in self.tables:
            if table in in_prod and table in in_imp and not self.state.import_complete:
                problems.append(f"{table} in both schemas")
            elif table not in in_prod and table not in in_imp:
                problems.append(f"{table} in neither schema")
            elif self.state.phase is ImportPhase.DEPLOYED and table not in in_prod:
                problems.append(f"{table} missing from {prod}")
        if problems:
            raise InconsistentSchemaError("; ".join(problems))

    # ------------------------------------------------------------------
    # Diffs
    # ------------------------------------------------------------------

    def apply_diff(self, changes: Iterable[ElementChange], source: str | None = None) -> PipelineRun:
        """
        Apply one batch of changes to the production tables.

        Rows for the whole dependency closure are rebuilt in a scratch buffer
        and written in one transaction. The element store is only updated
        once that transaction has committed.
        """
        if self.state.phase is not ImportPhase.DEPLOYED:
            raise PipelineStateError("Diffs can only be applied after a deploy")
        if not self.state.cache_current:
            raise PipelineStateError(
                "The element cache does not match production; re-import and deploy first"
            )
        self.check_consistency()
        store = self._load_store()
        self._cancel.clear()

        with self.tracker.track("diff", source=source) as run:
            overlay = StoreOverlay(store)
            for change in changes:
                if change.action is ChangeAction.DELETE:
                    overlay.delete(change.kind, change.id)
                else:
                    overlay.put(change.element)
                run.elements += 1
            changed = overlay.changed_keys
            closure = self._closure(store, overlay)
            logger.info("Diff: %d changed elements, closure of %d", len(changed), len(closure))

            defects = DefectLog()
            scratch = _LockedBuffer()
            self._derive(overlay, self._runner(), scratch.merge, closure, defects)

            deletions = self._deletions(closure)
            insertions = scratch.buffer.records(self.config.srid)
            deleted, inserted = self.storage.replace_rows(
                self.state.production_schema, deletions, insertions
            )

            overlay.commit()
            store.sync(self.config.cache_path, changed)
            run.rows_deleted = deleted
            run.rows_written = inserted
            run.defects = defects.count
            self._log_defects(defects)
        return run

    def _load_store(self) -> ElementStore:
        if self.store is None:
            self.store = ElementStore.load(self.config.cache_path, shards=self.config.shards)
        return self.store

    @staticmethod
    def _closure(store: ElementStore, overlay: StoreOverlay) -> set[ElementKey]:
        """
        Changed elements, everything that transitively depends on them, the
        old and new way members of affected relations (through nested
        relations too), and every relation those ways belong to at any
        depth. Each of those relations adds to a way's suppression set.
        """
        closure: set[ElementKey] = set()
        for key in overlay.changed_keys:
            closure.add(key)
            closure |= overlay.dependents(key)

        stack = [k for k in closure if k[0] is ElementKind.RELATION]
        visited = set(stack)
        while stack:
            key = stack.pop()
            for child in store.index.children(key) | overlay.children(key):
                if child[0] is ElementKind.WAY:
                    closure.add(child)
                elif child[0] is ElementKind.RELATION and child not in visited:
                    visited.add(child)
                    stack.append(child)

        for key in [k for k in closure if k[0] is ElementKind.WAY]:
            for ancestor in overlay.dependents(key):
                if ancestor[0] is ElementKind.RELATION:
                    closure.add(ancestor)
        return closure

    def _deletions(self, closure: set[ElementKey]) -> dict[str, list[int]]:
        """Row ids to delete per table: every table the element's kind can reach."""
        deletions: dict[str, list[int]] = {}
        for kind, id in sorted(closure):
            for table in self.mapping.tables_for_kind(kind):
                deletions.setdefault(table, []).append(row_id(kind, id))
        return deletions

    # ------------------------------------------------------------------
    # Derivation
    # ------------------------------------------------------------------

    def _runner(self) -> StageRunner:
        return StageRunner(
            workers=self.config.workers,
            chunk_size=self.config.batch_size,
            cancel_event=self._cancel,
        )

    @staticmethod
    def _all_keys(store: ElementStore) -> list[ElementKey]:
        return [(kind, id) for kind in ElementKind for id in store.ids(kind)]

    def _derive(self, view, runner: StageRunner, sink, keys: Iterable[ElementKey], defects: DefectLog) -> None:
        """
        Derive rows for ``keys`` in four barrier-separated stages: nodes,
        ways outside any relation, relations, then ways that are relation
        members (which need the relation stage's suppression sets).
        """
        deriver = Deriver(self.mapping, self.config, defects)
        consumed = _ConsumedWays()

        ids: dict[ElementKind, list[int]] = {kind: [] for kind in ElementKind}
        for kind, id in keys:
            ids[kind].append(id)
        for kind in ids:
            ids[kind].sort()

        standalone_ways, member_ways = [], []
        for id in ids[ElementKind.WAY]:
            parents = view.parents((ElementKind.WAY, id))
            if any(kind is ElementKind.RELATION for kind, _ in parents):
                member_ways.append(id)
            else:
                standalone_ways.append(id)

        def node_rows(id):
            node = view.get(ElementKind.NODE, id)
            return deriver.node_rows(node) if node is not None else []

        def way_rows(id):
            way = view.get(ElementKind.WAY, id)
            return deriver.way_rows(view, way, consumed.get(id)) if way is not None else []

        def relation_rows(id):
            relation = view.get(ElementKind.RELATION, id)
            if relation is None:
                return []
            outcome = deriver.relation_outcome(view, relation)
            consumed.record(outcome.suppression)
            return outcome.rows

        runner.run("nodes", ids[ElementKind.NODE], node_rows, sink)
        runner.run("ways", standalone_ways, way_rows, sink)
        runner.run("relations", ids[ElementKind.RELATION], relation_rows, sink)
        runner.run("member-ways", member_ways, way_rows, sink)

    @staticmethod
    def _log_defects(defects: DefectLog) -> None:
        if defects.count:
            logger.warning(
                "Skipped %d elements with geometry defects (first: %s)",
                defects.count,
                defects.samples[0],
            )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        schemas = self.state.schemas
        existing = self.storage.existing_tables(
            [schemas.import_schema, schemas.production_schema, schemas.backup_schema]
        )
        return {
            "phase": self.state.phase.value,
            "import_complete": self.state.import_complete,
            "backup_present": self.state.backup_present,
            "cache_current": self.state.cache_current,
            "tables": {
                schema: sorted(set(self.tables) & existing.get(schema, set()))
                for schema in (
                    schemas.import_schema,
                    schemas.production_schema,
                    schemas.backup_schema,
                )
            },
            "last_diff": self.tracker.get_last_diff(),
        }

    def read_rows(self, table: str, osm_id: int | None = None, schema: str | None = None):
        """
        Output rows of a mapped table as a GeoDataFrame, from production
        unless another schema is named. Relation rows use the negated id.
        """
        if table not in self.tables:
            raise MappingError(f"{table!r} is not a mapped table")
        return self.storage.read_rows(
            schema or self.state.production_schema, table, osm_id=osm_id, srid=self.config.srid
        )
