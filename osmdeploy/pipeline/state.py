from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path

from osmdeploy.config import SchemaNames

logger = logging.getLogger(__name__)


class ImportPhase(str, Enum):
    IMPORTING = "importing"
    DEPLOYED = "deployed"


@dataclass
class ImportState:
    """
    Where the pipeline stands between runs.

    Attributes:
        phase:            IMPORTING until the first successful deploy.
        import_schema:    Schema full imports are written to.
        production_schema: Schema diffs are applied to.
        backup_schema:    Schema holding the previous production tables.
        import_complete:  The import schema holds a finished, validated import.
        backup_present:   A deploy or revert left tables in the backup schema.
        cache_current:    The element cache matches the production tables.
                          False after a revert until the next import.
    """

    phase: ImportPhase = ImportPhase.IMPORTING
    import_schema: str = "import"
    production_schema: str = "public"
    backup_schema: str = "backup"
    import_complete: bool = False
    backup_present: bool = False
    cache_current: bool = False

    @classmethod
    def fresh(cls, schemas: SchemaNames) -> ImportState:
        return cls(
            import_schema=schemas.import_schema,
            production_schema=schemas.production_schema,
            backup_schema=schemas.backup_schema,
        )

    @property
    def schemas(self) -> SchemaNames:
        return SchemaNames(self.import_schema, self.production_schema, self.backup_schema)

    @classmethod
    def load(cls, path: Path, schemas: SchemaNames) -> ImportState:
        """Read the state file, or start fresh when there is none."""
        path = Path(path)
        if not path.exists():
            return cls.fresh(schemas)
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        raw["phase"] = ImportPhase(raw["phase"])
        state = cls(**raw)
        if state.schemas != schemas:
            logger.warning(
                "State file %s was written for schemas %s, configured %s",
                path,
                state.schemas,
                schemas,
            )
        return state

    def save(self, path: Path) -> None:
        """Write the state atomically (temp file + rename)."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        raw = asdict(self)
        raw["phase"] = self.phase.value
        tmp = path.with_suffix(path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(raw, f, indent=2, sort_keys=True)
        os.replace(tmp, path)
