from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

VALID_ROLE_POLICIES = ("auto", "declared", "geometry")
VALID_SRIDS = (4326, 3857)

# Gap tolerance defaults in output coordinate units.
DEFAULT_GAP_TOLERANCE = {4326: 1e-6, 3857: 0.1}


@dataclass
class SchemaNames:
    """
    The three schemas the pipeline moves tables between.

    Attributes:
        import_schema:      Full imports are written here.
        production_schema:  Deployed tables; diffs are applied here.
        backup_schema:      The previous production tables after a deploy.
    """

    import_schema: str = "import"
    production_schema: str = "public"
    backup_schema: str = "backup"

    def __post_init__(self):
        names = [self.import_schema, self.production_schema, self.backup_schema]
        if len(set(names)) != 3:
            raise ValueError(f"schema names must be distinct, got {names}")


@dataclass
class ImportConfig:
    """
    Configuration for an import / deploy / diff run.

    Attributes:
        mapping_path:        JSON or YAML mapping file with the table rules.
        cache_dir:           Directory holding the element cache and state file.
        schemas:             Schema names, see SchemaNames.
        srid:                Output SRID. 3857 reprojects from WGS84.
        workers:             Worker threads per stage.
        shards:              Lock shards for the element store and dependency index.
        batch_size:          Rows per COPY batch and elements per work item.
        ring_gap_tolerance:  Ring endpoints closer than this are joined.
                             Defaults depend on the SRID.
        role_policy:         How multipolygon member roles decide ring polarity:
                             "auto" honours outer/inner and infers empty roles,
                             "declared" treats empty roles as outer,
                             "geometry" ignores roles and uses ring nesting.
        inherit_outer_tags:  Untagged multipolygons take the tags their outer
                             ways share.
    """

    mapping_path: Path
    cache_dir: Path
    schemas: SchemaNames = field(default_factory=SchemaNames)
    srid: int = 3857
    workers: int = 4
    shards: int = 64
    batch_size: int = 5000
    ring_gap_tolerance: float | None = None
    role_policy: str = "auto"
    inherit_outer_tags: bool = True

    def __post_init__(self):
        self.mapping_path = Path(self.mapping_path)
        self.cache_dir = Path(self.cache_dir)
        if self.srid not in VALID_SRIDS:
            raise ValueError(f"srid must be one of {VALID_SRIDS}, got {self.srid!r}")
        if self.role_policy not in VALID_ROLE_POLICIES:
            raise ValueError(
                f"role_policy must be one of {VALID_ROLE_POLICIES}, got {self.role_policy!r}"
            )
        if self.workers < 1:
            raise ValueError("workers must be at least 1.")
        if self.shards < 1:
            raise ValueError("shards must be at least 1.")
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1.")
        if self.ring_gap_tolerance is None:
            self.ring_gap_tolerance = DEFAULT_GAP_TOLERANCE[self.srid]
        if self.ring_gap_tolerance < 0:
            raise ValueError("ring_gap_tolerance must not be negative.")

    @property
    def cache_path(self) -> Path:
        return self.cache_dir / "elements.sqlite"

    @property
    def state_path(self) -> Path:
        return self.cache_dir / "state.json"
