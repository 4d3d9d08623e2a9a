from __future__ import annotations


class OsmDeployError(Exception):
    """Base class for errors raised by osmdeploy."""


class GeometryDefect(OsmDeployError):
    """An element cannot produce geometry. Recovered locally; never fatal."""


class MappingError(OsmDeployError):
    """The mapping file is malformed."""


class PipelineStateError(OsmDeployError):
    """An operation was requested in a phase that does not allow it."""


class ImportCancelled(OsmDeployError):
    """The import was cancelled; the import schema must not be deployed."""


class DeployError(OsmDeployError):
    """The schema swap failed and was rolled back."""


class InconsistentSchemaError(OsmDeployError):
    """Tables exist in neither or both of the import and production schemas."""
