"""Error taxonomy for the model ingestion pipeline.

Every failure that can end an ingestion is one of these. The Fallback
Supervisor in ``ingest.py`` turns them into a placeholder result, so none of
them ever leaves ``ingest()``.
"""


class IngestError(Exception):
    """Base class for ingestion failures."""
    pass


class ArchiveCorrupt(IngestError):
    """Raised when the container cannot be opened or fails integrity checks."""
    pass


class ModelDescriptorMissing(IngestError):
    """Raised when none of the primary model descriptor paths exist."""
    pass


class MalformedDocument(IngestError):
    """Raised when the primary model descriptor is not well-formed XML."""
    pass


class NoGeometryFound(IngestError):
    """Raised when every mesh discovery strategy came back empty."""
    pass


class UnsupportedFormat(IngestError):
    """Raised for file extensions outside the supported set."""
    pass


class InvalidGeometry(IngestError):
    """Raised when assembled geometry is empty, non-finite or implausibly large."""
    pass


class InputTooLarge(IngestError):
    """Raised when an upload exceeds the configured size ceiling."""
    pass
