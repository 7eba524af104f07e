"""Exceptions raised by the ingestion pipeline."""


class WorkbookParseError(ValueError):
    """Workbook bytes could not be read as a spreadsheet."""


class IngestionError(RuntimeError):
    """Base class for failures that abort an ingestion run."""


class TableNameCollisionError(IngestionError):
    """Two worksheets derive the same table name."""


class TableCountMismatchError(IngestionError):
    """The database holds a different number of tables than non-empty sheets."""


class DurabilityError(IngestionError):
    """The database file could not be flushed or verified on disk."""
