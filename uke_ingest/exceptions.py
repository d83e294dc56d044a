from __future__ import annotations


class UkeIngestError(Exception):
    """Base class for import pipeline errors."""


class MissingColumnsError(UkeIngestError):
    """A source file header lacks one or more required columns."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = list(missing)
        super().__init__(f"Missing required columns: {', '.join(self.missing)}")


class ImportCancelledError(UkeIngestError):
    """The import was stopped between chunks by its supervisor."""


class RegionDatasetError(UkeIngestError):
    """The region boundary dataset is missing or holds no polygons."""
