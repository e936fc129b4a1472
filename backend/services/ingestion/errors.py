class IngestionError(Exception):
    """Job-level failure: the job moves to ``error`` with this message."""


class ClassificationError(IngestionError):
    """Company criteria are malformed and cannot classify any row."""


class StorageError(IngestionError):
    """Persistence layer failure."""


class RecordStorageError(StorageError):
    """A single record could not be written after all retries."""
