from abc import ABC, abstractmethod

from services.ingestion.records import (
    ClassificationResult,
    CompanyCriteria,
    FieldChange,
    StoredTender,
    TenderRecord,
)


class TenderStore(ABC):
    """
    Persistence port used by the ingestion pipeline.

    Implementations raise ``StorageError`` for anything that went wrong on the
    storage side; the pipeline decides whether to retry.
    """

    @abstractmethod
    def ping(self) -> None:
        ...

    @abstractmethod
    def load_criteria(self) -> CompanyCriteria:
        ...

    @abstractmethod
    def find_latest(self, key: tuple[str, str]) -> StoredTender | None:
        ...

    @abstractmethod
    def save_new(
        self,
        record: TenderRecord,
        result: ClassificationResult,
        upload_id: int | None,
    ) -> StoredTender:
        ...

    @abstractmethod
    def save_corrigendum(
        self,
        record: TenderRecord,
        result: ClassificationResult,
        prior: StoredTender,
        changes: tuple[FieldChange, ...],
        upload_id: int | None,
    ) -> StoredTender:
        """Insert the new version, link it to ``prior`` and retire every older latest row."""

    @abstractmethod
    def finish_upload(self, job) -> None:
        """Write the job's final status and counters to its upload record."""

    def close(self) -> None:
        pass
