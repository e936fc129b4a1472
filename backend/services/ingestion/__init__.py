# services/ingestion/__init__.py

from services.ingestion.classifier import classify, validate_criteria
from services.ingestion.duplicates import resolve
from services.ingestion.errors import ClassificationError, IngestionError, StorageError
from services.ingestion.pipeline import IngestionPipeline, IngestionSummary, load_workbook_sheets
from services.ingestion.progress import ProgressBroadcaster, UploadJob, progress_broadcaster
from services.ingestion.row_parser import PARSER_REGISTRY, parse_row
