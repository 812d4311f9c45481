"""
Ingestion progress event schema.

The pipeline reports every step through a plain callback taking an
IngestionProgress; it never depends on how (or whether) the events are shown.
The WebSocket publisher is one such consumer.
"""
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Callable, Optional
import json


class IngestionStep(str, Enum):
    """
    Steps of the ingestion pipeline.

    Order: UPLOADING -> EXTRACTING -> CHUNKING -> EMBEDDING -> SAVING -> DONE
    Or ERROR at any point.
    """
    UPLOADING = "uploading"
    EXTRACTING = "extracting"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    SAVING = "saving"
    DONE = "done"
    ERROR = "error"


class EventType(str, Enum):
    """Types of WebSocket events."""
    INGEST_PROGRESS = "ingest_progress"
    INGEST_COMPLETE = "ingest_complete"
    INGEST_FAILED = "ingest_failed"


@dataclass
class IngestionProgress:
    """
    Progress of a single ingestion step.

    Schema:
    {
        "step": "uploading|extracting|chunking|embedding|saving|done|error",
        "message": "human-readable message",
        "progress": 0-100 (within the current step),
        "documentId": "uuid-string or absent before the row exists"
    }
    """
    step: IngestionStep
    message: str
    progress: int
    document_id: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        data = {
            'step': self.step.value,
            'message': self.message,
            'progress': self.progress,
        }
        if self.document_id:
            data['documentId'] = self.document_id
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @property
    def event_type(self) -> EventType:
        if self.step == IngestionStep.DONE:
            return EventType.INGEST_COMPLETE
        if self.step == IngestionStep.ERROR:
            return EventType.INGEST_FAILED
        return EventType.INGEST_PROGRESS


ProgressCallback = Callable[[IngestionProgress], None]


def percent(completed: int, total: int) -> int:
    """Integer percentage, 100 for an empty total."""
    if total <= 0:
        return 100
    return round(completed / total * 100)


def ignore_progress(event: IngestionProgress) -> None:
    """Default callback for callers that do not track progress."""
    return None
