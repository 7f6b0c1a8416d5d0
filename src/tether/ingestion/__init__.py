from .dedup import derive_dedup_key, embedded_event_id
from .ingestor import EventIngestor, IngestResult
from .normalize import normalize_event

__all__ = [
    "EventIngestor",
    "IngestResult",
    "derive_dedup_key",
    "embedded_event_id",
    "normalize_event",
]
