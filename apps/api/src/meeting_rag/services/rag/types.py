from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class IngestionStage(str, Enum):
    RECEIVED = "received"
    EXTRACTED = "extracted"
    CHUNKED = "chunked"
    EMBEDDING = "embedding"
    STORED = "stored"
    DONE = "done"
    FAILED = "failed"


class QueryStage(str, Enum):
    RECEIVED = "received"
    EMBEDDED = "embedded"
    SEARCHED = "searched"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class ChunkRecord:
    meeting_id: str
    chunk_index: int
    text: str
    embedding: list[float]
    date: datetime
    batch_id: str
    topic: str | None = None
    department: str | None = None


@dataclass(frozen=True)
class MeetingSummary:
    meeting_id: str
    chunk_count: int
    topic: str | None
    department: str | None
    most_recent_date: datetime


@dataclass(frozen=True)
class QueryHit:
    meeting_id: str
    chunk_index: int
    text: str
    score: float


@dataclass(frozen=True)
class IngestionSummary:
    meeting_id: str
    chunk_count: int
    batch_id: str
    replaced_count: int = 0
