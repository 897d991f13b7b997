from meeting_rag.services.rag.ingest import ingest_document
from meeting_rag.services.rag.query import search_meetings
from meeting_rag.services.rag.retriever import Retriever
from meeting_rag.services.rag.store import ChunkStore
from meeting_rag.services.rag.types import IngestionSummary, MeetingSummary, QueryHit

__all__ = [
    "ChunkStore",
    "IngestionSummary",
    "MeetingSummary",
    "QueryHit",
    "Retriever",
    "ingest_document",
    "search_meetings",
]
