from datetime import datetime
from typing import Annotated, Any

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from meeting_rag.config import get_settings
from meeting_rag.db import get_engine
from meeting_rag.errors import (
    EmbeddingQuotaExceeded,
    InputError,
    MeetingRagError,
    PartialFailure,
    PipelineTimeout,
    UpstreamServiceError,
)
from meeting_rag.logging import configure_logging, get_logger
from meeting_rag.services.rag import ChunkStore, ingest_document, search_meetings
from meeting_rag.services.rag.embedding_client import EmbeddingClient, build_embedding_client
from meeting_rag.services.rag.extractor import format_from_filename, normalize_format

logger = get_logger(__name__)

app = FastAPI(title="Meeting RAG API", version="0.1.0")


class QueryRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    query: str = ""
    k: int | None = Field(default=None, ge=1, le=100)
    candidate_pool: int | None = Field(default=None, ge=1, le=10000)
    meeting_id: str | None = None


@app.on_event("startup")
def startup() -> None:
    configure_logging()
    get_engine()


def get_embedding_client() -> EmbeddingClient:
    return build_embedding_client(get_settings())


def get_chunk_store() -> ChunkStore:
    return ChunkStore(get_engine(), embedding_dim=get_settings().embedding_dim)


def _status_for(exc: MeetingRagError) -> int:
    if isinstance(exc, InputError):
        return 400
    if isinstance(exc, EmbeddingQuotaExceeded):
        return 429
    if isinstance(exc, PipelineTimeout):
        return 504
    if isinstance(exc, UpstreamServiceError):
        return 503
    return 500


@app.exception_handler(MeetingRagError)
def handle_pipeline_error(request: Request, exc: MeetingRagError) -> JSONResponse:
    content: dict[str, Any] = {"detail": exc.message, "stage": exc.stage}
    if isinstance(exc, PartialFailure):
        content["expected"] = exc.expected
        content["inserted"] = exc.inserted

    status_code = _status_for(exc)
    logger.warning(
        "request_failed",
        path=request.url.path,
        status_code=status_code,
        error_type=type(exc).__name__,
        stage=exc.stage,
    )
    return JSONResponse(status_code=status_code, content=content)


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/ingest")
def ingest(
    store: Annotated[ChunkStore, Depends(get_chunk_store)],
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
    file: UploadFile | None = File(default=None),
    meeting_id: str | None = Form(default=None),
    topic: str | None = Form(default=None),
    department: str | None = Form(default=None),
    format: str | None = Form(default=None),
    replace: bool = Form(default=False),
) -> dict[str, Any]:
    if file is None:
        raise HTTPException(status_code=400, detail="No file uploaded")
    if meeting_id is None or not meeting_id.strip():
        raise HTTPException(status_code=400, detail="meeting_id is required")

    settings = get_settings()
    data = file.file.read(settings.max_upload_bytes + 1)
    if len(data) > settings.max_upload_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"File exceeds the {settings.max_upload_bytes} byte upload limit",
        )

    summary = ingest_document(
        data=data,
        fmt=normalize_format(format) or format_from_filename(file.filename),
        meeting_id=meeting_id,
        topic=topic,
        department=department,
        replace=replace,
        store=store,
        embedding_client=embedding_client,
    )

    return {
        "success": True,
        "meeting_id": summary.meeting_id,
        "chunks": summary.chunk_count,
        "batch_id": summary.batch_id,
        "replaced": summary.replaced_count,
    }


@app.post("/query")
def query(
    request: QueryRequest,
    store: Annotated[ChunkStore, Depends(get_chunk_store)],
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
) -> dict[str, Any]:
    hits = search_meetings(
        query_text=request.query,
        k=request.k,
        candidate_pool=request.candidate_pool,
        meeting_id=request.meeting_id,
        store=store,
        embedding_client=embedding_client,
    )

    return {
        "success": True,
        "results": [
            {
                "meeting_id": hit.meeting_id,
                "chunk_index": hit.chunk_index,
                "text": hit.text,
                "score": round(hit.score, 6),
            }
            for hit in hits
        ],
    }


@app.get("/documents")
def list_documents(store: Annotated[ChunkStore, Depends(get_chunk_store)]) -> dict[str, Any]:
    meetings = store.list_meetings()

    return {
        "success": True,
        "totalDocuments": store.count_all(),
        "meetings": [
            {
                "meeting_id": meeting.meeting_id,
                "chunks": meeting.chunk_count,
                "topic": meeting.topic,
                "department": meeting.department,
                "date": _to_iso(meeting.most_recent_date),
            }
            for meeting in meetings
        ],
    }


@app.get("/documents/{meeting_id}/chunks")
def list_meeting_chunks(
    meeting_id: str,
    store: Annotated[ChunkStore, Depends(get_chunk_store)],
) -> dict[str, Any]:
    chunks = store.get_chunks(meeting_id)

    return {
        "success": True,
        "meeting_id": meeting_id.strip(),
        "chunks": [
            {
                "chunk_index": chunk.chunk_index,
                "batch_id": chunk.batch_id,
                "text": chunk.text,
                "topic": chunk.topic,
                "department": chunk.department,
                "date": _to_iso(chunk.date),
            }
            for chunk in chunks
        ],
    }


@app.delete("/documents/{meeting_id}")
def delete_documents(
    meeting_id: str,
    store: Annotated[ChunkStore, Depends(get_chunk_store)],
) -> dict[str, Any]:
    return {"success": True, "deletedCount": store.delete_by_meeting(meeting_id)}


def run() -> None:
    import uvicorn

    uvicorn.run("meeting_rag.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()
