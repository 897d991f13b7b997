from __future__ import annotations

from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from time import monotonic, perf_counter
from uuid import uuid4

from meeting_rag.config import Settings, get_settings
from meeting_rag.errors import (
    EmptyContent,
    InvalidInput,
    MeetingRagError,
    PartialFailure,
    PipelineTimeout,
)
from meeting_rag.logging import get_logger
from meeting_rag.services.rag.chunker import chunk_text
from meeting_rag.services.rag.embedding_client import EmbeddingClient, embed_with_retry
from meeting_rag.services.rag.extractor import extract_text
from meeting_rag.services.rag.store import ChunkStore, normalize_meeting_id
from meeting_rag.services.rag.types import ChunkRecord, IngestionStage, IngestionSummary

logger = get_logger(__name__)


def _optional_tag(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def embed_chunks(
    chunks: list[str],
    *,
    embedding_client: EmbeddingClient,
    concurrency: int,
    max_attempts: int,
    retry_base_seconds: float,
    deadline: float,
    timeout_seconds: float,
) -> list[list[float]]:
    """Embed every chunk on a bounded thread pool, returning vectors in chunk order.

    The first failure cancels the chunks that have not started yet and is
    re-raised. Running past ``deadline`` raises :class:`PipelineTimeout`.
    """
    if not chunks:
        return []

    embeddings: list[list[float] | None] = [None] * len(chunks)
    executor = ThreadPoolExecutor(
        max_workers=max(1, min(concurrency, len(chunks))),
        thread_name_prefix="embed",
    )
    try:
        futures: dict[Future[list[float]], int] = {
            executor.submit(
                embed_with_retry,
                embedding_client,
                chunk,
                max_attempts=max_attempts,
                retry_base_seconds=retry_base_seconds,
                deadline=deadline,
            ): index
            for index, chunk in enumerate(chunks)
        }
        pending = set(futures)
        while pending:
            remaining = deadline - monotonic()
            if remaining <= 0:
                raise PipelineTimeout(
                    f"Embedding did not finish within {timeout_seconds:g}s",
                    timeout_seconds=timeout_seconds,
                )
            done, pending = wait(pending, timeout=remaining, return_when=FIRST_EXCEPTION)
            for future in done:
                embeddings[futures[future]] = future.result()
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    return [embedding for embedding in embeddings if embedding is not None]


def ingest_document(
    *,
    data: bytes,
    fmt: str,
    meeting_id: str,
    store: ChunkStore,
    embedding_client: EmbeddingClient,
    topic: str | None = None,
    department: str | None = None,
    max_words: int | None = None,
    replace: bool = False,
    settings: Settings | None = None,
) -> IngestionSummary:
    """Extract, chunk, embed and store one document for ``meeting_id``.

    Nothing is written unless every chunk was embedded. With ``replace``
    the meeting's previous chunks are swapped out in the same transaction;
    otherwise the new chunks are appended as another batch.
    """
    settings = settings or get_settings()
    words_per_chunk = settings.chunk_max_words if max_words is None else max_words
    batch_id = uuid4().hex
    started = perf_counter()
    deadline = monotonic() + settings.ingest_timeout_seconds
    log = logger.bind(batch_id=batch_id, meeting_id=(meeting_id or "").strip(), format=fmt)

    stage = IngestionStage.RECEIVED
    replaced_count = 0
    try:
        normalized_meeting_id = normalize_meeting_id(meeting_id)
        if words_per_chunk < 1:
            raise InvalidInput("max_words must be >= 1")

        text = extract_text(data, fmt)
        stage = IngestionStage.EXTRACTED

        chunks = chunk_text(text, words_per_chunk)
        if not chunks:
            raise EmptyContent()
        stage = IngestionStage.CHUNKED
        log.debug("document_chunked", chunks=len(chunks), max_words=words_per_chunk)

        stage = IngestionStage.EMBEDDING
        embeddings = embed_chunks(
            chunks,
            embedding_client=embedding_client,
            concurrency=settings.embed_concurrency,
            max_attempts=settings.embed_max_attempts,
            retry_base_seconds=settings.embed_retry_base_seconds,
            deadline=deadline,
            timeout_seconds=settings.ingest_timeout_seconds,
        )

        ingested_at = datetime.now(timezone.utc)
        records = [
            ChunkRecord(
                meeting_id=normalized_meeting_id,
                chunk_index=index,
                text=chunk,
                embedding=embedding,
                date=ingested_at,
                batch_id=batch_id,
                topic=_optional_tag(topic),
                department=_optional_tag(department),
            )
            for index, (chunk, embedding) in enumerate(zip(chunks, embeddings))
        ]

        if replace:
            replaced_count, inserted = store.replace_meeting(normalized_meeting_id, records)
        else:
            inserted = store.insert_batch(records)
        if inserted != len(records):
            raise PartialFailure(
                expected=len(records), inserted=inserted, meeting_id=normalized_meeting_id
            )
        stage = IngestionStage.STORED
    except MeetingRagError as exc:
        if exc.stage is None:
            exc.stage = stage.value
        log.error(
            "ingestion_failed",
            state=IngestionStage.FAILED.value,
            stage=exc.stage,
            error=exc.message,
            exc_info=True,
        )
        raise

    log.info(
        "ingestion_completed",
        state=IngestionStage.DONE.value,
        chunks=len(records),
        replaced=replaced_count,
        duration_ms=int((perf_counter() - started) * 1000),
    )
    return IngestionSummary(
        meeting_id=normalized_meeting_id,
        chunk_count=len(records),
        batch_id=batch_id,
        replaced_count=replaced_count,
    )
