from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from time import monotonic

from meeting_rag.config import Settings, get_settings
from meeting_rag.errors import InvalidInput, MeetingRagError, PipelineTimeout
from meeting_rag.logging import get_logger
from meeting_rag.services.rag.embedding_client import EmbeddingClient, embed_with_retry
from meeting_rag.services.rag.retriever import Retriever, validate_search_params
from meeting_rag.services.rag.store import ChunkStore
from meeting_rag.services.rag.types import QueryHit, QueryStage

logger = get_logger(__name__)


@dataclass
class _QueryRun:
    stage: QueryStage = QueryStage.RECEIVED


def _embed_and_search(
    run: _QueryRun,
    *,
    query_text: str,
    retriever: Retriever,
    embedding_client: EmbeddingClient,
    k: int,
    candidate_pool: int,
    meeting_id: str | None,
    settings: Settings,
    deadline: float,
) -> list[QueryHit]:
    query_vector = embed_with_retry(
        embedding_client,
        query_text,
        max_attempts=settings.embed_max_attempts,
        retry_base_seconds=settings.embed_retry_base_seconds,
        deadline=deadline,
    )
    run.stage = QueryStage.EMBEDDED

    hits = retriever.search(
        query_vector,
        k=k,
        candidate_pool=candidate_pool,
        meeting_id=meeting_id,
    )
    run.stage = QueryStage.SEARCHED
    return hits


def search_meetings(
    *,
    query_text: str,
    store: ChunkStore,
    embedding_client: EmbeddingClient,
    k: int | None = None,
    candidate_pool: int | None = None,
    meeting_id: str | None = None,
    settings: Settings | None = None,
) -> list[QueryHit]:
    """Embed ``query_text`` and return the ``k`` most similar stored chunks.

    Searches every meeting unless ``meeting_id`` is given; a blank
    ``meeting_id`` means no filter.
    """
    settings = settings or get_settings()
    top_k = settings.search_k if k is None else k
    pool = max(settings.search_candidate_pool, top_k) if candidate_pool is None else candidate_pool
    meeting_id = (meeting_id or "").strip() or None
    log = logger.bind(meeting_id=meeting_id, k=top_k, candidate_pool=pool)

    run = _QueryRun()
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="query")
    try:
        normalized_query = (query_text or "").strip()
        if not normalized_query:
            raise InvalidInput("Query is required")
        validate_search_params(k=top_k, candidate_pool=pool)

        future = executor.submit(
            _embed_and_search,
            run,
            query_text=normalized_query,
            retriever=Retriever(store),
            embedding_client=embedding_client,
            k=top_k,
            candidate_pool=pool,
            meeting_id=meeting_id,
            settings=settings,
            deadline=monotonic() + settings.query_timeout_seconds,
        )
        try:
            hits = future.result(timeout=settings.query_timeout_seconds)
        except FutureTimeoutError as exc:
            raise PipelineTimeout(
                f"Query did not finish within {settings.query_timeout_seconds:g}s",
                timeout_seconds=settings.query_timeout_seconds,
            ) from exc
    except MeetingRagError as exc:
        if exc.stage is None:
            exc.stage = run.stage.value
        log.error(
            "query_failed",
            state=QueryStage.FAILED.value,
            stage=exc.stage,
            error=exc.message,
            exc_info=True,
        )
        raise
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    run.stage = QueryStage.DONE
    log.info("query_completed", state=run.stage.value, hits=len(hits))
    return hits
