from __future__ import annotations

import math

from pgvector.sqlalchemy import HALFVEC
from sqlalchemy import cast, select, text
from sqlalchemy.exc import SQLAlchemyError

from meeting_rag.errors import InvalidInput, StoreUnavailable
from meeting_rag.logging import get_logger
from meeting_rag.models import ChunkRow
from meeting_rag.services.rag.store import ChunkStore, normalize_meeting_id
from meeting_rag.services.rag.types import QueryHit

logger = get_logger(__name__)

# pgvector rejects hnsw.ef_search values above this.
HNSW_MAX_EF_SEARCH = 1000


def hnsw_session_settings(candidate_pool: int) -> list[str]:
    """Transaction-local settings for one HNSW search.

    Iterative scans (pgvector 0.8+) keep walking the graph until enough rows
    pass the meeting and dimension filters, so a scoped search can still fill
    ``k``. ``relaxed_order`` may return rows slightly out of distance order;
    callers re-sort.
    """
    ef_search = min(candidate_pool, HNSW_MAX_EF_SEARCH)
    return [
        f"SET LOCAL hnsw.ef_search = {int(ef_search)}",
        "SET LOCAL hnsw.iterative_scan = relaxed_order",
    ]


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def cosine_score(a: list[float], b: list[float]) -> float:
    """Cosine similarity mapped onto ``[0, 1]`` as ``(1 + cos) / 2``."""
    return (1.0 + _cosine(a, b)) / 2.0


def validate_search_params(*, k: int, candidate_pool: int) -> None:
    if k < 1:
        raise InvalidInput("k must be >= 1")
    if candidate_pool < k:
        raise InvalidInput("candidate_pool must be >= k")


class Retriever:
    """Nearest-neighbour search over the chunk store.

    On PostgreSQL the search goes through the HNSW index built on the
    half-precision cast of ``chunks.embedding``; ``candidate_pool`` becomes
    ``hnsw.ef_search`` for the transaction. Other databases get an exact
    cosine scan. Scores are ``(1 + cosine_similarity) / 2`` in both cases,
    higher is more similar.
    """

    def __init__(self, store: ChunkStore) -> None:
        self._store = store

    def search(
        self,
        query_vector: list[float],
        *,
        k: int,
        candidate_pool: int,
        meeting_id: str | None = None,
    ) -> list[QueryHit]:
        validate_search_params(k=k, candidate_pool=candidate_pool)
        if not query_vector:
            raise InvalidInput("query vector must not be empty")

        expected_dim = self._store.embedding_dim
        if expected_dim is not None and len(query_vector) != expected_dim:
            raise InvalidInput(
                f"query vector has {len(query_vector)} dimensions, expected {expected_dim}"
            )

        scoped_meeting_id = normalize_meeting_id(meeting_id) if meeting_id is not None else None

        try:
            if self._store.engine.dialect.name == "postgresql":
                hits = self._search_hnsw(
                    query_vector, k=k, candidate_pool=candidate_pool, meeting_id=scoped_meeting_id
                )
            else:
                hits = self._search_exact(query_vector, k=k, meeting_id=scoped_meeting_id)
        except SQLAlchemyError as exc:
            logger.exception("vector_search_failed")
            raise StoreUnavailable("Chunk store search failed") from exc

        logger.debug(
            "vector_search_completed",
            k=k,
            candidate_pool=candidate_pool,
            meeting_id=scoped_meeting_id,
            hits=len(hits),
        )
        return hits

    def _search_hnsw(
        self,
        query_vector: list[float],
        *,
        k: int,
        candidate_pool: int,
        meeting_id: str | None,
    ) -> list[QueryHit]:
        distance = cast(ChunkRow.embedding, HALFVEC(len(query_vector))).cosine_distance(
            query_vector
        )
        stmt = (
            select(
                ChunkRow.meeting_id,
                ChunkRow.chunk_index,
                ChunkRow.text,
                distance.label("distance"),
            )
            .where(ChunkRow.embedding_dim == len(query_vector))
            .order_by(distance)
            .limit(k)
        )
        if meeting_id is not None:
            stmt = stmt.where(ChunkRow.meeting_id == meeting_id)

        with self._store.engine.begin() as connection:
            for statement in hnsw_session_settings(candidate_pool):
                connection.execute(text(statement))
            rows = connection.execute(stmt).all()

        # cosine distance d = 1 - cos, so (1 + cos) / 2 == 1 - d / 2
        hits = [
            QueryHit(
                meeting_id=row.meeting_id,
                chunk_index=row.chunk_index,
                text=row.text,
                score=1.0 - float(row.distance) / 2.0,
            )
            for row in rows
        ]
        hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits

    def _search_exact(
        self,
        query_vector: list[float],
        *,
        k: int,
        meeting_id: str | None,
    ) -> list[QueryHit]:
        stmt = (
            select(ChunkRow.meeting_id, ChunkRow.chunk_index, ChunkRow.text, ChunkRow.embedding)
            .where(ChunkRow.embedding_dim == len(query_vector))
            .order_by(ChunkRow.id)
        )
        if meeting_id is not None:
            stmt = stmt.where(ChunkRow.meeting_id == meeting_id)

        with self._store.engine.connect() as connection:
            rows = connection.execute(stmt).all()

        hits = [
            QueryHit(
                meeting_id=row.meeting_id,
                chunk_index=row.chunk_index,
                text=row.text,
                score=cosine_score(query_vector, [float(value) for value in row.embedding]),
            )
            for row in rows
        ]
        hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits[:k]
