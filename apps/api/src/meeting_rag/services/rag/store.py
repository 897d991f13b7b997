from __future__ import annotations

from collections.abc import Sequence
import hashlib
from typing import Any

from sqlalchemy import and_, delete, func, insert, or_, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from meeting_rag.errors import InvalidInput, StoreUnavailable
from meeting_rag.logging import get_logger
from meeting_rag.models import ChunkRow
from meeting_rag.services.rag.types import ChunkRecord, MeetingSummary

logger = get_logger(__name__)


def normalize_meeting_id(meeting_id: str | None) -> str:
    normalized = (meeting_id or "").strip()
    if not normalized:
        raise InvalidInput("meeting_id is required")
    return normalized


def _content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _to_record(row: Any) -> ChunkRecord:
    return ChunkRecord(
        meeting_id=row.meeting_id,
        chunk_index=row.chunk_index,
        text=row.text,
        embedding=[float(value) for value in row.embedding],
        date=row.date,
        batch_id=row.batch_id,
        topic=row.topic,
        department=row.department,
    )


class ChunkStore:
    """Chunk records in the ``chunks`` table, one SQL transaction per call.

    The engine and its connection pool belong to the caller. Every method
    borrows a connection for the duration of the call and returns it on all
    exit paths.
    """

    def __init__(self, engine: Engine, *, embedding_dim: int | None = None) -> None:
        self._engine = engine
        self._embedding_dim = embedding_dim

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def embedding_dim(self) -> int | None:
        return self._embedding_dim

    def _to_rows(self, records: Sequence[ChunkRecord]) -> list[dict[str, Any]]:
        expected_dim = self._embedding_dim or len(records[0].embedding)
        rows: list[dict[str, Any]] = []
        for record in records:
            if not record.text.strip():
                raise InvalidInput(f"chunk {record.chunk_index} has empty text")
            if not record.embedding:
                raise InvalidInput(f"chunk {record.chunk_index} has no embedding")
            if len(record.embedding) != expected_dim:
                raise InvalidInput(
                    f"chunk {record.chunk_index} embedding has {len(record.embedding)} "
                    f"dimensions, expected {expected_dim}"
                )
            rows.append(
                {
                    "meeting_id": normalize_meeting_id(record.meeting_id),
                    "batch_id": record.batch_id,
                    "chunk_index": record.chunk_index,
                    "text": record.text,
                    "content_hash": _content_hash(record.text),
                    "embedding": list(record.embedding),
                    "embedding_dim": len(record.embedding),
                    "topic": record.topic,
                    "department": record.department,
                    "date": record.date,
                }
            )
        return rows

    @staticmethod
    def _count_persisted(connection: Connection, rows: list[dict[str, Any]]) -> int:
        batches = {(row["meeting_id"], row["batch_id"]) for row in rows}
        condition = or_(
            *(
                and_(ChunkRow.meeting_id == meeting_id, ChunkRow.batch_id == batch_id)
                for meeting_id, batch_id in sorted(batches)
            )
        )
        return int(
            connection.execute(
                select(func.count()).select_from(ChunkRow).where(condition)
            ).scalar_one()
        )

    def insert_batch(self, records: Sequence[ChunkRecord]) -> int:
        """Insert ``records`` and return how many rows of their batches are now stored.

        A count lower than ``len(records)`` is a partial write; the caller
        decides how to surface it.
        """
        if not records:
            return 0

        rows = self._to_rows(records)
        try:
            with self._engine.begin() as connection:
                connection.execute(insert(ChunkRow), rows)
                inserted = self._count_persisted(connection, rows)
        except SQLAlchemyError as exc:
            logger.exception("chunk_insert_failed", submitted=len(rows))
            raise StoreUnavailable("Chunk store insert failed") from exc

        logger.info("chunks_inserted", submitted=len(rows), inserted=inserted)
        return inserted

    def replace_meeting(self, meeting_id: str, records: Sequence[ChunkRecord]) -> tuple[int, int]:
        """Delete every chunk of ``meeting_id`` and insert ``records`` atomically.

        Returns ``(deleted, inserted)``.
        """
        normalized = normalize_meeting_id(meeting_id)
        rows = self._to_rows(records) if records else []
        if any(row["meeting_id"] != normalized for row in rows):
            raise InvalidInput(f"all replacement chunks must belong to meeting {normalized}")

        try:
            with self._engine.begin() as connection:
                deleted = connection.execute(
                    delete(ChunkRow).where(ChunkRow.meeting_id == normalized)
                ).rowcount
                inserted = 0
                if rows:
                    connection.execute(insert(ChunkRow), rows)
                    inserted = self._count_persisted(connection, rows)
        except SQLAlchemyError as exc:
            logger.exception("meeting_replace_failed", meeting_id=normalized)
            raise StoreUnavailable("Chunk store replace failed") from exc

        logger.info("meeting_replaced", meeting_id=normalized, deleted=deleted, inserted=inserted)
        return deleted, inserted

    def delete_by_meeting(self, meeting_id: str) -> int:
        normalized = normalize_meeting_id(meeting_id)
        try:
            with self._engine.begin() as connection:
                deleted = connection.execute(
                    delete(ChunkRow).where(ChunkRow.meeting_id == normalized)
                ).rowcount
        except SQLAlchemyError as exc:
            logger.exception("meeting_delete_failed", meeting_id=normalized)
            raise StoreUnavailable("Chunk store delete failed") from exc

        logger.info("meeting_deleted", meeting_id=normalized, deleted=deleted)
        return int(deleted)

    def list_meetings(self) -> list[MeetingSummary]:
        groups = (
            select(
                ChunkRow.meeting_id.label("meeting_id"),
                func.min(ChunkRow.id).label("first_id"),
                func.count().label("chunk_count"),
                func.max(ChunkRow.date).label("most_recent_date"),
            )
            .group_by(ChunkRow.meeting_id)
            .subquery()
        )
        # topic/department come from the first row written for the meeting
        stmt = (
            select(
                groups.c.meeting_id,
                groups.c.chunk_count,
                groups.c.most_recent_date,
                ChunkRow.topic,
                ChunkRow.department,
            )
            .join(ChunkRow, ChunkRow.id == groups.c.first_id)
            .order_by(groups.c.most_recent_date.desc(), groups.c.meeting_id.asc())
        )

        try:
            with self._engine.connect() as connection:
                rows = connection.execute(stmt).all()
        except SQLAlchemyError as exc:
            logger.exception("meeting_list_failed")
            raise StoreUnavailable("Chunk store listing failed") from exc

        return [
            MeetingSummary(
                meeting_id=row.meeting_id,
                chunk_count=int(row.chunk_count),
                topic=row.topic,
                department=row.department,
                most_recent_date=row.most_recent_date,
            )
            for row in rows
        ]

    def count_all(self) -> int:
        try:
            with self._engine.connect() as connection:
                return int(
                    connection.execute(select(func.count()).select_from(ChunkRow)).scalar_one()
                )
        except SQLAlchemyError as exc:
            logger.exception("chunk_count_failed")
            raise StoreUnavailable("Chunk store count failed") from exc

    def get_chunks(self, meeting_id: str) -> list[ChunkRecord]:
        normalized = normalize_meeting_id(meeting_id)
        stmt = (
            select(ChunkRow)
            .where(ChunkRow.meeting_id == normalized)
            .order_by(ChunkRow.date.asc(), ChunkRow.batch_id.asc(), ChunkRow.chunk_index.asc())
        )
        try:
            with self._engine.connect() as connection:
                rows = connection.execute(stmt).all()
        except SQLAlchemyError as exc:
            logger.exception("chunk_lookup_failed", meeting_id=normalized)
            raise StoreUnavailable("Chunk store lookup failed") from exc

        return [_to_record(row) for row in rows]

    def get_chunk(self, meeting_id: str, chunk_index: int) -> ChunkRecord | None:
        """Return the chunk at ``chunk_index`` from the meeting's latest ingestion."""
        normalized = normalize_meeting_id(meeting_id)
        stmt = (
            select(ChunkRow)
            .where(ChunkRow.meeting_id == normalized)
            .where(ChunkRow.chunk_index == chunk_index)
            .order_by(ChunkRow.date.desc(), ChunkRow.id.desc())
            .limit(1)
        )
        try:
            with self._engine.connect() as connection:
                row = connection.execute(stmt).first()
        except SQLAlchemyError as exc:
            logger.exception("chunk_lookup_failed", meeting_id=normalized)
            raise StoreUnavailable("Chunk store lookup failed") from exc

        return _to_record(row) if row is not None else None
