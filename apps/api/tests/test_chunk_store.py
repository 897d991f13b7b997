from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import Engine

from meeting_rag.errors import InvalidInput, StoreUnavailable
from meeting_rag.services.rag.store import ChunkStore
from meeting_rag.services.rag.types import ChunkRecord

BASE_DATE = datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc)


def _records(
    meeting_id: str,
    count: int,
    *,
    batch_id: str = "batch-1",
    date: datetime = BASE_DATE,
    topic: str | None = None,
    department: str | None = None,
) -> list[ChunkRecord]:
    return [
        ChunkRecord(
            meeting_id=meeting_id,
            chunk_index=index,
            text=f"{meeting_id} chunk {index}",
            embedding=[float(index), 1.0, 0.5],
            date=date,
            batch_id=batch_id,
            topic=topic,
            department=department,
        )
        for index in range(count)
    ]


def test_chunk_store_schema_has_record_columns(engine: Engine) -> None:
    columns = {column["name"] for column in inspect(engine).get_columns("chunks")}

    assert {
        "meeting_id",
        "batch_id",
        "chunk_index",
        "text",
        "content_hash",
        "embedding",
        "embedding_dim",
        "topic",
        "department",
        "date",
    }.issubset(columns)


def test_insert_batch_returns_inserted_count(store: ChunkStore) -> None:
    assert store.insert_batch(_records("m1", 4)) == 4
    assert store.insert_batch([]) == 0
    assert store.count_all() == 4


def test_delete_by_meeting_removes_all_records_once(store: ChunkStore) -> None:
    store.insert_batch(_records("m1", 3))
    store.insert_batch(_records("m2", 2))
    before = store.count_all()

    assert store.delete_by_meeting("m1") == 3
    assert store.count_all() == before - 3
    assert store.delete_by_meeting("m1") == 0
    assert store.delete_by_meeting("unknown") == 0


def test_delete_by_meeting_trims_whitespace_and_matches_exactly(store: ChunkStore) -> None:
    store.insert_batch(_records("m1", 2))
    store.insert_batch(_records("m10", 2))

    assert store.delete_by_meeting(" m1 ") == 2
    assert [meeting.meeting_id for meeting in store.list_meetings()] == ["m10"]


def test_delete_by_meeting_rejects_blank_id(store: ChunkStore) -> None:
    with pytest.raises(InvalidInput, match="meeting_id is required"):
        store.delete_by_meeting("   ")


def test_list_meetings_groups_and_orders_by_recency(store: ChunkStore) -> None:
    store.insert_batch(_records("old", 2, date=BASE_DATE, topic="Budget", department="Finance"))
    store.insert_batch(
        _records("new", 1, date=BASE_DATE + timedelta(days=2), topic="Hiring", department="HR")
    )
    store.insert_batch(
        _records(
            "old",
            3,
            batch_id="batch-2",
            date=BASE_DATE + timedelta(days=5),
            topic="Budget v2",
            department="Ops",
        )
    )

    meetings = store.list_meetings()

    assert [meeting.meeting_id for meeting in meetings] == ["old", "new"]
    old, new = meetings
    assert old.chunk_count == 5
    assert (old.topic, old.department) == ("Budget", "Finance")
    assert old.most_recent_date.replace(tzinfo=None) == (BASE_DATE + timedelta(days=5)).replace(
        tzinfo=None
    )
    assert new.chunk_count == 1
    assert (new.topic, new.department) == ("Hiring", "HR")


def test_inserted_embedding_round_trips_exactly(store: ChunkStore) -> None:
    embedding = [0.1, -2.718281828459045, 1e-9]
    record = ChunkRecord(
        meeting_id="m1",
        chunk_index=0,
        text="precise vector",
        embedding=embedding,
        date=BASE_DATE,
        batch_id="batch-1",
    )
    store.insert_batch([record])

    stored = store.get_chunk("m1", 0)

    assert stored is not None
    assert stored.embedding == embedding
    assert stored.text == "precise vector"


def test_get_chunk_returns_latest_ingestion(store: ChunkStore) -> None:
    store.insert_batch(_records("m1", 2, batch_id="first", date=BASE_DATE))
    store.insert_batch(_records("m1", 2, batch_id="second", date=BASE_DATE + timedelta(hours=1)))

    latest = store.get_chunk("m1", 1)

    assert latest is not None
    assert latest.batch_id == "second"
    assert store.get_chunk("m1", 7) is None
    assert [(chunk.batch_id, chunk.chunk_index) for chunk in store.get_chunks("m1")] == [
        ("first", 0),
        ("first", 1),
        ("second", 0),
        ("second", 1),
    ]


def test_insert_batch_rejects_wrong_dimension(store: ChunkStore) -> None:
    record = _records("m1", 1)[0]
    bad = ChunkRecord(
        meeting_id="m1",
        chunk_index=1,
        text="too short",
        embedding=[1.0, 2.0],
        date=BASE_DATE,
        batch_id="batch-1",
    )

    with pytest.raises(InvalidInput, match="expected 3"):
        store.insert_batch([record, bad])

    assert store.count_all() == 0


def test_replace_meeting_swaps_chunks_in_one_call(store: ChunkStore) -> None:
    store.insert_batch(_records("m1", 3, batch_id="first"))
    store.insert_batch(_records("m2", 1))

    deleted, inserted = store.replace_meeting(" m1", _records("m1", 2, batch_id="second"))

    assert (deleted, inserted) == (3, 2)
    assert {chunk.batch_id for chunk in store.get_chunks("m1")} == {"second"}
    assert store.count_all() == 3


def test_replace_meeting_rejects_foreign_records(store: ChunkStore) -> None:
    store.insert_batch(_records("m1", 1))

    with pytest.raises(InvalidInput, match="must belong to meeting m1"):
        store.replace_meeting("m1", _records("m2", 1))

    assert store.count_all() == 1


def test_store_errors_surface_as_store_unavailable(tmp_path) -> None:
    empty_engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'no-tables.db'}")
    store = ChunkStore(empty_engine, embedding_dim=3)

    with pytest.raises(StoreUnavailable, match="insert failed"):
        store.insert_batch(_records("m1", 1))
    with pytest.raises(StoreUnavailable, match="count failed"):
        store.count_all()

    empty_engine.dispose()
