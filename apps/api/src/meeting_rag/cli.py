from __future__ import annotations

import argparse
import json
from pathlib import Path
import sys
from typing import Any

from meeting_rag.config import get_settings
from meeting_rag.db import get_engine
from meeting_rag.errors import MeetingRagError
from meeting_rag.logging import configure_logging
from meeting_rag.services.rag import ChunkStore, ingest_document, search_meetings
from meeting_rag.services.rag.embedding_client import EmbeddingClient, build_embedding_client
from meeting_rag.services.rag.extractor import format_from_filename, normalize_format


def _build_parser() -> argparse.ArgumentParser:
    settings = get_settings()

    parser = argparse.ArgumentParser(
        prog="meeting-rag",
        description="Ingest meeting documents and search their chunks",
    )
    subcommands = parser.add_subparsers(dest="command", required=True)

    ingest = subcommands.add_parser("ingest", help="Ingest one document for a meeting")
    ingest.add_argument("file", help="Path to the document (.docx, .txt, .md)")
    ingest.add_argument("--meeting-id", required=True, help="Meeting the document belongs to")
    ingest.add_argument("--topic", default=None)
    ingest.add_argument("--department", default=None)
    ingest.add_argument(
        "--format",
        default=None,
        help="Document format tag; defaults to the file extension",
    )
    ingest.add_argument(
        "--max-words",
        type=int,
        default=settings.chunk_max_words,
        help="Maximum words per chunk",
    )
    ingest.add_argument(
        "--replace",
        action="store_true",
        help="Replace the meeting's existing chunks instead of appending",
    )

    query = subcommands.add_parser("query", help="Search stored chunks")
    query.add_argument("text", help="Free-text query")
    query.add_argument("-k", type=int, default=settings.search_k, help="Number of results")
    query.add_argument(
        "--candidate-pool",
        type=int,
        default=settings.search_candidate_pool,
        help="Approximate neighbours considered before ranking",
    )
    query.add_argument("--meeting-id", default=None, help="Only search this meeting")

    subcommands.add_parser("meetings", help="List meetings by most recent ingestion")

    delete = subcommands.add_parser("delete", help="Delete every chunk of a meeting")
    delete.add_argument("meeting_id")

    return parser


def _run_command(
    args: argparse.Namespace,
    *,
    store: ChunkStore,
    embedding_client: EmbeddingClient,
) -> dict[str, Any]:
    if args.command == "ingest":
        path = Path(args.file)
        summary = ingest_document(
            data=path.read_bytes(),
            fmt=normalize_format(args.format) or format_from_filename(path.name),
            meeting_id=args.meeting_id,
            topic=args.topic,
            department=args.department,
            max_words=args.max_words,
            replace=args.replace,
            store=store,
            embedding_client=embedding_client,
        )
        return {
            "meeting_id": summary.meeting_id,
            "chunks": summary.chunk_count,
            "batch_id": summary.batch_id,
            "replaced": summary.replaced_count,
        }

    if args.command == "query":
        hits = search_meetings(
            query_text=args.text,
            k=args.k,
            candidate_pool=args.candidate_pool,
            meeting_id=args.meeting_id,
            store=store,
            embedding_client=embedding_client,
        )
        return {
            "results": [
                {
                    "meeting_id": hit.meeting_id,
                    "chunk_index": hit.chunk_index,
                    "score": round(hit.score, 6),
                    "text": hit.text,
                }
                for hit in hits
            ]
        }

    if args.command == "meetings":
        return {
            "total_chunks": store.count_all(),
            "meetings": [
                {
                    "meeting_id": meeting.meeting_id,
                    "chunks": meeting.chunk_count,
                    "topic": meeting.topic,
                    "department": meeting.department,
                    "date": meeting.most_recent_date.isoformat(),
                }
                for meeting in store.list_meetings()
            ],
        }

    deleted = store.delete_by_meeting(args.meeting_id)
    return {"meeting_id": args.meeting_id.strip(), "deleted": deleted}


def main(
    argv: list[str] | None = None,
    *,
    store: ChunkStore | None = None,
    embedding_client: EmbeddingClient | None = None,
) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    settings = get_settings()
    configure_logging()

    if store is None:
        store = ChunkStore(get_engine(), embedding_dim=settings.embedding_dim)
    if embedding_client is None:
        embedding_client = build_embedding_client(settings)

    try:
        result = _run_command(args, store=store, embedding_client=embedding_client)
    except (MeetingRagError, OSError) as exc:
        message = exc.message if isinstance(exc, MeetingRagError) else str(exc)
        print(f"[meeting-rag] {args.command} failed: {message}", file=sys.stderr, flush=True)
        raise SystemExit(1) from exc

    print(json.dumps(result, ensure_ascii=False), flush=True)


if __name__ == "__main__":
    main()
