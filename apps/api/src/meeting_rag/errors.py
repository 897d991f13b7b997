"""Exception hierarchy for the meeting document pipeline.

    MeetingRagError
    +-- InputError (ValueError)        caller mistakes, never retried
    |   +-- UnsupportedFormat
    |   +-- EmptyContent
    |   +-- InvalidInput
    +-- UpstreamServiceError           embedding service / store trouble
    |   +-- EmbeddingServiceUnavailable
    |   +-- EmbeddingQuotaExceeded
    |   +-- StoreUnavailable
    |   +-- PipelineTimeout
    +-- PartialFailure                 batch insert persisted fewer rows

Every error carries a human-readable ``message`` that is safe to return to
callers, and the pipeline ``stage`` it was raised in once a pipeline has
seen it.
"""

from __future__ import annotations


class MeetingRagError(Exception):
    retryable = False

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage


class InputError(MeetingRagError, ValueError):
    pass


class UnsupportedFormat(InputError):
    def __init__(self, fmt: str, *, supported: list[str] | None = None) -> None:
        message = f"Unsupported document format: {fmt or '<none>'}"
        if supported:
            message = f"{message} (supported: {', '.join(supported)})"
        super().__init__(message)
        self.format = fmt


class EmptyContent(InputError):
    def __init__(self, message: str = "Document contains no readable text") -> None:
        super().__init__(message)


class InvalidInput(InputError):
    pass


class UpstreamServiceError(MeetingRagError):
    retryable = True


class EmbeddingServiceUnavailable(UpstreamServiceError):
    pass


class EmbeddingQuotaExceeded(UpstreamServiceError):
    pass


class StoreUnavailable(UpstreamServiceError):
    pass


class PipelineTimeout(UpstreamServiceError):
    # A timeout is terminal for the run; callers decide whether to resubmit.
    retryable = False

    def __init__(self, message: str, *, timeout_seconds: float, stage: str | None = None) -> None:
        super().__init__(message, stage=stage)
        self.timeout_seconds = timeout_seconds


class PartialFailure(MeetingRagError):
    def __init__(self, *, expected: int, inserted: int, meeting_id: str) -> None:
        super().__init__(
            f"Stored {inserted} of {expected} chunks for meeting {meeting_id}"
        )
        self.expected = expected
        self.inserted = inserted
        self.meeting_id = meeting_id
