from __future__ import annotations

from random import random
from time import monotonic, sleep
from typing import Any, Protocol

import httpx

from meeting_rag.config import Settings
from meeting_rag.errors import (
    EmbeddingQuotaExceeded,
    EmbeddingServiceUnavailable,
    InvalidInput,
    UpstreamServiceError,
)
from meeting_rag.logging import get_logger

logger = get_logger(__name__)

RETRY_MAX_SECONDS = 30.0


class EmbeddingClient(Protocol):
    model: str

    def embed_text(self, text: str) -> list[float]: ...


def _raise_for_upstream_status(response: httpx.Response, *, provider: str) -> None:
    status_code = response.status_code
    if status_code < 400:
        return

    detail = f"{provider} embedding request failed with HTTP {status_code}"
    if status_code == 429:
        raise EmbeddingQuotaExceeded(f"{provider} embedding quota exceeded")
    if status_code in {401, 403}:
        # misconfigured credentials: the service is unusable, but retrying will not help
        error = EmbeddingServiceUnavailable(f"{provider} embedding service rejected credentials")
        error.retryable = False
        raise error
    if status_code in {408, 425} or status_code >= 500:
        raise EmbeddingServiceUnavailable(detail)
    raise InvalidInput(detail)


def _parse_vector(values: Any, *, provider: str) -> list[float]:
    if not isinstance(values, list) or not values:
        raise EmbeddingServiceUnavailable(
            f"Invalid {provider} embeddings payload: missing embedding vector"
        )
    try:
        return [float(value) for value in values]
    except (TypeError, ValueError) as exc:
        raise EmbeddingServiceUnavailable(
            f"Invalid {provider} embeddings payload: non-numeric embedding value"
        ) from exc


def _decode_payload(response: httpx.Response, *, provider: str) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise EmbeddingServiceUnavailable(
            f"Invalid {provider} embeddings payload: response body is not JSON"
        ) from exc


def _require_text(text: str) -> None:
    if not text or not text.strip():
        raise InvalidInput("Cannot embed empty text")


class GeminiEmbeddingClient:
    """Google Generative Language ``embedContent`` over REST."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gemini-embedding-001",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout_seconds: float = 30.0,
        output_dimensionality: int | None = None,
    ) -> None:
        self.model = model
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._output_dimensionality = output_dimensionality

    def embed_text(self, text: str) -> list[float]:
        _require_text(text)

        body: dict[str, Any] = {
            "model": f"models/{self.model}",
            "content": {"parts": [{"text": text}]},
        }
        if self._output_dimensionality is not None:
            body["outputDimensionality"] = self._output_dimensionality

        try:
            response = httpx.post(
                f"{self._base_url}/models/{self.model}:embedContent",
                json=body,
                headers={"x-goog-api-key": self._api_key},
                timeout=self._timeout_seconds,
            )
        except httpx.HTTPError as exc:
            raise EmbeddingServiceUnavailable(f"gemini embedding request failed: {exc}") from exc

        _raise_for_upstream_status(response, provider="gemini")

        payload = _decode_payload(response, provider="gemini")
        embedding = payload.get("embedding") if isinstance(payload, dict) else None
        values = embedding.get("values") if isinstance(embedding, dict) else None
        return _parse_vector(values, provider="gemini")


class OpenAICompatibleEmbeddingClient:
    """Any ``/embeddings`` endpoint speaking the OpenAI wire format (Ollama, vLLM, ...)."""

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        api_key: str = "",
        timeout_seconds: float = 30.0,
    ) -> None:
        self.model = model
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds

    def embed_text(self, text: str) -> list[float]:
        _require_text(text)

        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        try:
            response = httpx.post(
                f"{self._base_url}/embeddings",
                json={"model": self.model, "input": [text]},
                headers=headers,
                timeout=self._timeout_seconds,
            )
        except httpx.HTTPError as exc:
            raise EmbeddingServiceUnavailable(f"openai embedding request failed: {exc}") from exc

        _raise_for_upstream_status(response, provider="openai")

        payload = _decode_payload(response, provider="openai")
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list) or len(data) != 1:
            raise EmbeddingServiceUnavailable(
                "Invalid openai embeddings payload: expected exactly 1 vector"
            )
        item = data[0]
        return _parse_vector(
            item.get("embedding") if isinstance(item, dict) else None,
            provider="openai",
        )


def build_embedding_client(settings: Settings) -> EmbeddingClient:
    if settings.embedding_provider == "openai":
        return OpenAICompatibleEmbeddingClient(
            base_url=settings.embedding_base_url,
            model=settings.embedding_model,
            api_key=settings.embedding_api_key,
            timeout_seconds=settings.embedding_timeout_seconds,
        )

    return GeminiEmbeddingClient(
        api_key=settings.embedding_api_key,
        model=settings.embedding_model,
        base_url=settings.embedding_base_url,
        timeout_seconds=settings.embedding_timeout_seconds,
        output_dimensionality=settings.embedding_dim,
    )


def embed_with_retry(
    embedding_client: EmbeddingClient,
    text: str,
    *,
    max_attempts: int,
    retry_base_seconds: float,
    deadline: float | None = None,
) -> list[float]:
    """Embed ``text``, retrying transient upstream errors with jittered exponential backoff.

    Permanent errors are raised immediately. No retry is scheduled when its
    backoff would run past ``deadline`` (a ``time.monotonic()`` value).
    """
    delay = retry_base_seconds
    attempt = 1

    while True:
        try:
            return embedding_client.embed_text(text)
        except UpstreamServiceError as exc:
            if not exc.retryable or attempt >= max_attempts:
                raise
            if deadline is not None and monotonic() + delay >= deadline:
                raise
            logger.warning(
                "embedding_retry",
                attempt=attempt,
                max_attempts=max_attempts,
                error=exc.message,
                retry_in_seconds=round(delay, 2),
            )
            sleep(delay + random() * 0.2 * delay)
            delay = min(delay * 2, RETRY_MAX_SECONDS)
            attempt += 1
