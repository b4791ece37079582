from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable

import httpx

from context_sync.core.metrics import embedding_requests_total

LOGGER = logging.getLogger(__name__)


class EmbeddingsAPIError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or 500 <= status_code < 600


class EmbeddingsClient:
    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        dimensions: int | None = None,
        timeout_seconds: int | None = None,
        max_retries: int | None = None,
        base_delay_seconds: float | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        from context_sync.core.config import settings

        self.api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self.base_url = str(base_url or settings.OPENAI_BASE_URL).rstrip("/")
        self.model = model or settings.EMBEDDING_MODEL
        self.dimensions = dimensions or settings.EMBEDDING_DIMENSIONS
        self.timeout_seconds = float(timeout_seconds or settings.EMBEDDINGS_TIMEOUT_SECONDS)
        self.max_retries = settings.EMBEDDING_MAX_RETRIES if max_retries is None else max_retries
        self.base_delay_seconds = (
            settings.EMBEDDING_BASE_DELAY_SECONDS if base_delay_seconds is None else base_delay_seconds
        )
        self.max_chars = settings.embedding_max_chars
        self.max_batch = settings.EMBEDDING_MAX_BATCH
        self._transport = transport
        self._sleep = sleep
        if not self.api_key:
            LOGGER.warning("embeddings_api_key_missing")

    def truncate(self, text: str) -> str:
        if len(text) <= self.max_chars:
            return text
        LOGGER.debug("embedding_text_truncated", extra={"original_chars": len(text), "max_chars": self.max_chars})
        return text[: self.max_chars]

    def backoff_delay(self, retry_count: int) -> float:
        return self.base_delay_seconds * 2**retry_count + random.random()

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        """Embed up to ``max_batch`` texts, returned in input order."""
        if not texts:
            return []
        if len(texts) > self.max_batch:
            raise ValueError(f"Maximum batch size is {self.max_batch} texts per request")
        body = self._post_with_retry([self.truncate(text) for text in texts])
        data = sorted(body.get("data") or [], key=lambda item: item["index"])
        if len(data) != len(texts):
            raise EmbeddingsAPIError(f"Embedding API returned {len(data)} vectors for {len(texts)} inputs")
        return [item["embedding"] for item in data]

    def embed_text(self, text: str) -> list[float]:
        embeddings = self.embed_texts([text])
        if not embeddings:
            raise EmbeddingsAPIError("Embedding API returned empty data")
        return embeddings[0]

    def _post_with_retry(self, inputs: list[str]) -> dict:
        payload = {"input": inputs, "model": self.model, "dimensions": self.dimensions}
        headers = {"Authorization": f"Bearer {self.api_key}"}
        retry_count = 0
        while True:
            try:
                with httpx.Client(timeout=self.timeout_seconds, transport=self._transport) as client:
                    response = client.post(f"{self.base_url}/embeddings", json=payload, headers=headers)
                    response.raise_for_status()
                    embedding_requests_total.labels(result="success").inc()
                    return response.json()
            except httpx.HTTPStatusError as exc:
                status_code = exc.response.status_code
                error = EmbeddingsAPIError(
                    f"Embedding API returned HTTP {status_code}",
                    status_code=status_code,
                    retryable=is_retryable_status(status_code),
                )
            except httpx.TimeoutException:
                error = EmbeddingsAPIError("Embedding API request timed out", retryable=True)

            embedding_requests_total.labels(result="error").inc()
            if not error.retryable or retry_count >= self.max_retries:
                raise error
            delay = self.backoff_delay(retry_count)
            LOGGER.warning(
                "embedding_request_retry",
                extra={"attempt": retry_count + 1, "max_retries": self.max_retries, "delay_seconds": round(delay, 3)},
            )
            self._sleep(delay)
            retry_count += 1
