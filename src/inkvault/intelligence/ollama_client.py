"""Ollama API client for embedding generation.

Async HTTP client for the Ollama embeddings endpoint with transport-level
retries (exponential backoff on timeouts, connection errors and 5xx
responses). Retries here are short and in-process; a request that still
fails surfaces as an OllamaClientError and becomes a failed attempt of the
embedding task, which the queue retries on its own schedule.

Example usage:
    >>> from inkvault.config import OllamaConfig
    >>> async with OllamaClient(OllamaConfig()) as client:
    ...     embedding = await client.generate_embedding("Hello world")
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import structlog

from inkvault.config import OllamaConfig

logger = structlog.get_logger(__name__)


class OllamaClientError(Exception):
    """Base exception for Ollama client errors."""

    pass


class OllamaTimeoutError(OllamaClientError):
    """Raised when Ollama request times out."""

    pass


class OllamaConnectionError(OllamaClientError):
    """Raised when unable to connect to Ollama service."""

    pass


class OllamaAPIError(OllamaClientError):
    """Raised when Ollama API returns an error response."""

    pass


class OllamaClient:
    """Async client for the Ollama embedding API.

    Attributes:
        config: Ollama configuration containing URL, model, timeout and retries
    """

    EMBEDDINGS_PATH = "/api/embeddings"

    def __init__(self, config: OllamaConfig, initial_backoff: float = 1.0) -> None:
        self.config = config
        self.initial_backoff = initial_backoff
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> OllamaClient:
        self._client = httpx.AsyncClient(
            base_url=self.config.url,
            timeout=httpx.Timeout(self.config.timeout_seconds),
        )
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("OllamaClient must be used as async context manager")
        return self._client

    async def _wait_before_retry(self, attempt: int, reason: str, **context: Any) -> None:
        backoff = self.initial_backoff * (2**attempt)
        logger.warning(
            "ollama_request_retry",
            reason=reason,
            attempt=attempt + 1,
            backoff_seconds=backoff,
            **context,
        )
        await asyncio.sleep(backoff)

    async def generate_embedding(self, text: str) -> list[float]:
        """Generate an embedding vector for text.

        Args:
            text: Input text to embed

        Returns:
            Embedding vector as list of floats

        Raises:
            OllamaTimeoutError: If every attempt timed out
            OllamaConnectionError: If Ollama stayed unreachable
            OllamaAPIError: If the API returned an error or a malformed body
        """
        client = self._get_client()
        payload = {"model": self.config.model, "prompt": text}
        max_retries = self.config.max_retries

        for attempt in range(max_retries + 1):
            retries_left = attempt < max_retries
            try:
                response = await client.post(self.EMBEDDINGS_PATH, json=payload)
            except httpx.TimeoutException as e:
                if retries_left:
                    await self._wait_before_retry(attempt, "timeout", error=str(e))
                    continue
                logger.error(
                    "ollama_timeout_exhausted",
                    max_retries=max_retries,
                    timeout_seconds=self.config.timeout_seconds,
                )
                raise OllamaTimeoutError(
                    f"Request timed out after {max_retries} retries"
                ) from e
            except (httpx.ConnectError, httpx.NetworkError) as e:
                if retries_left:
                    await self._wait_before_retry(attempt, "connection", error=str(e))
                    continue
                logger.error("ollama_connection_exhausted", url=self.config.url)
                raise OllamaConnectionError(
                    f"Failed to connect to Ollama at {self.config.url}"
                ) from e

            if response.status_code == 200:
                embedding = response.json().get("embedding")
                if not embedding or not isinstance(embedding, list):
                    raise OllamaAPIError(
                        "Invalid response format: missing or invalid 'embedding' field"
                    )
                logger.debug(
                    "ollama_embedding_generated",
                    text_length=len(text),
                    embedding_dim=len(embedding),
                    attempt=attempt + 1,
                )
                return embedding

            if response.status_code >= 500 and retries_left:
                await self._wait_before_retry(
                    attempt, "server_error", status_code=response.status_code
                )
                continue

            raise OllamaAPIError(
                f"API error: HTTP {response.status_code}: {response.text}"
            )

        raise OllamaClientError("Unexpected retry loop exit")

    async def health_check(self) -> bool:
        """Return True if the Ollama server answers its tags endpoint."""
        client = self._get_client()
        try:
            response = await client.get("/api/tags")
        except (httpx.TimeoutException, httpx.ConnectError, httpx.NetworkError) as e:
            logger.warning("ollama_health_check_error", url=self.config.url, error=str(e))
            return False

        if response.status_code != 200:
            logger.warning(
                "ollama_health_check_failed",
                url=self.config.url,
                status_code=response.status_code,
            )
            return False
        return True
