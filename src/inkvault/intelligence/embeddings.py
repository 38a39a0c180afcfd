"""Embedding generation service with provider fallback.

- Primary: Ollama (local, nomic-embed-text)
- Fallback: OpenAI (cloud, text-embedding-3-small), only when configured

All embeddings are normalized to unit vectors so cosine similarity in the
vector index reduces to an inner product.

Example usage:
    >>> async with OllamaClient(config.ollama) as ollama:
    ...     service = EmbeddingService(ollama_client=ollama)
    ...     embedding = await service.generate("Hello world")
"""

from __future__ import annotations

import os
import time
from typing import Any

import httpx
import numpy as np
import structlog

from inkvault.config import OpenAIConfig
from inkvault.intelligence.ollama_client import OllamaClient, OllamaClientError

logger = structlog.get_logger(__name__)


class EmbeddingProviderError(Exception):
    """Raised when no provider could produce an embedding."""

    pass


class OpenAIEmbeddingClient:
    """OpenAI embeddings API client used as fallback provider."""

    BASE_URL = "https://api.openai.com/v1"

    def __init__(self, config: OpenAIConfig) -> None:
        """Initialize the client.

        Raises:
            ValueError: If no API key is configured or in OPENAI_API_KEY
        """
        self.config = config
        self.api_key = config.api_key or os.getenv("OPENAI_API_KEY")
        if not self.api_key:
            raise ValueError(
                "OpenAI API key required: set openai.api_key or OPENAI_API_KEY"
            )
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> OpenAIEmbeddingClient:
        self._client = httpx.AsyncClient(
            base_url=self.BASE_URL,
            timeout=httpx.Timeout(self.config.timeout_seconds),
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def generate_embedding(self, text: str) -> list[float]:
        """Generate an embedding with the OpenAI API.

        Raises:
            RuntimeError: If used outside the async context manager
            httpx.HTTPError: If the request fails
        """
        if self._client is None:
            raise RuntimeError("OpenAIEmbeddingClient must be used as async context manager")

        response = await self._client.post(
            "/embeddings", json={"input": text, "model": self.config.model}
        )
        response.raise_for_status()
        return response.json()["data"][0]["embedding"]


class EmbeddingService:
    """Embedding generation across providers with normalization.

    Implements the worker's EmbeddingProvider protocol.

    Attributes:
        ollama_client: Primary Ollama embedding client
        openai_client: Optional OpenAI fallback client
    """

    def __init__(
        self,
        ollama_client: OllamaClient,
        openai_client: OpenAIEmbeddingClient | None = None,
    ) -> None:
        self.ollama_client = ollama_client
        self.openai_client = openai_client

    @staticmethod
    def _normalize_embedding(embedding: list[float]) -> list[float]:
        """Scale an embedding to unit L2 norm; zero vectors pass through."""
        arr = np.asarray(embedding, dtype=np.float32)
        norm = np.linalg.norm(arr)
        if norm == 0:
            logger.warning("embedding_zero_norm", embedding_dim=len(embedding))
            return list(embedding)
        return (arr / norm).tolist()

    async def generate(self, text: str) -> list[float]:
        """Generate a normalized embedding for text.

        Args:
            text: Input text to embed

        Returns:
            Normalized embedding vector

        Raises:
            ValueError: If text is empty or only whitespace
            OllamaClientError: If Ollama fails and no fallback is configured
            EmbeddingProviderError: If Ollama and the fallback both fail
        """
        if not text or not text.strip():
            raise ValueError("Cannot generate embedding for empty or whitespace text")

        start_time = time.perf_counter()
        provider = "ollama"
        try:
            raw_embedding = await self.ollama_client.generate_embedding(text)
        except OllamaClientError as e:
            if self.openai_client is None:
                logger.error("embedding_failed_no_fallback", error=str(e))
                raise

            logger.warning(
                "embedding_fallback_to_openai",
                error=str(e),
                error_type=type(e).__name__,
            )
            provider = "openai"
            try:
                raw_embedding = await self.openai_client.generate_embedding(text)
            except (httpx.HTTPError, KeyError, IndexError) as openai_error:
                raise EmbeddingProviderError(
                    f"All embedding providers failed. Ollama: {e}, OpenAI: {openai_error}"
                ) from openai_error

        normalized = self._normalize_embedding(raw_embedding)
        logger.debug(
            "embedding_generated",
            provider=provider,
            text_length=len(text),
            embedding_dim=len(normalized),
            duration_seconds=round(time.perf_counter() - start_time, 3),
        )
        return normalized
