"""Unit tests for embedding providers.

Tests cover:
- Ollama client success, retries and error mapping (respx-mocked httpx)
- Ollama health check
- Embedding normalization and empty text handling
- OpenAI fallback when Ollama fails
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import httpx
import numpy as np
import pytest
import respx

from inkvault.config import OllamaConfig, OpenAIConfig
from inkvault.intelligence.embeddings import (
    EmbeddingProviderError,
    EmbeddingService,
    OpenAIEmbeddingClient,
)
from inkvault.intelligence.ollama_client import (
    OllamaAPIError,
    OllamaClient,
    OllamaConnectionError,
    OllamaTimeoutError,
)

OLLAMA_URL = "http://ollama.test:11434"


@pytest.fixture
def config() -> OllamaConfig:
    return OllamaConfig(url=OLLAMA_URL, model="nomic-embed-text", max_retries=2)


class TestOllamaClient:
    """Test OllamaClient against a mocked HTTP API."""

    @respx.mock
    async def test_generate_embedding_success(self, config: OllamaConfig) -> None:
        route = respx.post(f"{OLLAMA_URL}/api/embeddings").mock(
            return_value=httpx.Response(200, json={"embedding": [0.1, 0.2, 0.3]})
        )

        async with OllamaClient(config, initial_backoff=0) as client:
            embedding = await client.generate_embedding("hello")

        assert embedding == [0.1, 0.2, 0.3]
        assert route.call_count == 1

    @respx.mock
    async def test_retries_server_errors(self, config: OllamaConfig) -> None:
        route = respx.post(f"{OLLAMA_URL}/api/embeddings").mock(
            side_effect=[
                httpx.Response(500, text="boom"),
                httpx.Response(200, json={"embedding": [1.0]}),
            ]
        )

        async with OllamaClient(config, initial_backoff=0) as client:
            embedding = await client.generate_embedding("hello")

        assert embedding == [1.0]
        assert route.call_count == 2

    @respx.mock
    async def test_client_error_is_not_retried(self, config: OllamaConfig) -> None:
        route = respx.post(f"{OLLAMA_URL}/api/embeddings").mock(
            return_value=httpx.Response(404, text="model not found")
        )

        async with OllamaClient(config, initial_backoff=0) as client:
            with pytest.raises(OllamaAPIError, match="HTTP 404"):
                await client.generate_embedding("hello")

        assert route.call_count == 1

    @respx.mock
    async def test_timeout_exhausts_retries(self, config: OllamaConfig) -> None:
        route = respx.post(f"{OLLAMA_URL}/api/embeddings").mock(
            side_effect=httpx.ReadTimeout("slow")
        )

        async with OllamaClient(config, initial_backoff=0) as client:
            with pytest.raises(OllamaTimeoutError):
                await client.generate_embedding("hello")

        assert route.call_count == config.max_retries + 1

    @respx.mock
    async def test_connection_error(self, config: OllamaConfig) -> None:
        respx.post(f"{OLLAMA_URL}/api/embeddings").mock(
            side_effect=httpx.ConnectError("refused")
        )

        async with OllamaClient(config, initial_backoff=0) as client:
            with pytest.raises(OllamaConnectionError):
                await client.generate_embedding("hello")

    @respx.mock
    async def test_malformed_response(self, config: OllamaConfig) -> None:
        respx.post(f"{OLLAMA_URL}/api/embeddings").mock(
            return_value=httpx.Response(200, json={"vector": [1.0]})
        )

        async with OllamaClient(config, initial_backoff=0) as client:
            with pytest.raises(OllamaAPIError, match="Invalid response format"):
                await client.generate_embedding("hello")

    async def test_requires_context_manager(self, config: OllamaConfig) -> None:
        with pytest.raises(RuntimeError):
            await OllamaClient(config).generate_embedding("hello")

    @respx.mock
    async def test_health_check(self, config: OllamaConfig) -> None:
        respx.get(f"{OLLAMA_URL}/api/tags").mock(
            side_effect=[httpx.Response(200, json={"models": []}), httpx.ConnectError("down")]
        )

        async with OllamaClient(config) as client:
            assert await client.health_check() is True
            assert await client.health_check() is False


class TestEmbeddingService:
    """Test normalization and provider fallback."""

    async def test_embedding_is_normalized(self) -> None:
        ollama = AsyncMock()
        ollama.generate_embedding.return_value = [3.0, 4.0]

        embedding = await EmbeddingService(ollama_client=ollama).generate("text")

        assert embedding == pytest.approx([0.6, 0.8])
        assert np.linalg.norm(embedding) == pytest.approx(1.0)

    async def test_zero_vector_passes_through(self) -> None:
        ollama = AsyncMock()
        ollama.generate_embedding.return_value = [0.0, 0.0]

        assert await EmbeddingService(ollama_client=ollama).generate("text") == [0.0, 0.0]

    async def test_empty_text_rejected(self) -> None:
        service = EmbeddingService(ollama_client=AsyncMock())

        with pytest.raises(ValueError):
            await service.generate("   ")

    async def test_ollama_error_without_fallback_propagates(self) -> None:
        ollama = AsyncMock()
        ollama.generate_embedding.side_effect = OllamaConnectionError("down")

        with pytest.raises(OllamaConnectionError):
            await EmbeddingService(ollama_client=ollama).generate("text")

    async def test_fallback_to_openai(self) -> None:
        ollama = AsyncMock()
        ollama.generate_embedding.side_effect = OllamaTimeoutError("slow")
        openai = AsyncMock()
        openai.generate_embedding.return_value = [0.0, 2.0]

        service = EmbeddingService(ollama_client=ollama, openai_client=openai)
        embedding = await service.generate("text")

        assert embedding == pytest.approx([0.0, 1.0])
        openai.generate_embedding.assert_awaited_once_with("text")

    async def test_all_providers_failing(self) -> None:
        ollama = AsyncMock()
        ollama.generate_embedding.side_effect = OllamaConnectionError("down")
        openai = AsyncMock()
        openai.generate_embedding.side_effect = httpx.ConnectError("also down")

        service = EmbeddingService(ollama_client=ollama, openai_client=openai)
        with pytest.raises(EmbeddingProviderError, match="All embedding providers failed"):
            await service.generate("text")


class TestOpenAIEmbeddingClient:
    def test_requires_api_key(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)

        with pytest.raises(ValueError, match="API key"):
            OpenAIEmbeddingClient(OpenAIConfig(enabled=True))

    @respx.mock
    async def test_generate_embedding(self) -> None:
        respx.post("https://api.openai.com/v1/embeddings").mock(
            return_value=httpx.Response(200, json={"data": [{"embedding": [0.5, 0.5]}]})
        )

        async with OpenAIEmbeddingClient(OpenAIConfig(enabled=True, api_key="sk-test")) as client:
            assert await client.generate_embedding("text") == [0.5, 0.5]
