"""
Embedding clients - text to vector.

Two backends are supported, selected by DEFAULT_EMBEDDING_MODEL:
- OpenAI embeddings API (e.g. "text-embedding-3-small")
- Ollama (model names prefixed with "ollama:", e.g. "ollama:nomic-embed-text")

Transient transport errors and rate limits are retried in-call with
exponential backoff. Anything that still fails is raised to the caller, where
the embedding worker turns it into a retry queue attempt.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import httpx
import openai
from openai import AsyncOpenAI
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)

from worknote_rag.core.config import settings
from worknote_rag.core.errors import EmbeddingBackendError
from worknote_rag.core.logging_config import get_logger

logger = get_logger(__name__)

# In-call retry configuration
MAX_RETRY_ATTEMPTS = 3
RETRY_MIN_WAIT = 1  # seconds
RETRY_MAX_WAIT = 10  # seconds

OLLAMA_PREFIX = "ollama:"

TRANSIENT_OPENAI_ERRORS = (
    openai.RateLimitError,
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.InternalServerError,
)


class EmbeddingClient(ABC):
    """Black-box text to vector service."""

    model: str

    async def embed(self, text: str) -> List[float]:
        """Embed a single text."""
        vectors = await self.embed_batch([text])
        return vectors[0]

    @abstractmethod
    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed several texts. Returns one vector per input, in input order."""

    async def close(self) -> None:
        """Release network resources."""


class OpenAIEmbeddingClient(EmbeddingClient):
    """Embeddings through the OpenAI API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.model = model or settings.DEFAULT_EMBEDDING_MODEL
        self._client = AsyncOpenAI(
            api_key=api_key or settings.OPENAI_API_KEY or None,
            timeout=timeout or settings.EMBEDDING_REQUEST_TIMEOUT_SECONDS,
            max_retries=0,  # retries are handled by tenacity below
        )

    @retry(
        stop=stop_after_attempt(MAX_RETRY_ATTEMPTS),
        wait=wait_exponential(multiplier=1, min=RETRY_MIN_WAIT, max=RETRY_MAX_WAIT),
        retry=retry_if_exception_type(TRANSIENT_OPENAI_ERRORS),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []

        response = await self._client.embeddings.create(model=self.model, input=texts)
        data = sorted(response.data, key=lambda item: item.index)
        if len(data) != len(texts):
            raise EmbeddingBackendError(
                "openai", f"expected {len(texts)} embeddings, got {len(data)}"
            )

        logger.debug(f"Generated {len(data)} OpenAI embedding(s) with {self.model}")
        return [item.embedding for item in data]

    async def close(self) -> None:
        await self._client.close()


class OllamaEmbeddingClient(EmbeddingClient):
    """Embeddings through a local Ollama server."""

    def __init__(
        self,
        model: str,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.model = model[len(OLLAMA_PREFIX):] if model.startswith(OLLAMA_PREFIX) else model
        self.base_url = (base_url or settings.OLLAMA_BASE_URL).rstrip("/")
        self._client = httpx.AsyncClient(
            timeout=timeout or settings.EMBEDDING_REQUEST_TIMEOUT_SECONDS
        )

    @retry(
        stop=stop_after_attempt(MAX_RETRY_ATTEMPTS),
        wait=wait_exponential(multiplier=1, min=RETRY_MIN_WAIT, max=RETRY_MAX_WAIT),
        retry=retry_if_exception_type((httpx.TransportError,)),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _embed_one(self, text: str) -> List[float]:
        response = await self._client.post(
            f"{self.base_url}/api/embeddings",
            json={"model": self.model, "prompt": text}
        )
        if response.status_code != 200:
            raise EmbeddingBackendError(
                "ollama", f"embedding request failed with status {response.status_code}"
            )

        embedding = response.json().get("embedding", [])
        if not embedding:
            raise EmbeddingBackendError("ollama", "empty embedding in response")
        return embedding

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        # The /api/embeddings endpoint takes one prompt per call
        vectors = [await self._embed_one(text) for text in texts]
        logger.debug(f"Generated {len(vectors)} Ollama embedding(s) with {self.model}")
        return vectors

    async def close(self) -> None:
        await self._client.aclose()


def create_embedding_client(model: Optional[str] = None) -> EmbeddingClient:
    """Build the embedding client for a model name."""
    model = model or settings.DEFAULT_EMBEDDING_MODEL
    if model.startswith(OLLAMA_PREFIX):
        return OllamaEmbeddingClient(model=model)
    return OpenAIEmbeddingClient(model=model)


_embedding_client: Optional[EmbeddingClient] = None


def get_embedding_client() -> EmbeddingClient:
    """Shared embedding client for the configured model (created on first use)."""
    global _embedding_client
    if _embedding_client is None:
        _embedding_client = create_embedding_client()
        logger.info(f"Embedding client initialized ({type(_embedding_client).__name__}, model={_embedding_client.model})")
    return _embedding_client


async def close_embedding_client() -> None:
    """Close the shared embedding client, if one was created."""
    global _embedding_client
    if _embedding_client is not None:
        await _embedding_client.close()
        _embedding_client = None
