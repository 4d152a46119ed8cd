from __future__ import annotations

import math
from typing import Iterable, List, Optional

import httpx

from ethosync.logging import get_logger
from ethosync.service.errors import DependencyTimeoutError, DependencyUnavailableError

logger = get_logger(__name__)

EMBEDDING_DIM = 768


class EmbeddingError(DependencyUnavailableError):
    """The embedding service failed or returned an unusable vector."""


def validate_embedding(vec: Iterable[float], *, name: str = "embedding") -> List[float]:
    """Validate embedding vector for NaN/Infinity values.

    Raises:
        ValueError: If vector contains NaN or Infinity values
    """
    result = [float(v) for v in vec]
    for i, val in enumerate(result):
        if math.isnan(val):
            raise ValueError(f"{name}[{i}] contains NaN")
        if math.isinf(val):
            raise ValueError(f"{name}[{i}] contains Infinity")
    return result


def validate_embedding_dimension(
    vec: Iterable[float], expected_dim: int, *, name: str = "embedding"
) -> None:
    actual = len(list(vec))
    if actual != expected_dim:
        raise ValueError(f"{name} has dimension {actual}, expected {expected_dim}")


def cosine_similarity(a: Iterable[float], b: Iterable[float]) -> float:
    """Cosine similarity clamped to [-1, 1]; 0.0 for empty, mismatched or invalid vectors."""
    list_a = list(a)
    list_b = list(b)
    if not list_a or not list_b or len(list_a) != len(list_b):
        return 0.0
    if any(math.isnan(v) or math.isinf(v) for v in list_a + list_b):
        return 0.0

    num = sum(x * y for x, y in zip(list_a, list_b))
    denom = (sum(x * x for x in list_a) ** 0.5) * (sum(y * y for y in list_b) ** 0.5)
    if not denom:
        return 0.0
    return max(-1.0, min(1.0, num / denom))


class OllamaEmbeddings:
    """Text embeddings from an Ollama server.

    Vectors are checked against the configured dimension before they are
    handed to a tenant store, which declares ``vector(768)`` columns.
    """

    def __init__(
        self,
        base_url: Optional[str],
        *,
        model: str = "nomic-embed-text",
        dimensions: int = EMBEDDING_DIM,
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        self.model = model
        self.dimensions = dimensions
        self.timeout_seconds = timeout_seconds
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds, connect=10.0)
            )
        return self._client

    async def embed(self, text: str) -> List[float]:
        """Return the embedding for ``text``.

        Raises:
            EmbeddingError: service unreachable, non-2xx or malformed vector
            DependencyTimeoutError: no answer within the timeout
        """
        if not self.is_configured:
            raise EmbeddingError("Embedding service not configured")
        client = await self._get_client()
        try:
            response = await client.post(
                f"{self.base_url}/api/embeddings",
                json={"model": self.model, "prompt": text},
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as exc:
            logger.error("embedding_timeout", model=self.model, timeout=self.timeout_seconds)
            raise DependencyTimeoutError(
                "Embedding service timed out", details=str(exc) or None
            ) from exc
        except httpx.HTTPStatusError as exc:
            logger.error(
                "embedding_api_error",
                model=self.model,
                status_code=exc.response.status_code,
            )
            raise EmbeddingError(
                f"Ollama API error: {exc.response.status_code} {exc.response.reason_phrase}"
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("embedding_request_failed", model=self.model, error=str(exc))
            raise EmbeddingError("Embedding service unavailable", details=str(exc)) from exc

        raw = data.get("embedding") if isinstance(data, dict) else None
        if not isinstance(raw, list):
            raise EmbeddingError("Invalid embedding response from Ollama")
        try:
            vector = validate_embedding(raw)
            validate_embedding_dimension(vector, self.dimensions)
        except (TypeError, ValueError) as exc:
            logger.error("embedding_invalid", model=self.model, error=str(exc))
            raise EmbeddingError(f"Invalid embedding: {exc}") from exc
        return vector

    async def health_check(self) -> bool:
        if not self.is_configured:
            return False
        client = await self._get_client()
        try:
            response = await client.get(f"{self.base_url}/api/tags", timeout=10.0)
        except httpx.HTTPError as exc:
            logger.warning("embedding_health_check_failed", error=str(exc))
            return False
        return response.is_success

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
