"""
Embedding strategies behind the clustering engine's similarity interface.

Two implementations:
- LexicalEmbeddingService: hashed bag-of-words vectors, offline and deterministic
- HttpEmbeddingService: OpenAI-compatible /v1/embeddings endpoint

Both return unit-length numpy vectors, so similarity is a dot product
clipped to [0, 1].
"""

import hashlib
import logging
import re
from typing import List, Optional, Protocol

import httpx
import numpy as np

from poliscope_backend.config import EMBEDDING_BASE_URL, EMBEDDING_MODE, EMBEDDING_MODEL, ORACLE_API_KEY
from poliscope_backend.errors import SimilarityUnavailable

logger = logging.getLogger("poliscope_backend")

_TOKEN_RE = re.compile(r"[a-z0-9]+")

STOPWORDS = frozenset(
    """
    a about above after again against all am an and any are as at be because been before being below
    between both but by can could did do does doing down during each few for from further had has have
    having he her here hers him his how i if in into is it its itself just me more most my no nor not
    now of off on once only or other our ours out over own same she should so some such than that the
    their theirs them then there these they this those through to too under until up very was we were
    what when where which while who whom why will with would you your yours must may might shall also
    """.split()
)


class SimilarityStrategy(Protocol):
    async def embed(self, text: str) -> np.ndarray:
        ...


def tokenize(text: str) -> List[str]:
    return [tok for tok in _TOKEN_RE.findall(text.lower()) if tok not in STOPWORDS and len(tok) > 1]


def normalize_vector(vector: np.ndarray) -> np.ndarray:
    norm = np.linalg.norm(vector)
    if norm == 0:
        return vector
    return vector / norm


def cosine_similarity(embedding1, embedding2) -> float:
    """
    Cosine similarity between two embeddings.

    Returns:
        Similarity in [-1, 1]; 0.0 when either vector is all zeros
    """
    vec1 = np.asarray(embedding1, dtype=float)
    vec2 = np.asarray(embedding2, dtype=float)

    norm1 = np.linalg.norm(vec1)
    norm2 = np.linalg.norm(vec2)
    if norm1 == 0 or norm2 == 0:
        return 0.0

    return float(np.dot(vec1, vec2) / (norm1 * norm2))


def similarity(embedding1, embedding2) -> float:
    """Similarity in [0, 1] as the clustering engine consumes it."""
    return max(0.0, min(1.0, cosine_similarity(embedding1, embedding2)))


class LexicalEmbeddingService:
    """
    Feature-hashed bag of content words.

    Token buckets come from blake2b, not hash(), so vectors are stable
    across processes.
    """

    DIMENSIONS = 512

    def __init__(self, dimensions: int = DIMENSIONS):
        self.dimensions = dimensions

    def _bucket(self, token: str) -> int:
        digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
        return int.from_bytes(digest, "big") % self.dimensions

    def embed_sync(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dimensions, dtype=float)
        for token in tokenize(text):
            vector[self._bucket(token)] += 1.0
        return normalize_vector(vector)

    async def embed(self, text: str) -> np.ndarray:
        return self.embed_sync(text)


class HttpEmbeddingService:
    """
    Embeddings from an OpenAI-compatible endpoint.

    Any transport or response-shape failure surfaces as SimilarityUnavailable
    so the clustering engine can degrade instead of blocking ingestion.
    """

    def __init__(
        self,
        base_url: str = EMBEDDING_BASE_URL,
        model: str = EMBEDDING_MODEL,
        timeout_seconds: float = 10.0,
        api_key: Optional[str] = ORACLE_API_KEY,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.api_key = api_key
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    async def embed(self, text: str) -> np.ndarray:
        if not text or not text.strip():
            raise SimilarityUnavailable("Cannot embed empty text")

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        payload = {"model": self.model, "input": text, "encoding_format": "float"}
        try:
            response = await self._get_client().post(f"{self.base_url}/v1/embeddings", json=payload, headers=headers)
            response.raise_for_status()
            embedding = response.json()["data"][0]["embedding"]
        except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as exc:
            logger.warning("[EMBEDDING] Embedding request failed: %s", exc)
            raise SimilarityUnavailable(f"embedding request failed: {exc}") from exc

        return normalize_vector(np.asarray(embedding, dtype=float))

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()


# Global singleton instance
_embedding_service = None


def get_embedding_service() -> SimilarityStrategy:
    """Get or create the configured embedding strategy."""
    global _embedding_service

    if _embedding_service is None:
        if EMBEDDING_MODE.strip().lower() == "http":
            _embedding_service = HttpEmbeddingService()
        else:
            _embedding_service = LexicalEmbeddingService()

    return _embedding_service
