"""
Embedding collaborator for semantic entity search.

Backends (EMBEDDING_BACKEND):
- none/off/disabled: vector search is switched off entirely
- hash: deterministic local feature-hash vectors (default, offline)
- ollama: POST {base}/api/embed
- openai_compatible: POST {base}/embeddings
"""

import asyncio
import hashlib
import logging
import math
import re
from typing import Any, List, Optional

import httpx

from config import DISABLED_ENV_VALUES, env_float, env_int, first_env

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_BASE_DELAY = 0.5

_REMOTE_BACKENDS = {"ollama", "openai_compatible"}


class EmbeddingError(Exception):
    """Raised internally when a remote embedding request cannot be used."""


class EmbeddingService:
    """Turns text into vectors; every failure degrades to None."""

    def __init__(
        self,
        backend: Optional[str] = None,
        api_base: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        dims: Optional[int] = None,
    ):
        self.backend = (
            backend if backend is not None else first_env(["EMBEDDING_BACKEND"], "hash")
        ).strip().lower() or "hash"
        default_base = (
            "http://localhost:11434" if self.backend == "ollama" else ""
        )
        self.api_base = self._normalize_api_base(
            api_base
            if api_base is not None
            else first_env(["EMBEDDING_API_BASE", "OLLAMA_URL"], default_base)
        )
        self.api_key = (
            api_key if api_key is not None else first_env(["EMBEDDING_API_KEY"])
        )
        self.model = model or first_env(["EMBEDDING_MODEL"], "nomic-embed-text")
        default_dims = 64 if self.backend == "hash" else 768
        self.dims = dims or env_int("EMBEDDING_DIMS", default_dims, minimum=1)
        self.timeout_sec = max(1.0, env_float("EMBEDDING_TIMEOUT_SEC", 30.0))
        self.retry_base_delay = RETRY_BASE_DELAY

    def vector_enabled(self) -> bool:
        return self.backend not in DISABLED_ENV_VALUES

    @staticmethod
    def _normalize_api_base(base: str) -> str:
        normalized = (base or "").strip().rstrip("/")
        if not normalized:
            return ""
        lowered = normalized.lower()
        for suffix in ("/embeddings", "/api/embed"):
            if lowered.endswith(suffix):
                return normalized[: -len(suffix)]
        return normalized

    @staticmethod
    def compose_entity_text(entity: Any) -> str:
        parts: List[str] = []
        name = getattr(entity, "name", None)
        if name:
            parts.append(f"{getattr(entity, 'entity_type', '')}: {name}")
        aliases = getattr(entity, "aliases", None)
        if aliases:
            parts.append(f"Aliases: {aliases}")
        description = getattr(entity, "description", None)
        if description:
            parts.append(description)
        return ". ".join(parts)

    async def embed(self, text: Optional[str]) -> Optional[List[float]]:
        """Generate an embedding for arbitrary text, or None on failure."""
        if not self.vector_enabled() or not text or not text.strip():
            return None
        if self.backend == "hash":
            return self.hash_embedding(text, self.dims)
        if self.backend not in _REMOTE_BACKENDS:
            logger.warning("EmbeddingService: unsupported backend %r", self.backend)
            return None

        attempt = 0
        while True:
            try:
                vector = await self._request_embedding(text)
                if len(vector) != self.dims:
                    raise EmbeddingError(
                        f"Dimension mismatch: expected {self.dims}, got {len(vector)}"
                    )
                return vector
            except (EmbeddingError, httpx.HTTPError, ValueError) as exc:
                attempt += 1
                if attempt > MAX_RETRIES:
                    logger.error(
                        "EmbeddingService: failed after %d retries: %s", MAX_RETRIES, exc
                    )
                    return None
                delay = self.retry_base_delay * (2 ** (attempt - 1))
                logger.warning(
                    "EmbeddingService: retry %d/%d after %.2fs: %s",
                    attempt,
                    MAX_RETRIES,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)

    async def _request_embedding(self, text: str) -> List[float]:
        if not self.api_base:
            raise EmbeddingError("embedding api base is not configured")

        if self.backend == "openai_compatible":
            url = f"{self.api_base}/embeddings"
        else:
            url = f"{self.api_base}/api/embed"
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_sec)) as client:
            response = await client.post(
                url, json={"model": self.model, "input": text}, headers=headers
            )
            response.raise_for_status()
            payload = response.json()

        vector = self._extract_vector(payload)
        if vector is None:
            raise EmbeddingError("No embedding found in response")
        return vector

    @staticmethod
    def _extract_vector(payload: Any) -> Optional[List[float]]:
        candidates: List[Any] = []
        if isinstance(payload, dict):
            data = payload.get("data")
            if isinstance(data, list) and data and isinstance(data[0], dict):
                candidates.append(data[0].get("embedding"))
            embeddings = payload.get("embeddings")
            if isinstance(embeddings, list) and embeddings:
                candidates.append(embeddings[0])
            candidates.append(payload.get("embedding"))

        for candidate in candidates:
            if not isinstance(candidate, list):
                continue
            try:
                return [float(v) for v in candidate]
            except (TypeError, ValueError):
                continue
        return None

    @staticmethod
    def hash_embedding(content: str, dim: int) -> List[float]:
        vector = [0.0] * dim

        normalized = re.sub(r"\s+", " ", content.strip().lower())
        tokens = re.findall(r"[a-z0-9_]+", normalized)
        if not tokens and normalized:
            tokens = list(normalized)

        for token in tokens:
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            for i in range(0, 8, 2):
                idx = digest[i] % dim
                sign = -1.0 if (digest[i + 1] & 1) else 1.0
                weight = 1.0 + (digest[(i + 2) % len(digest)] / 255.0)
                vector[idx] += sign * weight

        norm = math.sqrt(sum(v * v for v in vector))
        if norm <= 0:
            return [0.0] * dim
        return [v / norm for v in vector]


def cosine_distance(v1: List[float], v2: List[float]) -> float:
    """1 - cosine similarity; 1.0 when either vector is empty or zero."""
    length = min(len(v1), len(v2))
    if length == 0:
        return 1.0
    dot = sum(v1[i] * v2[i] for i in range(length))
    norm1 = math.sqrt(sum(v1[i] * v1[i] for i in range(length)))
    norm2 = math.sqrt(sum(v2[i] * v2[i] for i in range(length)))
    if norm1 <= 0 or norm2 <= 0:
        return 1.0
    return 1.0 - dot / (norm1 * norm2)
