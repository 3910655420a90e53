import logging
from typing import List, Optional, Protocol

from openai import OpenAI

from multimodal_rag.core.openai_client import get_openai_client
from multimodal_rag.utils.retry import with_retry

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    """Anything that turns texts into fixed-dimension vectors."""

    dimension: int

    def embed(self, texts: List[str]) -> List[List[float]]: ...


class OpenAIEmbedder:
    """Embedding collaborator backed by the OpenAI embeddings API, with fixed-delay retries.
    Why available: Ingestion (per chunk, per image description) and search (once per query) embed through this one object."""

    def __init__(
        self,
        model: str,
        dimension: int,
        *,
        max_retries: int = 3,
        retry_delay_seconds: float = 1.0,
        client: Optional[OpenAI] = None,
    ):
        self.model = model
        self.dimension = dimension
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = get_openai_client()
        return self._client

    def embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        resp = with_retry(
            lambda: self.client.embeddings.create(model=self.model, input=texts),
            attempts=self.max_retries,
            delay_seconds=self.retry_delay_seconds,
            label="embedding",
        )
        vectors = [d.embedding for d in resp.data]
        for v in vectors:
            if len(v) != self.dimension:
                raise ValueError(f"embedding dimension {len(v)} != configured {self.dimension}")
        return vectors
