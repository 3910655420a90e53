"""Dual-collection vector index (text + image descriptions) behind one small interface, backed by Qdrant or an in-process map."""
import itertools
import logging
import math
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from qdrant_client import QdrantClient
from qdrant_client.http.models import Distance, PointStruct, VectorParams

from multimodal_rag.guardrails.errors import ConfigurationError

logger = logging.getLogger(__name__)

TEXT_COLLECTION = "text_embeddings"
IMAGE_COLLECTION = "image_embeddings"

NAMESPACE = uuid.UUID("6f1c4a52-93d1-4e0b-9a57-2b8c3f0d7e11")


def stable_point_id(embedding_id: str) -> str:
    """Return a deterministic UUID string for an embedding id (for Qdrant point id).
    Why available: Qdrant only accepts UUID or integer ids; the same embedding id always maps to the same point so re-upserts overwrite."""
    return str(uuid.uuid5(NAMESPACE, embedding_id))


@dataclass
class IndexHit:
    embedding_id: str
    score: float
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class VectorIndex(Protocol):
    dimension: int

    def ensure_collection(self, name: str) -> None: ...
    def upsert(self, collection: str, embedding_id: str, vector: List[float], text: str, metadata: Dict[str, Any]) -> None: ...
    def search(self, collection: str, vector: List[float], limit: int, min_score: Optional[float] = None) -> List[IndexHit]: ...
    def count(self, collection: str) -> int: ...
    def ping(self) -> bool: ...


def _check_dimension(vector: List[float], dimension: int) -> None:
    if len(vector) != dimension:
        raise ValueError(f"vector has dimension {len(vector)}, index expects {dimension}")


class QdrantVectorIndex:
    """Qdrant-backed index: one cosine collection per modality, payload {embedding_id, text, metadata, seq}.
    Why available: Production store; seq records insertion order so equal scores come back oldest first."""

    def __init__(self, client: QdrantClient, dimension: int):
        self.client = client
        self.dimension = dimension
        self._seq = itertools.count(time.time_ns())
        self._seq_lock = threading.Lock()

    @classmethod
    def from_url(cls, url: str, dimension: int, api_key: Optional[str] = None) -> "QdrantVectorIndex":
        return cls(QdrantClient(url=url, api_key=api_key or None, timeout=10), dimension)

    def ensure_collection(self, name: str) -> None:
        """Create the collection if it does not exist; an existing collection of another vector size is a configuration error."""
        existing = [c.name for c in self.client.get_collections().collections]
        if name in existing:
            info = self.client.get_collection(collection_name=name)
            vectors = info.config.params.vectors
            size = getattr(vectors, "size", None)
            if size is None and isinstance(vectors, dict) and vectors:
                size = next(iter(vectors.values())).size
            if size is not None and size != self.dimension:
                raise ConfigurationError(
                    f"collection '{name}' has vector size {size}, configured embedding dimension is {self.dimension}"
                )
            return
        self.client.create_collection(
            collection_name=name,
            vectors_config=VectorParams(size=self.dimension, distance=Distance.COSINE),
        )
        logger.info("collection_created", extra={"collection": name, "dimension": self.dimension})

    def upsert(self, collection: str, embedding_id: str, vector: List[float], text: str, metadata: Dict[str, Any]) -> None:
        _check_dimension(vector, self.dimension)
        with self._seq_lock:
            seq = next(self._seq)
        point = PointStruct(
            id=stable_point_id(embedding_id),
            vector=vector,
            payload={"embedding_id": embedding_id, "text": text, "metadata": metadata, "seq": seq},
        )
        self.client.upsert(collection_name=collection, points=[point], wait=True)

    def search(self, collection: str, vector: List[float], limit: int, min_score: Optional[float] = None) -> List[IndexHit]:
        _check_dimension(vector, self.dimension)
        res = self.client.query_points(
            collection_name=collection,
            query=vector,
            limit=limit,
            with_payload=True,
            score_threshold=min_score,
        )
        ranked = sorted(res.points or [], key=lambda p: (-p.score, (p.payload or {}).get("seq", 0)))
        return [_point_to_hit(p) for p in ranked]

    def count(self, collection: str) -> int:
        return self.client.count(collection_name=collection, exact=True).count

    def ping(self) -> bool:
        self.client.get_collections()
        return True


def _point_to_hit(p) -> IndexHit:
    """Build an IndexHit from a scored Qdrant point."""
    payload = p.payload or {}
    return IndexHit(
        embedding_id=payload.get("embedding_id") or str(p.id),
        score=float(p.score),
        text=payload.get("text", ""),
        metadata=dict(payload.get("metadata") or {}),
    )


@dataclass
class _Entry:
    seq: int
    vector: List[float]
    norm: float
    text: str
    metadata: Dict[str, Any]


class InMemoryVectorIndex:
    """Process-local index with exact cosine similarity. Used by tests and VECTOR_BACKEND=memory."""

    def __init__(self, dimension: int):
        self.dimension = dimension
        self._collections: Dict[str, Dict[str, _Entry]] = {}
        self._seq = itertools.count()
        self._lock = threading.Lock()

    def ensure_collection(self, name: str) -> None:
        with self._lock:
            self._collections.setdefault(name, {})

    def upsert(self, collection: str, embedding_id: str, vector: List[float], text: str, metadata: Dict[str, Any]) -> None:
        _check_dimension(vector, self.dimension)
        with self._lock:
            entries = self._collection(collection)
            previous = entries.get(embedding_id)
            seq = previous.seq if previous is not None else next(self._seq)
            entries[embedding_id] = _Entry(
                seq=seq,
                vector=list(vector),
                norm=math.sqrt(sum(x * x for x in vector)),
                text=text,
                metadata=dict(metadata),
            )

    def search(self, collection: str, vector: List[float], limit: int, min_score: Optional[float] = None) -> List[IndexHit]:
        _check_dimension(vector, self.dimension)
        qnorm = math.sqrt(sum(x * x for x in vector))
        with self._lock:
            entries = list(self._collection(collection).items())
        scored = []
        for embedding_id, e in entries:
            if qnorm == 0 or e.norm == 0:
                score = 0.0
            else:
                score = sum(a * b for a, b in zip(vector, e.vector)) / (qnorm * e.norm)
            if min_score is not None and score < min_score:
                continue
            scored.append((score, e.seq, embedding_id, e))
        scored.sort(key=lambda t: (-t[0], t[1]))
        return [
            IndexHit(embedding_id=eid, score=score, text=e.text, metadata=dict(e.metadata))
            for score, _, eid, e in scored[:limit]
        ]

    def count(self, collection: str) -> int:
        with self._lock:
            return len(self._collection(collection))

    def ping(self) -> bool:
        return True

    def _collection(self, name: str) -> Dict[str, _Entry]:
        entries = self._collections.get(name)
        if entries is None:
            raise KeyError(f"Collection not found: {name}")
        return entries
