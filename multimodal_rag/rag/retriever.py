import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Tuple

from multimodal_rag.cache.search_cache import SearchCache, search_cache_key
from multimodal_rag.core.config import Settings
from multimodal_rag.guardrails.errors import QueryValidationError
from multimodal_rag.index.vector_store import IndexHit, VectorIndex
from multimodal_rag.ingest.embeddings import Embedder
from multimodal_rag.models.schemas import CachedSearchResult, SearchMetrics, SearchResultItem

logger = logging.getLogger(__name__)

MODE_ALL = "all"
MODE_TEXT = "text"
MODE_IMAGE = "image"

_ITEM_FIELDS = (
    "source", "filename", "page", "total_pages", "image_path", "image_id",
    "image_name", "image_number", "width", "height", "job_id",
)


def _hit_to_item(hit: IndexHit, kind: str) -> SearchResultItem:
    """Build a result item from an index hit (text + score + known metadata fields)."""
    md: Dict[str, Any] = hit.metadata or {}
    return SearchResultItem(
        content=hit.text,
        score=hit.score,
        type=kind,
        embedding_id=hit.embedding_id,
        **{k: md.get(k) for k in _ITEM_FIELDS},
    )


class MultimodalSearchService:
    """Cached similarity search over the text and image collections.
    Why available: Single query entry point for the assistant; validates first, serves repeats from cache, and searches both modalities in parallel on a miss."""

    def __init__(
        self,
        *,
        index: VectorIndex,
        embedder: Embedder,
        cache: SearchCache,
        settings: Settings,
    ):
        self.index = index
        self.embedder = embedder
        self.cache = cache
        self.settings = settings
        self._pool = ThreadPoolExecutor(
            max_workers=settings.parallel_search_threads,
            thread_name_prefix="search",
        )

    def resolve_limits(
        self,
        mode: str,
        max_text_results: Optional[int] = None,
        max_image_results: Optional[int] = None,
    ) -> Tuple[int, int]:
        """Per-modality limits for a mode; 0 means the modality is not searched."""
        s = self.settings
        if mode == MODE_ALL:
            default_text = default_image = s.max_multimodal_results
        elif mode == MODE_TEXT:
            default_text, default_image = s.max_text_results, 0
        elif mode == MODE_IMAGE:
            default_text, default_image = 0, s.max_image_results
        else:
            raise QueryValidationError(f"Unknown search mode: {mode}")

        text_limit = default_text if max_text_results is None or default_text == 0 else max_text_results
        image_limit = default_image if max_image_results is None or default_image == 0 else max_image_results
        if default_text and not 1 <= text_limit <= s.max_text_results:
            raise QueryValidationError(f"max_text_results must be between 1 and {s.max_text_results}")
        if default_image and not 1 <= image_limit <= s.max_image_results:
            raise QueryValidationError(f"max_image_results must be between 1 and {s.max_image_results}")
        return text_limit, image_limit

    def validate_query(self, query: str) -> str:
        q = (query or "").strip()
        if len(q) < self.settings.min_query_length:
            raise QueryValidationError(f"Query must be at least {self.settings.min_query_length} characters")
        if len(q) > self.settings.max_query_length:
            raise QueryValidationError(f"Query must be at most {self.settings.max_query_length} characters")
        return q

    def search(
        self,
        query: str,
        mode: str = MODE_ALL,
        max_text_results: Optional[int] = None,
        max_image_results: Optional[int] = None,
    ) -> CachedSearchResult:
        """Validate, look up the cache, and on a miss embed once and search both modalities concurrently.
        Raises QueryValidationError for bad input; every other failure comes back as an error result."""
        q = self.validate_query(query)
        text_limit, image_limit = self.resolve_limits(mode, max_text_results, max_image_results)
        include_text, include_images = text_limit > 0, image_limit > 0

        key = search_cache_key(q, text_limit, image_limit, include_text, include_images)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        t0 = time.perf_counter()
        try:
            qvec = self.embedder.embed([q])[0]
        except Exception as e:
            logger.warning("query embedding failed: %s", e)
            return CachedSearchResult.error(q, f"Query embedding failed: {e}", _elapsed_ms(t0))

        text_future = self._pool.submit(self._search_one, self.settings.text_collection, qvec, text_limit, MODE_TEXT) if include_text else None
        image_future = self._pool.submit(self._search_one, self.settings.image_collection, qvec, image_limit, MODE_IMAGE) if include_images else None

        text_items, text_metrics, text_err = _collect(text_future, MODE_TEXT)
        image_items, image_metrics, image_err = _collect(image_future, MODE_IMAGE)
        total_ms = _elapsed_ms(t0)

        failed = [e for e in (text_err, image_err) if e]
        if failed and len(failed) == include_text + include_images:
            return CachedSearchResult.error(q, "Search failed: " + "; ".join(failed), total_ms)

        result = CachedSearchResult(
            query=q,
            text_results=text_items,
            image_results=image_items,
            text_metrics=text_metrics,
            image_metrics=image_metrics,
            total_duration_ms=total_ms,
            was_cached=False,
            cache_key=key,
        )
        # degraded results (one modality down) are served but not cached
        if not failed:
            self.cache.put(key, result)
        logger.info(
            "search_done",
            extra={"results": result.total_results(), "total_ms": round(total_ms, 2), "degraded": bool(failed)},
        )
        return result

    def _search_one(self, collection: str, qvec: List[float], limit: int, kind: str) -> Tuple[List[SearchResultItem], SearchMetrics]:
        t0 = time.perf_counter()
        hits = self.index.search(collection, qvec, limit, min_score=self.settings.min_score)
        items = [_hit_to_item(h, kind) for h in hits]
        return items, SearchMetrics.from_items(items, _elapsed_ms(t0), kind)

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False)


def _collect(future, kind: str) -> Tuple[List[SearchResultItem], SearchMetrics, Optional[str]]:
    if future is None:
        return [], SearchMetrics.empty(kind), None
    try:
        items, metrics = future.result()
        return items, metrics, None
    except Exception as e:
        logger.warning("%s search failed: %s", kind, e)
        return [], SearchMetrics.empty(kind), f"{kind}: {e}"


def _elapsed_ms(t0: float) -> float:
    return (time.perf_counter() - t0) * 1000.0
