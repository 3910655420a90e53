import json
import logging
import re
from typing import Optional

from pydantic import ValidationError

from multimodal_rag.cache.store import KeyValueStore
from multimodal_rag.models.schemas import CachedSearchResult
from multimodal_rag.utils.hashing import sha256_hex

logger = logging.getLogger(__name__)

KEY_PREFIX = "search:"

_WHITESPACE = re.compile(r"\s+")


def normalize_query(query: str) -> str:
    """Lowercase, trim, and collapse whitespace so trivially different spellings share a cache entry."""
    return _WHITESPACE.sub(" ", (query or "").strip().lower())


def search_cache_key(
    query: str,
    text_limit: int,
    image_limit: int,
    include_text: bool,
    include_images: bool,
) -> str:
    """Deterministic cache key over the normalized query and every parameter that changes the result set."""
    material = json.dumps(
        [normalize_query(query), text_limit, image_limit, include_text, include_images],
        separators=(",", ":"),
    )
    return KEY_PREFIX + sha256_hex(material)


class SearchCache:
    """TTL cache of CachedSearchResult payloads over the shared key/value store.
    Why available: Repeated queries skip embedding and both index searches; any store failure degrades to a miss instead of failing the search."""

    def __init__(self, store: KeyValueStore, ttl_seconds: int = 300, enabled: bool = True):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.enabled = enabled

    def get(self, key: str) -> Optional[CachedSearchResult]:
        if not self.enabled:
            return None
        try:
            raw = self.store.get(key)
        except Exception as e:
            logger.warning("search cache read failed, treating as miss: %s", e)
            return None
        if raw is None:
            return None
        try:
            result = CachedSearchResult.model_validate_json(raw)
        except ValidationError:
            logger.warning("discarding unreadable search cache entry", extra={"cache_key": key})
            return None
        logger.info("[CACHE HIT] search", extra={"cache_key": key})
        return result.model_copy(update={"was_cached": True, "cache_key": key})

    def put(self, key: str, result: CachedSearchResult) -> bool:
        """Store a successful result; error results are never cached. Returns whether the write happened."""
        if not self.enabled or result.has_error:
            return False
        payload = result.model_copy(update={"was_cached": False, "cache_key": key})
        try:
            self.store.set(key, payload.model_dump_json(), self.ttl_seconds)
        except Exception as e:
            logger.warning("search cache write failed: %s", e)
            return False
        return True
