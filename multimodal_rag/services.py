"""Wiring: builds every engine component from Settings once, so the API and tests share the same object graph."""
import logging
from dataclasses import dataclass
from typing import Optional

from multimodal_rag.cache.search_cache import SearchCache
from multimodal_rag.cache.session_cache import SessionCache
from multimodal_rag.cache.store import (
    InMemoryKeyValueStore,
    KeyValueStore,
    NullKeyValueStore,
    RedisKeyValueStore,
)
from multimodal_rag.core.config import Settings
from multimodal_rag.guardrails.rate_limit import UploadConcurrencyLimiter
from multimodal_rag.index.vector_store import InMemoryVectorIndex, QdrantVectorIndex, VectorIndex
from multimodal_rag.ingest.duplicate_check import FingerprintRegistry
from multimodal_rag.ingest.embeddings import Embedder, OpenAIEmbedder
from multimodal_rag.ingest.extractors import DocumentExtractor
from multimodal_rag.ingest.jobs import InMemoryJobStore, JobStore
from multimodal_rag.ingest.storage import UploadStorage
from multimodal_rag.ingest.uploads import UploadService
from multimodal_rag.ingest.vision import ImageDescriber, OpenAIImageDescriber
from multimodal_rag.ingest.worker import IngestionPipeline, JobRunner
from multimodal_rag.rag.retriever import MultimodalSearchService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    jobs: JobStore
    fingerprints: FingerprintRegistry
    index: VectorIndex
    kv_store: KeyValueStore
    uploads: UploadService
    search: MultimodalSearchService
    sessions: SessionCache
    runner: JobRunner

    def shutdown(self) -> None:
        self.runner.shutdown(wait=False)
        self.search.shutdown()


def build_index(settings: Settings) -> VectorIndex:
    if settings.vector_backend == "memory":
        return InMemoryVectorIndex(settings.embedding_dimension)
    return QdrantVectorIndex.from_url(settings.qdrant_url, settings.embedding_dimension, settings.qdrant_api_key)


def build_kv_store(settings: Settings) -> KeyValueStore:
    if settings.cache_backend == "none":
        return NullKeyValueStore()
    if settings.cache_backend == "memory":
        return InMemoryKeyValueStore()
    return RedisKeyValueStore.from_settings(
        settings.redis_host, settings.redis_port, settings.redis_db, settings.redis_password
    )


def build_services(
    settings: Settings,
    *,
    embedder: Optional[Embedder] = None,
    describer: Optional[ImageDescriber] = None,
    index: Optional[VectorIndex] = None,
    kv_store: Optional[KeyValueStore] = None,
    extractor: Optional[DocumentExtractor] = None,
) -> Services:
    """Build the component graph; any collaborator can be injected (tests pass fakes for the OpenAI-backed ones)."""
    index = index or build_index(settings)
    kv_store = kv_store or build_kv_store(settings)
    embedder = embedder or OpenAIEmbedder(
        settings.embedding_model,
        settings.embedding_dimension,
        max_retries=settings.max_retries,
        retry_delay_seconds=settings.retry_delay_seconds,
    )
    describer = describer or OpenAIImageDescriber(
        settings.vision_model,
        prompt_version=settings.prompt_version,
        max_retries=settings.max_retries,
        retry_delay_seconds=settings.retry_delay_seconds,
    )
    extractor = extractor or DocumentExtractor(
        max_image_bytes=settings.max_image_bytes,
        render_dpi=settings.pdf_render_dpi,
    )

    jobs = InMemoryJobStore()
    fingerprints = FingerprintRegistry()
    storage = UploadStorage(settings.upload_root, settings.image_dir)
    pipeline = IngestionPipeline(
        jobs=jobs,
        index=index,
        embedder=embedder,
        describer=describer,
        extractor=extractor,
        storage=storage,
        settings=settings,
    )
    runner = JobRunner(pipeline, max_workers=settings.max_concurrent_jobs)
    uploads = UploadService(
        jobs=jobs,
        fingerprints=fingerprints,
        storage=storage,
        runner=runner,
        limiter=UploadConcurrencyLimiter(settings.max_concurrent_uploads_per_user),
        max_file_bytes=settings.max_file_bytes,
    )
    search = MultimodalSearchService(
        index=index,
        embedder=embedder,
        cache=SearchCache(kv_store, ttl_seconds=settings.cache_ttl_seconds, enabled=settings.cache_enabled),
        settings=settings,
    )
    sessions = SessionCache(
        kv_store,
        ttl_seconds=settings.session_ttl_seconds,
        max_entries=settings.session_max_entries,
    )
    return Services(
        settings=settings,
        jobs=jobs,
        fingerprints=fingerprints,
        index=index,
        kv_store=kv_store,
        uploads=uploads,
        search=search,
        sessions=sessions,
        runner=runner,
    )
