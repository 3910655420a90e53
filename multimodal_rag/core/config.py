import os
from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Application settings loaded from environment: OpenAI key and models, vector store and cache backends, ingestion/search limits, and prompt version.
    Why available: Single source of configuration so ingestion, search, and the API read the same limits; loaded once at startup and never mutated."""
    openai_api_key: str = os.getenv("OPENAI_API_KEY", "")
    embedding_model: str = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
    embedding_dimension: int = int(os.getenv("EMBEDDING_DIMENSION", "1536"))
    vision_model: str = os.getenv("VISION_MODEL", "gpt-4o-mini")
    openai_timeout_seconds: float = float(os.getenv("OPENAI_TIMEOUT_SECONDS", "60"))

    vector_backend: str = os.getenv("VECTOR_BACKEND", "qdrant")  # qdrant | memory
    qdrant_url: str = os.getenv("QDRANT_URL", "http://localhost:6333")
    qdrant_api_key: str = os.getenv("QDRANT_API_KEY", "")
    text_collection: str = os.getenv("TEXT_COLLECTION", "text_embeddings")
    image_collection: str = os.getenv("IMAGE_COLLECTION", "image_embeddings")

    cache_backend: str = os.getenv("CACHE_BACKEND", "redis")  # redis | memory | none
    cache_enabled: bool = _env_bool("CACHE_ENABLED", "true")
    redis_host: str = os.getenv("REDIS_HOST", "localhost")
    redis_port: int = int(os.getenv("REDIS_PORT", "6379"))
    redis_db: int = int(os.getenv("REDIS_DB", "0"))
    redis_password: str = os.getenv("REDIS_PASSWORD", "")
    cache_ttl_seconds: int = int(os.getenv("CACHE_TTL_SECONDS", "300"))
    session_ttl_seconds: int = int(os.getenv("SESSION_TTL_SECONDS", "3600"))
    session_max_entries: int = int(os.getenv("SESSION_MAX_ENTRIES", "3"))

    min_score: float = float(os.getenv("MIN_SCORE", "0.6"))
    max_retries: int = int(os.getenv("MAX_RETRIES", "3"))
    retry_delay_ms: int = int(os.getenv("RETRY_DELAY_MS", "1000"))
    parallel_search_threads: int = int(os.getenv("PARALLEL_SEARCH_THREADS", "4"))
    embedding_parallelism: int = int(os.getenv("EMBEDDING_PARALLELISM", "4"))
    max_concurrent_jobs: int = int(os.getenv("MAX_CONCURRENT_JOBS", "4"))
    max_concurrent_uploads_per_user: int = int(os.getenv("MAX_CONCURRENT_UPLOADS_PER_USER", "3"))

    max_file_mb: int = int(os.getenv("MAX_FILE_MB", "50"))
    max_image_bytes: int = int(os.getenv("MAX_IMAGE_BYTES", str(5 * 1024 * 1024)))  # 5 MB per image
    chunk_size: int = int(os.getenv("CHUNK_SIZE", "1000"))
    chunk_overlap: int = int(os.getenv("CHUNK_OVERLAP", "100"))
    min_chunk_chars: int = int(os.getenv("MIN_CHUNK_CHARS", "10"))
    pdf_render_dpi: int = int(os.getenv("PDF_RENDER_DPI", "150"))

    max_text_results: int = int(os.getenv("MAX_TEXT_RESULTS", "10"))
    max_image_results: int = int(os.getenv("MAX_IMAGE_RESULTS", "10"))
    max_multimodal_results: int = int(os.getenv("MAX_MULTIMODAL_RESULTS", "4"))
    min_query_length: int = int(os.getenv("MIN_QUERY_LENGTH", "3"))
    max_query_length: int = int(os.getenv("MAX_QUERY_LENGTH", "500"))

    upload_root: str = os.getenv("UPLOAD_ROOT", os.path.join(os.getcwd(), "data", "uploads"))
    image_dir: str = os.getenv("IMAGE_DIR", os.path.join(os.getcwd(), "data", "images"))
    prompt_version: str = os.getenv("PROMPT_VERSION", "v1")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    rate_limit_requests: int = int(os.getenv("RATE_LIMIT_REQUESTS", "60"))
    rate_limit_window_seconds: int = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))

    @field_validator(
        "embedding_dimension",
        "openai_timeout_seconds",
        "cache_ttl_seconds",
        "session_ttl_seconds",
        "session_max_entries",
        "max_retries",
        "parallel_search_threads",
        "embedding_parallelism",
        "max_concurrent_jobs",
        "max_concurrent_uploads_per_user",
        "max_file_mb",
        "max_image_bytes",
        "chunk_size",
        "pdf_render_dpi",
        "max_text_results",
        "max_image_results",
        "max_multimodal_results",
        "min_query_length",
        "max_query_length",
        "rate_limit_requests",
        "rate_limit_window_seconds",
    )
    @classmethod
    def must_be_positive(cls, v):
        """Ensure limits, pool sizes, and TTLs are positive. Prevents invalid config from env."""
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @field_validator("chunk_overlap", "min_chunk_chars", "retry_delay_ms")
    @classmethod
    def must_not_be_negative(cls, v):
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator("min_score")
    @classmethod
    def score_in_range(cls, v):
        if not -1.0 <= v <= 1.0:
            raise ValueError("must be between -1 and 1")
        return v

    @field_validator("vector_backend")
    @classmethod
    def known_vector_backend(cls, v):
        v = v.strip().lower()
        if v not in ("qdrant", "memory"):
            raise ValueError("must be 'qdrant' or 'memory'")
        return v

    @field_validator("cache_backend")
    @classmethod
    def known_cache_backend(cls, v):
        v = v.strip().lower()
        if v not in ("redis", "memory", "none"):
            raise ValueError("must be 'redis', 'memory' or 'none'")
        return v

    @property
    def retry_delay_seconds(self) -> float:
        return self.retry_delay_ms / 1000.0

    @property
    def max_file_bytes(self) -> int:
        return self.max_file_mb * 1024 * 1024


settings = Settings()
