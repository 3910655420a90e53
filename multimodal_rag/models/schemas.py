import time
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Literal, Optional


class SearchResultItem(BaseModel):
    """One hit from either collection, flattened for display. Why available: Same shape for text and image hits so clients render one list type."""

    content: str
    score: float
    type: Literal["text", "image"]
    source: Optional[str] = None
    filename: Optional[str] = None
    page: Optional[int] = None
    total_pages: Optional[int] = None
    image_path: Optional[str] = None
    image_id: Optional[str] = None
    image_name: Optional[str] = None
    image_number: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    embedding_id: Optional[str] = None
    job_id: Optional[str] = None


class SearchMetrics(BaseModel):
    count: int = 0
    duration_ms: float = 0.0
    average_score: float = 0.0
    max_score: float = 0.0
    min_score: float = 0.0
    search_type: str = ""

    @classmethod
    def empty(cls, search_type: str = "") -> "SearchMetrics":
        return cls(search_type=search_type)

    @classmethod
    def from_items(cls, items: List[SearchResultItem], duration_ms: float, search_type: str) -> "SearchMetrics":
        """Count and score statistics for one modality's hits; all zero when there are none."""
        if not items:
            return cls(duration_ms=duration_ms, search_type=search_type)
        scores = [i.score for i in items]
        return cls(
            count=len(items),
            duration_ms=duration_ms,
            average_score=sum(scores) / len(scores),
            max_score=max(scores),
            min_score=min(scores),
            search_type=search_type,
        )


class CachedSearchResult(BaseModel):
    """Full answer to one multimodal query, as served and as stored in the search cache.
    Why available: One serializable payload so a cache hit returns exactly what the miss computed, with was_cached flipped."""

    query: str = ""
    text_results: List[SearchResultItem] = Field(default_factory=list)
    image_results: List[SearchResultItem] = Field(default_factory=list)
    text_metrics: SearchMetrics = Field(default_factory=lambda: SearchMetrics.empty("text"))
    image_metrics: SearchMetrics = Field(default_factory=lambda: SearchMetrics.empty("image"))
    total_duration_ms: float = 0.0
    was_cached: bool = False
    has_error: bool = False
    error_message: Optional[str] = None
    cache_key: Optional[str] = None
    timestamp: float = Field(default_factory=time.time)

    @classmethod
    def error(cls, query: str, message: str, total_duration_ms: float = 0.0) -> "CachedSearchResult":
        return cls(query=query, has_error=True, error_message=message, total_duration_ms=total_duration_ms)

    def is_empty(self) -> bool:
        return not self.text_results and not self.image_results

    def total_results(self) -> int:
        return len(self.text_results) + len(self.image_results)


class SearchRequest(BaseModel):
    """Request body for /search. Why available: Carries the query, which modalities to search, and optional per-modality limits."""

    query: str = Field(..., description="Free-text query")
    mode: Literal["all", "text", "image"] = Field("all", description="Which collections to search")
    max_text_results: Optional[int] = Field(None, description="Override text result limit (defaults to config)")
    max_image_results: Optional[int] = Field(None, description="Override image result limit (defaults to config)")


class DuplicateInfo(BaseModel):
    job_id: str
    original_filename: str
    uploaded_at: float
    fingerprint: str
    file_size: int


class UploadResponse(BaseModel):
    """Result of POST /upload: a new processing job, a reference to an existing duplicate job, or a failure message."""

    status: Literal["processing", "duplicate", "failed"]
    message: str
    filename: Optional[str] = None
    job_id: Optional[str] = None
    existing_job_id: Optional[str] = None
    duplicate: bool = False
    duplicate_info: Optional[DuplicateInfo] = None
    file_size: Optional[int] = None
    file_size_kb: Optional[float] = None


class JobStatusResponse(BaseModel):
    job_id: str
    filename: str
    status: str = Field(..., description="pending | processing | completed | failed")
    progress: int = Field(..., ge=0, le=100)
    message: str
    error: Optional[str] = None
    created_at: float
    completed_at: Optional[float] = None
    user_id: Optional[str] = None
    file_size: int = 0
    text_chunks_indexed: int = 0
    images_indexed: int = 0


class SessionEntryRequest(BaseModel):
    """Request body for appending to a conversation session: a kind discriminant plus its payload."""

    kind: str = Field(..., min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)


class SessionEntryModel(BaseModel):
    kind: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class SessionResponse(BaseModel):
    session_id: str
    entries: List[SessionEntryModel] = Field(default_factory=list)
    created_at: float
    updated_at: float
    summary: str = ""


class LimitsResponse(BaseModel):
    """Response for /config: effective ingestion and search limits. Why available: Lets clients validate uploads and queries before sending them."""

    max_file_mb: int
    max_image_bytes: int
    max_concurrent_uploads_per_user: int
    chunk_size: int
    chunk_overlap: int
    min_query_length: int
    max_query_length: int
    max_text_results: int
    max_image_results: int
    max_multimodal_results: int
    min_score: float
    cache_enabled: bool
    cache_ttl_seconds: int
    session_ttl_seconds: int
    embedding_model: str
    embedding_dimension: int
    rate_limit_requests: int
    rate_limit_window_seconds: int


class HealthResponse(BaseModel):
    status: str
    vector_store: str
    cache: str
