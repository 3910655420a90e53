import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import (
    FastAPI,
    UploadFile,
    File,
    Form,
    HTTPException,
    Request,
)
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from multimodal_rag.cache.session_cache import entry_from_request, ConversationContext, encode_entry
from multimodal_rag.core.config import settings as default_settings
from multimodal_rag.core.log_setup import configure_logging
from multimodal_rag.core.startup import validate_startup
from multimodal_rag.guardrails.errors import (
    InvalidTransitionError,
    JobNotFoundError,
    QueryValidationError,
    UploadLimitExceededError,
    UploadRejectedError,
    as_http_500,
)
from multimodal_rag.guardrails.rate_limit import SimpleRateLimiter
from multimodal_rag.ingest.jobs import Job
from multimodal_rag.models.schemas import (
    CachedSearchResult,
    HealthResponse,
    JobStatusResponse,
    LimitsResponse,
    SearchRequest,
    SessionEntryRequest,
    SessionResponse,
    UploadResponse,
)
from multimodal_rag.observability.middleware import RequestTimingMiddleware
from multimodal_rag.services import Services, build_services

logger = logging.getLogger(__name__)


def _job_status(job: Job) -> JobStatusResponse:
    return JobStatusResponse(
        job_id=job.job_id,
        filename=job.filename,
        status=job.status,
        progress=job.progress,
        message=job.message,
        error=job.error_message,
        created_at=job.created_at,
        completed_at=job.completed_at,
        user_id=job.user_id,
        file_size=job.file_size_bytes,
        text_chunks_indexed=job.text_chunks_indexed,
        images_indexed=job.images_indexed,
    )


def _session_response(context: ConversationContext) -> SessionResponse:
    return SessionResponse(
        session_id=context.session_id,
        entries=[encode_entry(e) for e in context.entries],
        created_at=context.created_at,
        updated_at=context.updated_at,
        summary=context.summary(),
    )


UPLOAD_READ_CHUNK = 1024 * 1024


async def _read_limited(file: UploadFile, max_bytes: int) -> bytes:
    """Read the upload body in 1 MB chunks, rejecting it as soon as it grows past max_bytes."""
    buf = bytearray()
    while True:
        chunk = await file.read(UPLOAD_READ_CHUNK)
        if not chunk:
            return bytes(buf)
        buf.extend(chunk)
        if len(buf) > max_bytes:
            raise UploadRejectedError(f"{file.filename} exceeds {max_bytes // (1024 * 1024)} MB limit")


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the FastAPI app. With services=None the component graph is built from environment settings and validated at startup; tests inject their own.
    Why available: One factory for production (uvicorn multimodal_rag.main:app) and for TestClient-based tests."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        built_here = app.state.services is None
        if built_here:
            configure_logging(default_settings.log_level)
            app.state.services = build_services(default_settings)
        svc: Services = app.state.services
        # raises ConfigurationError, which aborts startup
        validate_startup(svc.settings, svc.index, require_api_key=built_here)
        yield
        if built_here:
            svc.shutdown()

    app = FastAPI(title="Multimodal RAG Ingestion & Search", lifespan=lifespan)
    app.state.services = services
    app.add_middleware(RequestTimingMiddleware)

    cfg = services.settings if services is not None else default_settings
    rate_limiter = SimpleRateLimiter(max_requests=cfg.rate_limit_requests, window_seconds=cfg.rate_limit_window_seconds)

    def svc_for(request: Request) -> Services:
        return request.app.state.services

    # -------------------------
    # Root / health / config
    # -------------------------

    @app.get("/")
    def root():
        """Returns a minimal welcome payload with app name and docs URL."""
        return {"app": "Multimodal RAG", "docs": "/docs"}

    @app.get("/health", response_model=HealthResponse)
    def health(request: Request):
        """Reports overall status plus vector store and cache reachability. Degraded cache still counts as up.
        Why available: Standard endpoint for uptime checks and orchestration."""
        svc = svc_for(request)
        try:
            vector_ok = svc.index.ping()
        except Exception as e:
            logger.warning("health: vector store down: %s", e)
            vector_ok = False
        try:
            cache_ok = svc.kv_store.ping()
        except Exception as e:
            logger.warning("health: cache down: %s", e)
            cache_ok = False
        return HealthResponse(
            status="ok" if vector_ok else "degraded",
            vector_store="up" if vector_ok else "down",
            cache="up" if cache_ok else "down",
        )

    @app.get("/config", response_model=LimitsResponse)
    def config_limits(request: Request):
        """Returns the effective ingestion and search limits.
        Why available: Lets the UI and clients enforce limits before uploading or querying."""
        rate_limiter.check(request)
        s = svc_for(request).settings
        return LimitsResponse(
            max_file_mb=s.max_file_mb,
            max_image_bytes=s.max_image_bytes,
            max_concurrent_uploads_per_user=s.max_concurrent_uploads_per_user,
            chunk_size=s.chunk_size,
            chunk_overlap=s.chunk_overlap,
            min_query_length=s.min_query_length,
            max_query_length=s.max_query_length,
            max_text_results=s.max_text_results,
            max_image_results=s.max_image_results,
            max_multimodal_results=s.max_multimodal_results,
            min_score=s.min_score,
            cache_enabled=s.cache_enabled,
            cache_ttl_seconds=s.cache_ttl_seconds,
            session_ttl_seconds=s.session_ttl_seconds,
            embedding_model=s.embedding_model,
            embedding_dimension=s.embedding_dimension,
            rate_limit_requests=s.rate_limit_requests,
            rate_limit_window_seconds=s.rate_limit_window_seconds,
        )

    # -------------------------
    # Upload + jobs
    # -------------------------

    @app.post("/upload", response_model=UploadResponse)
    async def upload(
        request: Request,
        file: UploadFile = File(...),
        user_id: Optional[str] = Form(None),
        force: bool = Form(False),
    ):
        """Saves the upload, checks its fingerprint, and starts a background ingestion job. Returns the new job id, or the existing job id for a duplicate (force=true re-ingests anyway).
        Why available: Entry point for adding documents; client polls GET /upload/status/{job_id} for progress."""
        rate_limiter.check(request)
        svc = svc_for(request)
        try:
            content = await _read_limited(file, svc.settings.max_file_bytes)
            return await run_in_threadpool(svc.uploads.submit, content, file.filename or "", user_id, force)
        except UploadRejectedError as e:
            return JSONResponse(status_code=400, content=UploadResponse(status="failed", message=str(e), filename=file.filename).model_dump())
        except UploadLimitExceededError as e:
            return JSONResponse(status_code=429, content=UploadResponse(status="failed", message=str(e), filename=file.filename).model_dump())
        except Exception as e:
            raise as_http_500(e)

    @app.get("/upload/status/{job_id}", response_model=JobStatusResponse)
    def upload_status(job_id: str, request: Request):
        """Returns status, progress, and error of an ingestion job."""
        try:
            job = svc_for(request).jobs.get(job_id)
        except JobNotFoundError:
            raise HTTPException(status_code=404, detail="Job not found")
        return _job_status(job)

    @app.get("/uploads", response_model=List[JobStatusResponse])
    def list_uploads(request: Request, user_id: Optional[str] = None):
        """Lists jobs newest first, optionally only one user's."""
        rate_limiter.check(request)
        return [_job_status(j) for j in svc_for(request).jobs.list(user_id=user_id)]

    @app.delete("/upload/{job_id}", response_model=JobStatusResponse)
    def cancel_upload(job_id: str, request: Request):
        """Cancels a pending or processing job; entries it already indexed stay in place. 409 if the job already finished."""
        rate_limiter.check(request)
        try:
            job = svc_for(request).uploads.cancel(job_id)
        except JobNotFoundError:
            raise HTTPException(status_code=404, detail="Job not found")
        except InvalidTransitionError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return _job_status(job)

    # -------------------------
    # Search
    # -------------------------

    @app.post("/search", response_model=CachedSearchResult)
    def search(req: SearchRequest, request: Request):
        """Multimodal similarity search over text chunks and image descriptions; repeats are served from cache (was_cached=true).
        Why available: Retrieval surface the assistant builds its answer context from."""
        rate_limiter.check(request)
        try:
            return svc_for(request).search.search(
                req.query,
                mode=req.mode,
                max_text_results=req.max_text_results,
                max_image_results=req.max_image_results,
            )
        except QueryValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except Exception as e:
            raise as_http_500(e)

    # -------------------------
    # Sessions
    # -------------------------

    @app.get("/sessions/{session_id}", response_model=SessionResponse)
    def get_session(session_id: str, request: Request):
        context = svc_for(request).sessions.get(session_id)
        if context is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return _session_response(context)

    @app.post("/sessions/{session_id}/entries", response_model=SessionResponse)
    def append_session_entry(session_id: str, req: SessionEntryRequest, request: Request):
        """Appends a tagged entry (e.g. kind=exchange with question/answer) and resets the session TTL."""
        rate_limiter.check(request)
        entry = entry_from_request(req.kind, req.payload)
        context = svc_for(request).sessions.append(session_id, entry)
        return _session_response(context)

    @app.post("/sessions/{session_id}/refresh")
    def refresh_session(session_id: str, request: Request):
        if not svc_for(request).sessions.refresh(session_id):
            raise HTTPException(status_code=404, detail="Session not found")
        return {"session_id": session_id, "refreshed": True}

    @app.delete("/sessions/{session_id}")
    def clear_session(session_id: str, request: Request):
        svc_for(request).sessions.clear(session_id)
        return {"session_id": session_id, "cleared": True}

    return app


app = create_app()
