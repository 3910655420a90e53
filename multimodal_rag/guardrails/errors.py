import logging
from typing import Optional

from fastapi import HTTPException

logger = logging.getLogger(__name__)


class RagError(Exception):
    """Base class for errors raised by the ingestion and search engine."""


class ConfigurationError(RagError):
    """Startup configuration is unusable (missing credential, unreachable store, bad dimension). Fatal at startup."""


class QueryValidationError(RagError):
    """Search request rejected before touching cache or index (query length or limits out of range)."""


class IngestionError(RagError):
    """A pipeline stage failed; terminates only the job that raised it.
    Why available: Carries the stage name so the job's failure message says where it broke."""

    def __init__(self, stage: str, detail: str):
        super().__init__(f"{stage} stage failed: {detail}")
        self.stage = stage
        self.detail = detail


class JobCancelledError(RagError):
    """Internal signal raised inside a worker when its job was cancelled."""


class JobNotFoundError(RagError, KeyError):
    def __init__(self, job_id: str):
        super().__init__(job_id)
        self.job_id = job_id

    def __str__(self) -> str:
        return f"Job not found: {self.job_id}"


class InvalidTransitionError(RagError):
    """Requested job transition is not allowed from the job's current status."""


class UploadRejectedError(RagError):
    """Upload is invalid (empty, too large, missing filename)."""


class UploadLimitExceededError(RagError):
    """User already has the maximum number of uploads in flight."""

    def __init__(self, user_id: Optional[str], limit: int):
        super().__init__(f"Too many concurrent uploads for user {user_id or 'anonymous'} (limit {limit})")
        self.user_id = user_id
        self.limit = limit


def as_http_500(e: Exception) -> HTTPException:
    """Log exception and return a generic 500 HTTPException (no internal details leaked).
    Why available: Centralized error handling so API never leaks stack traces or internal state to clients."""
    logger.error("unhandled_error", exc_info=e)
    return HTTPException(status_code=500, detail="Internal server error")
