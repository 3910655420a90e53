"""Job registry for async ingestion: one Job per accepted upload, moving pending -> processing -> completed | failed."""
import logging
import threading
import time
import uuid
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Protocol

from multimodal_rag.guardrails.errors import JobNotFoundError

logger = logging.getLogger(__name__)

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
TERMINAL_STATUSES = (COMPLETED, FAILED)

CANCELLED_MESSAGE = "Cancelled by user"


@dataclass(frozen=True)
class Job:
    """Snapshot of one ingestion job: id, file info, status, progress, error, and timestamps.
    Why available: Status endpoints and the UI poll these snapshots; the registry swaps in a new snapshot on every transition so readers never see a half-applied update."""

    job_id: str
    filename: str
    file_size_bytes: int
    created_at: float
    user_id: Optional[str] = None
    status: str = PENDING  # pending | processing | completed | failed
    progress: int = 0
    error_message: Optional[str] = None
    completed_at: Optional[float] = None
    text_chunks_indexed: int = 0
    images_indexed: int = 0
    cancel_requested: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def message(self) -> str:
        """Human-readable status line derived from status, progress and error only."""
        if self.status == PENDING:
            return "Upload pending"
        if self.status == PROCESSING:
            return f"Processing ({self.progress}%)"
        if self.status == COMPLETED:
            return "Upload completed"
        return f"Failed: {self.error_message or 'Unknown error'}"


class JobStore(Protocol):
    """Registry interface so the in-memory map can later be swapped for a persistent store."""

    def create(self, filename: str, file_size_bytes: int, user_id: Optional[str] = None, job_id: Optional[str] = None) -> Job: ...
    def get(self, job_id: str) -> Job: ...
    def list(self, user_id: Optional[str] = None) -> List[Job]: ...
    def mark_processing(self, job_id: str) -> bool: ...
    def advance(self, job_id: str, progress: int) -> bool: ...
    def mark_completed(self, job_id: str) -> bool: ...
    def mark_failed(self, job_id: str, reason: str) -> bool: ...
    def cancel(self, job_id: str) -> bool: ...
    def is_cancelled(self, job_id: str) -> bool: ...
    def record_counts(self, job_id: str, text_chunks: int, images: int) -> None: ...


class InMemoryJobStore:
    """Process-wide job registry: dict of immutable Job snapshots plus one lock per job.
    Why available: Writers (one worker per job, plus cancel) serialize on the job's own lock; readers take the current snapshot without locking."""

    def __init__(self, clock=time.time):
        self._jobs: Dict[str, Job] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._create_lock = threading.Lock()
        self._clock = clock

    def create(
        self,
        filename: str,
        file_size_bytes: int,
        user_id: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> Job:
        job_id = job_id or uuid.uuid4().hex
        job = Job(
            job_id=job_id,
            filename=filename,
            file_size_bytes=file_size_bytes,
            user_id=user_id,
            created_at=self._clock(),
        )
        with self._create_lock:
            if job_id in self._jobs:
                raise ValueError(f"Job already exists: {job_id}")
            self._locks[job_id] = threading.Lock()
            self._jobs[job_id] = job
        logger.info("job_created", extra={"job_id": job_id, "job_filename": filename, "size": file_size_bytes})
        return job

    def get(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list(self, user_id: Optional[str] = None) -> List[Job]:
        """All jobs (optionally one user's), newest first."""
        jobs = list(self._jobs.values())
        if user_id is not None:
            jobs = [j for j in jobs if j.user_id == user_id]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    def mark_processing(self, job_id: str) -> bool:
        with self._lock_for(job_id):
            job = self.get(job_id)
            if job.status != PENDING:
                return self._reject(job, "mark_processing")
            self._jobs[job_id] = replace(job, status=PROCESSING)
            return True

    def advance(self, job_id: str, progress: int) -> bool:
        """Raise progress of a processing job; lower values are ignored and 100 is reserved for completion."""
        with self._lock_for(job_id):
            job = self.get(job_id)
            if job.status != PROCESSING:
                return self._reject(job, "advance")
            progress = min(int(progress), 99)
            if progress <= job.progress:
                return False
            self._jobs[job_id] = replace(job, progress=progress)
            return True

    def mark_completed(self, job_id: str) -> bool:
        with self._lock_for(job_id):
            job = self.get(job_id)
            if job.status != PROCESSING:
                return self._reject(job, "mark_completed")
            self._jobs[job_id] = replace(job, status=COMPLETED, progress=100, completed_at=self._clock())
        logger.info("job_completed", extra={"job_id": job_id})
        return True

    def mark_failed(self, job_id: str, reason: str) -> bool:
        with self._lock_for(job_id):
            job = self.get(job_id)
            if job.is_terminal:
                return self._reject(job, "mark_failed")
            self._jobs[job_id] = replace(
                job,
                status=FAILED,
                error_message=reason or "Unknown error",
                completed_at=self._clock(),
            )
        logger.warning("job_failed", extra={"job_id": job_id, "reason": reason})
        return True

    def cancel(self, job_id: str) -> bool:
        """Fail a non-terminal job with the cancellation message and flag it so its worker stops at the next check."""
        with self._lock_for(job_id):
            job = self.get(job_id)
            if job.is_terminal:
                return self._reject(job, "cancel")
            self._jobs[job_id] = replace(
                job,
                status=FAILED,
                error_message=CANCELLED_MESSAGE,
                completed_at=self._clock(),
                cancel_requested=True,
            )
        logger.info("job_cancelled", extra={"job_id": job_id})
        return True

    def is_cancelled(self, job_id: str) -> bool:
        return self.get(job_id).cancel_requested

    def record_counts(self, job_id: str, text_chunks: int, images: int) -> None:
        with self._lock_for(job_id):
            job = self.get(job_id)
            self._jobs[job_id] = replace(job, text_chunks_indexed=text_chunks, images_indexed=images)

    def _lock_for(self, job_id: str) -> threading.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            raise JobNotFoundError(job_id)
        return lock

    @staticmethod
    def _reject(job: Job, op: str) -> bool:
        logger.warning(
            "illegal_job_transition",
            extra={"job_id": job.job_id, "op": op, "status": job.status},
        )
        return False
