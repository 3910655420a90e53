import logging
import threading
import uuid
from concurrent.futures import Future
from typing import Dict, Optional

from multimodal_rag.guardrails.errors import InvalidTransitionError, UploadLimitExceededError, UploadRejectedError
from multimodal_rag.guardrails.rate_limit import UploadConcurrencyLimiter
from multimodal_rag.ingest.duplicate_check import Duplicate, FingerprintRegistry, fingerprint_file
from multimodal_rag.ingest.jobs import Job, JobStore
from multimodal_rag.ingest.storage import UploadStorage
from multimodal_rag.ingest.worker import JobRunner
from multimodal_rag.models.schemas import DuplicateInfo, UploadResponse

logger = logging.getLogger(__name__)


class UploadService:
    """Front door for uploads: validate, persist a stable copy, fingerprint, dedup, register the job and hand it to the worker pool.
    Why available: Keeps the HTTP handler thin; the same flow serves the API and tests."""

    def __init__(
        self,
        *,
        jobs: JobStore,
        fingerprints: FingerprintRegistry,
        storage: UploadStorage,
        runner: JobRunner,
        limiter: UploadConcurrencyLimiter,
        max_file_bytes: int,
    ):
        self.jobs = jobs
        self.fingerprints = fingerprints
        self.storage = storage
        self.runner = runner
        self.limiter = limiter
        self.max_file_bytes = max_file_bytes
        self._futures: Dict[str, Future] = {}
        self._futures_lock = threading.Lock()

    def submit(
        self,
        content: bytes,
        filename: str,
        user_id: Optional[str] = None,
        force: bool = False,
    ) -> UploadResponse:
        """Accept one upload. Returns a processing response with the new job id, or a duplicate response pointing at the existing job.
        force=True skips dedup and re-points the fingerprint at the new job. Raises UploadRejectedError / UploadLimitExceededError before any job exists."""
        filename = (filename or "").strip()
        if not filename:
            raise UploadRejectedError("Missing filename")
        if not content:
            raise UploadRejectedError(f"{filename} is empty")
        if len(content) > self.max_file_bytes:
            raise UploadRejectedError(f"{filename} exceeds {self.max_file_bytes // (1024 * 1024)} MB limit")

        if not self.limiter.try_acquire(user_id):
            raise UploadLimitExceededError(user_id, self.limiter.max_per_user)

        job_id = uuid.uuid4().hex
        handed_off = False
        try:
            path = self.storage.save_upload(job_id, filename, content)
            fp = fingerprint_file(path)
            size = len(content)

            def create_job(record) -> None:
                self.jobs.create(filename, size, user_id=user_id, job_id=job_id)

            if force:
                self.fingerprints.replace(fp, job_id, filename, size, on_register=create_job)
            else:
                outcome = self.fingerprints.lookup_or_register(fp, job_id, filename, size, on_register=create_job)
                if isinstance(outcome, Duplicate):
                    self.storage.discard_upload(job_id)
                    return _duplicate_response(filename, size, outcome)

            try:
                self._track(job_id, self.runner.submit(
                    job_id, path, filename, on_done=lambda: self.limiter.release(user_id)
                ))
            except Exception as e:
                # a job that never reaches the pool is failed and its fingerprint released
                self.fingerprints.forget_job(job_id)
                self.jobs.mark_failed(job_id, f"could not start ingestion: {e}")
                self.storage.discard_upload(job_id)
                raise
            handed_off = True
        finally:
            if not handed_off:
                self.limiter.release(user_id)

        logger.info("upload_accepted", extra={"job_id": job_id, "user_id": user_id, "size": size, "force": force})
        return UploadResponse(
            status="processing",
            message="Upload accepted, processing started",
            filename=filename,
            job_id=job_id,
            file_size=size,
            file_size_kb=round(size / 1024, 2),
        )

    def cancel(self, job_id: str) -> Job:
        """Request cancellation of a pending or processing job and return its snapshot.
        Raises JobNotFoundError for an unknown id and InvalidTransitionError when the job has already finished."""
        if not self.jobs.cancel(job_id):
            job = self.jobs.get(job_id)
            raise InvalidTransitionError(f"Job already {job.status}")
        return self.jobs.get(job_id)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> None:
        """Block until the job's worker task has finished; returns at once for jobs that are already done (tests and graceful shutdown)."""
        with self._futures_lock:
            fut = self._futures.get(job_id)
        if fut is not None:
            fut.result(timeout=timeout)

    def _track(self, job_id: str, fut: Future) -> None:
        """Keep the worker future only while it runs."""
        with self._futures_lock:
            self._futures[job_id] = fut

        def _untrack(_):
            with self._futures_lock:
                if self._futures.get(job_id) is fut:
                    del self._futures[job_id]

        fut.add_done_callback(_untrack)


def _duplicate_response(filename: str, size: int, outcome: Duplicate) -> UploadResponse:
    record = outcome.record
    return UploadResponse(
        status="duplicate",
        message=f"File already uploaded as '{record.original_filename}'",
        filename=filename,
        existing_job_id=record.job_id,
        duplicate=True,
        duplicate_info=DuplicateInfo(
            job_id=record.job_id,
            original_filename=record.original_filename,
            uploaded_at=record.uploaded_at,
            fingerprint=record.fingerprint,
            file_size=record.file_size,
        ),
        file_size=size,
        file_size_kb=round(size / 1024, 2),
    )
