"""
Duplicate upload check by content fingerprint.
The first upload of some bytes registers its job; later uploads of the same bytes, under any filename, get that job back instead of being re-ingested.
"""
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from multimodal_rag.utils.hashing import sha256_file, sha256_hex

logger = logging.getLogger(__name__)

DEFAULT_STRIPES = 64


def fingerprint(content: bytes) -> str:
    """SHA-256 hex of the uploaded bytes. Filename and timestamps play no part.
    Why available: Identity key for dedup; two byte-identical uploads always collide."""
    return sha256_hex(content)


def fingerprint_file(path: Union[str, Path]) -> str:
    """Streamed SHA-256 hex of the persisted upload copy."""
    return sha256_file(path)


@dataclass(frozen=True)
class FingerprintRecord:
    fingerprint: str
    job_id: str
    original_filename: str
    uploaded_at: float
    file_size: int


@dataclass(frozen=True)
class Fresh:
    """lookup_or_register outcome: fingerprint was unseen and is now registered to the caller's job."""
    record: FingerprintRecord


@dataclass(frozen=True)
class Duplicate:
    """lookup_or_register outcome: fingerprint already belongs to an earlier job."""
    record: FingerprintRecord


class FingerprintRegistry:
    """Fingerprint -> first-job table with an atomic check-and-register.
    Why available: Concurrent uploads of the same bytes must produce exactly one job; lock striping keyed by fingerprint keeps unrelated uploads from contending."""

    def __init__(self, stripes: int = DEFAULT_STRIPES, clock=time.time):
        self._records: Dict[str, FingerprintRecord] = {}
        self._stripes: List[threading.Lock] = [threading.Lock() for _ in range(max(1, stripes))]
        self._clock = clock

    def _stripe(self, fp: str) -> threading.Lock:
        return self._stripes[int(fp[:8], 16) % len(self._stripes)]

    def lookup_or_register(
        self,
        fp: str,
        job_id: str,
        filename: str,
        size: int,
        on_register: Optional[Callable[[FingerprintRecord], None]] = None,
    ):
        """Return Fresh(record) and register it if fp is unseen, else Duplicate(existing record). Atomic per fingerprint.
        on_register runs under the fingerprint's lock before the record becomes visible, so a concurrent duplicate never sees a job that does not exist yet; if it raises, nothing is registered."""
        with self._stripe(fp):
            existing = self._records.get(fp)
            if existing is not None:
                logger.info("duplicate_upload", extra={"fingerprint": fp, "existing_job_id": existing.job_id})
                return Duplicate(existing)
            record = FingerprintRecord(
                fingerprint=fp,
                job_id=job_id,
                original_filename=filename,
                uploaded_at=self._clock(),
                file_size=size,
            )
            if on_register is not None:
                on_register(record)
            self._records[fp] = record
            return Fresh(record)

    def replace(
        self,
        fp: str,
        job_id: str,
        filename: str,
        size: int,
        on_register: Optional[Callable[[FingerprintRecord], None]] = None,
    ) -> FingerprintRecord:
        """Point fp at a new job unconditionally. Used by forced re-uploads that bypass dedup; on_register behaves as in lookup_or_register."""
        record = FingerprintRecord(
            fingerprint=fp,
            job_id=job_id,
            original_filename=filename,
            uploaded_at=self._clock(),
            file_size=size,
        )
        with self._stripe(fp):
            if on_register is not None:
                on_register(record)
            previous = self._records.get(fp)
            self._records[fp] = record
        if previous is not None:
            logger.info("fingerprint_replaced", extra={"fingerprint": fp, "previous_job_id": previous.job_id, "job_id": job_id})
        return record

    def get(self, fp: str) -> Optional[FingerprintRecord]:
        return self._records.get(fp)

    def forget_job(self, job_id: str) -> int:
        """Drop every fingerprint registered to job_id; returns how many were removed."""
        removed = 0
        for fp, record in list(self._records.items()):
            if record.job_id != job_id:
                continue
            with self._stripe(fp):
                if self._records.get(fp) is record:
                    del self._records[fp]
                    removed += 1
        return removed

    def __len__(self) -> int:
        return len(self._records)
