import logging
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from multimodal_rag.core.config import Settings
from multimodal_rag.guardrails.errors import IngestionError, JobCancelledError
from multimodal_rag.index.vector_store import VectorIndex
from multimodal_rag.ingest.chunker import Chunk, chunk_sections
from multimodal_rag.ingest.embeddings import Embedder
from multimodal_rag.ingest.extractors import DocumentExtractor, ExtractedDocument, RawImage
from multimodal_rag.ingest.jobs import JobStore
from multimodal_rag.ingest.storage import UploadStorage
from multimodal_rag.ingest.vision import ImageDescriber

logger = logging.getLogger(__name__)

STAGE_EXTRACTION = "extraction"
STAGE_EMBEDDING = "embedding"
STAGE_INDEXING = "indexing"
STAGE_IMAGE_DESCRIPTION = "image description"

EXTRACTED_PROGRESS = 5
UNITS_PROGRESS_SPAN = 94


class IngestionPipeline:
    """Runs one job end to end: extract -> chunk -> embed + index text -> describe + embed + index images -> complete.
    Why available: The worker entry point for every accepted upload; reports progress and the failing stage through the job registry."""

    def __init__(
        self,
        *,
        jobs: JobStore,
        index: VectorIndex,
        embedder: Embedder,
        describer: ImageDescriber,
        extractor: DocumentExtractor,
        storage: UploadStorage,
        settings: Settings,
    ):
        self.jobs = jobs
        self.index = index
        self.embedder = embedder
        self.describer = describer
        self.extractor = extractor
        self.storage = storage
        self.settings = settings

    def run(self, job_id: str, path: Path, filename: str) -> None:
        """Process the persisted upload at path for job_id. Never raises: every failure ends as a failed job."""
        if not self.jobs.mark_processing(job_id):
            logger.info("job not pending, skipping", extra={"job_id": job_id})
            return
        try:
            doc = self._extract(path)
            self._check_cancelled(job_id)
            self.jobs.advance(job_id, EXTRACTED_PROGRESS)

            chunks = chunk_sections(
                doc.sections,
                job_id=job_id,
                filename=filename,
                chunk_size=self.settings.chunk_size,
                chunk_overlap=self.settings.chunk_overlap,
                min_chunk_chars=self.settings.min_chunk_chars,
                source=doc.file_type,
            )
            total_units = len(chunks) + len(doc.images)
            if total_units == 0:
                raise IngestionError(STAGE_EXTRACTION, "no indexable content")
            logger.info(
                "job_extracted",
                extra={"job_id": job_id, "chunks": len(chunks), "images": len(doc.images)},
            )

            tracker = _ProgressTracker(self.jobs, job_id, total_units)
            text_count = self._index_text(job_id, chunks, tracker)
            image_count = self._index_images(job_id, filename, doc, tracker)

            self.jobs.record_counts(job_id, text_count, image_count)
            self.jobs.mark_completed(job_id)
        except JobCancelledError:
            logger.info("job stopped after cancellation", extra={"job_id": job_id})
        except IngestionError as e:
            self.jobs.mark_failed(job_id, str(e))
        except Exception as e:
            logger.exception("unexpected ingestion error", extra={"job_id": job_id})
            self.jobs.mark_failed(job_id, f"ingestion failed: {e}")

    def _extract(self, path: Path) -> ExtractedDocument:
        try:
            return self.extractor.extract(path)
        except IngestionError:
            raise
        except Exception as e:
            raise IngestionError(STAGE_EXTRACTION, str(e)) from e

    def _check_cancelled(self, job_id: str) -> None:
        if self.jobs.is_cancelled(job_id):
            raise JobCancelledError(job_id)

    def _index_text(self, job_id: str, chunks: List[Chunk], tracker: "_ProgressTracker") -> int:
        def embed(chunk: Chunk) -> List[float]:
            try:
                return self.embedder.embed([chunk.text])[0]
            except Exception as e:
                raise IngestionError(STAGE_EMBEDDING, f"chunk {chunk.metadata.get('segment_index')}: {e}") from e

        def write(chunk: Chunk, vector: List[float]) -> None:
            metadata = {**chunk.metadata, "type": "text"}
            self.index.upsert(self.settings.text_collection, chunk.chunk_id, vector, chunk.text, metadata)

        return self._fan_out(job_id, chunks, embed, write, tracker)

    def _index_images(self, job_id: str, filename: str, doc: ExtractedDocument, tracker: "_ProgressTracker") -> int:
        def describe_and_embed(image: RawImage) -> Tuple[str, List[float]]:
            try:
                description = self.describer.describe(image.data)
            except Exception as e:
                raise IngestionError(STAGE_IMAGE_DESCRIPTION, f"{image.name}: {e}") from e
            try:
                vector = self.embedder.embed([description])[0]
            except Exception as e:
                raise IngestionError(STAGE_EMBEDDING, f"{image.name}: {e}") from e
            return description, vector

        def write(image: RawImage, result: Tuple[str, List[float]]) -> None:
            description, vector = result
            saved = self.storage.save_image(job_id, image.name, image.data)
            metadata = _image_metadata(job_id, filename, image, str(saved))
            embedding_id = f"{job_id}:image:{metadata['image_id']}"
            self.index.upsert(self.settings.image_collection, embedding_id, vector, description, metadata)

        return self._fan_out(job_id, doc.images, describe_and_embed, write, tracker)

    def _fan_out(
        self,
        job_id: str,
        units: List[Any],
        compute: Callable[[Any], Any],
        write: Callable[[Any, Any], None],
        tracker: "_ProgressTracker",
    ) -> int:
        """Compute units concurrently (bounded by embedding_parallelism) and write each one, in order, as soon as it is ready.
        Stops at the first failure or cancellation; units already written stay written."""
        if not units:
            return 0
        written = 0
        with ThreadPoolExecutor(
            max_workers=self.settings.embedding_parallelism,
            thread_name_prefix=f"embed-{job_id[:8]}",
        ) as pool:
            futures = [pool.submit(compute, u) for u in units]
            try:
                for unit, fut in zip(units, futures):
                    result = fut.result()
                    self._check_cancelled(job_id)
                    try:
                        write(unit, result)
                    except Exception as e:
                        raise IngestionError(STAGE_INDEXING, str(e)) from e
                    written += 1
                    tracker.unit_done()
            except BaseException:
                for f in futures:
                    f.cancel()
                raise
        return written


class _ProgressTracker:
    """Maps completed units onto 5..99% of the job's progress."""

    def __init__(self, jobs: JobStore, job_id: str, total_units: int):
        self.jobs = jobs
        self.job_id = job_id
        self.total_units = max(1, total_units)
        self.done = 0

    def unit_done(self) -> None:
        self.done += 1
        self.jobs.advance(self.job_id, EXTRACTED_PROGRESS + (UNITS_PROGRESS_SPAN * self.done) // self.total_units)


def _image_metadata(job_id: str, filename: str, image: RawImage, saved_path: str) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {
        "type": "image",
        "source": image.source,
        "filename": filename,
        "job_id": job_id,
        "image_id": str(uuid.uuid4()),
        "image_name": image.name,
        "image_path": saved_path,
        "width": image.width,
        "height": image.height,
    }
    if image.page is not None:
        metadata["page"] = image.page
        metadata["total_pages"] = image.total_pages
    if image.image_number is not None:
        metadata["image_number"] = image.image_number
    return metadata


class JobRunner:
    """Owns the bounded worker pool that runs ingestion jobs off the request thread.
    Why available: Upload returns as soon as the job is registered; at most max_concurrent_jobs pipelines run at once."""

    def __init__(self, pipeline: IngestionPipeline, max_workers: int = 4):
        self.pipeline = pipeline
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ingest")

    def submit(
        self,
        job_id: str,
        path: Path,
        filename: str,
        on_done: Optional[Callable[[], None]] = None,
    ) -> Future:
        def _runner():
            """Worker task: run the pipeline, then release whatever the caller reserved."""
            try:
                self.pipeline.run(job_id, path, filename)
            finally:
                if on_done is not None:
                    on_done()

        return self._pool.submit(_runner)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
