"""Ingestion pipeline scenarios: upload -> dedup -> job -> extraction -> text and image entries."""
import threading
import time

import pytest

from multimodal_rag.guardrails.errors import InvalidTransitionError, UploadLimitExceededError, UploadRejectedError
from multimodal_rag.ingest.duplicate_check import fingerprint
from multimodal_rag.ingest.extractors import (
    FILE_TYPE_PDF,
    SOURCE_PDF_EMBEDDED,
    SOURCE_PDF_RENDERED,
    ExtractedDocument,
    RawImage,
    TextSection,
)
from multimodal_rag.ingest.jobs import COMPLETED, FAILED, InMemoryJobStore
from multimodal_rag.ingest.storage import UploadStorage
from multimodal_rag.ingest.worker import IngestionPipeline
from multimodal_rag.index.vector_store import InMemoryVectorIndex
from tests.fakes import FakeDescriber, FakeEmbedder, build_test_services, make_png, make_settings
from tests.test_extractors import build_pdf, build_pptx


def _ten_paragraphs() -> bytes:
    return "\n\n".join(
        f"Section {i}: the warehouse robot fleet handled {i * 10} orders today." for i in range(10)
    ).encode("utf-8")


def _run(svc, content, filename, **kw):
    resp = svc.uploads.submit(content, filename, **kw)
    if resp.job_id:
        svc.uploads.wait(resp.job_id, timeout=30)
    return resp


class FakePdfExtractor:
    """Three pages of text, two embedded images and one render per page."""

    def extract(self, path):
        doc = ExtractedDocument(file_type=FILE_TYPE_PDF)
        for page in (1, 2, 3):
            doc.sections.append(TextSection(text=f"Page {page} covers the annual budget review.", page=page, total_pages=3))
        for n, page in enumerate((1, 3), start=1):
            doc.images.append(
                RawImage(
                    data=make_png((40 * n, 10, 10)),
                    name=f"doc_page{page}_img1.png",
                    source=SOURCE_PDF_EMBEDDED,
                    width=32,
                    height=24,
                    page=page,
                    total_pages=3,
                    image_number=n,
                )
            )
        for page in (1, 2, 3):
            doc.images.append(
                RawImage(
                    data=make_png((10, 10, 50 * page)),
                    name=f"doc_page{page}_render.png",
                    source=SOURCE_PDF_RENDERED,
                    width=32,
                    height=24,
                    page=page,
                    total_pages=3,
                )
            )
        return doc


def test_ten_paragraph_text_yields_ten_text_entries(services):
    resp = _run(services, _ten_paragraphs(), "notes.txt", user_id="u1")
    assert resp.status == "processing"
    job = services.jobs.get(resp.job_id)
    assert job.status == COMPLETED
    assert job.progress == 100
    assert job.text_chunks_indexed == 10
    assert services.index.count(services.settings.text_collection) == 10
    assert services.index.count(services.settings.image_collection) == 0


def test_pdf_with_two_embedded_images_yields_five_image_entries(tmp_path):
    settings = make_settings(tmp_path)
    svc = build_test_services(settings, extractor=FakePdfExtractor())
    try:
        resp = _run(svc, b"%PDF-fake", "doc.pdf")
        job = svc.jobs.get(resp.job_id)
        assert job.status == COMPLETED, job.error_message
        assert svc.index.count(settings.text_collection) >= 3
        assert svc.index.count(settings.image_collection) == 5

        hits = svc.index.search(settings.image_collection, FakeEmbedder().embed(["picture diagram figure"])[0], limit=10)
        sources = sorted(h.metadata["source"] for h in hits)
        assert sources.count(SOURCE_PDF_EMBEDDED) == 2
        assert sources.count(SOURCE_PDF_RENDERED) == 3
        for h in hits:
            md = h.metadata
            assert md["type"] == "image"
            assert md["filename"] == "doc.pdf"
            assert md["total_pages"] == 3
            assert md["image_id"] and md["image_path"].endswith(".png")
        assert sorted(h.metadata["image_number"] for h in hits if "image_number" in h.metadata) == [1, 2]
    finally:
        svc.runner.shutdown(wait=True)
        svc.search.shutdown()


def test_real_pdf_end_to_end(tmp_path):
    settings = make_settings(tmp_path, pdf_render_dpi=36)
    svc = build_test_services(settings)
    try:
        src = tmp_path / "source.pdf"
        build_pdf(src)
        resp = _run(svc, src.read_bytes(), "report.pdf")
        job = svc.jobs.get(resp.job_id)
        assert job.status == COMPLETED, job.error_message
        assert svc.index.count(settings.text_collection) >= 3
        assert svc.index.count(settings.image_collection) == 5
    finally:
        svc.runner.shutdown(wait=True)
        svc.search.shutdown()


def test_duplicate_under_different_filename(services):
    first = _run(services, _ten_paragraphs(), "notes.txt")
    second = services.uploads.submit(_ten_paragraphs(), "copy-of-notes.md")
    assert second.status == "duplicate"
    assert second.duplicate is True
    assert second.existing_job_id == first.job_id
    assert second.duplicate_info.original_filename == "notes.txt"
    assert second.job_id is None
    assert len(services.jobs.list()) == 1
    assert services.index.count(services.settings.text_collection) == 10


def test_force_reupload_creates_new_job(services):
    first = _run(services, _ten_paragraphs(), "notes.txt")
    again = _run(services, _ten_paragraphs(), "notes.txt", force=True)
    assert again.status == "processing"
    assert again.job_id != first.job_id
    assert services.fingerprints.get(fingerprint(_ten_paragraphs())).job_id == again.job_id


def test_embedding_failure_fails_job_and_keeps_earlier_chunks(tmp_path):
    settings = make_settings(tmp_path, embedding_parallelism=1)
    embedder = FakeEmbedder(fail_when=lambda t: t.startswith("Section 3:"))
    svc = build_test_services(settings, embedder=embedder)
    try:
        resp = _run(svc, _ten_paragraphs(), "notes.txt")
        job = svc.jobs.get(resp.job_id)
        assert job.status == FAILED
        assert "embedding stage failed" in job.error_message
        assert job.completed_at >= job.created_at
        assert job.progress < 100
        assert svc.index.count(settings.text_collection) == 3
    finally:
        svc.runner.shutdown(wait=True)
        svc.search.shutdown()


def test_image_description_failure_names_stage(tmp_path):
    class BrokenDescriber:
        def describe(self, png_bytes):
            raise RuntimeError("vision quota exceeded")

    settings = make_settings(tmp_path)
    svc = build_test_services(settings, describer=BrokenDescriber())
    try:
        resp = _run(svc, make_png(), "photo.png")
        job = svc.jobs.get(resp.job_id)
        assert job.status == FAILED
        assert job.error_message.startswith("image description stage failed")
    finally:
        svc.runner.shutdown(wait=True)
        svc.search.shutdown()


def test_unreadable_file_fails_extraction(services):
    resp = _run(services, b"\xff\xfe\x00\x81" * 64, "blob.bin")
    job = services.jobs.get(resp.job_id)
    assert job.status == FAILED
    assert job.error_message.startswith("extraction stage failed")
    assert job.message.startswith("Failed: extraction stage failed")


def test_empty_and_oversize_uploads_are_rejected(tmp_path):
    settings = make_settings(tmp_path, max_file_mb=1)
    svc = build_test_services(settings)
    try:
        with pytest.raises(UploadRejectedError):
            svc.uploads.submit(b"", "empty.txt")
        with pytest.raises(UploadRejectedError):
            svc.uploads.submit(b"x" * (1024 * 1024 + 1), "big.txt")
        assert svc.jobs.list() == []
    finally:
        svc.runner.shutdown(wait=True)
        svc.search.shutdown()


def test_per_user_upload_limit(tmp_path):
    settings = make_settings(tmp_path, max_concurrent_uploads_per_user=1)
    gate = threading.Event()

    class SlowDescriber(FakeDescriber):
        def describe(self, png_bytes):
            gate.wait(10)
            return super().describe(png_bytes)

    svc = build_test_services(settings, describer=SlowDescriber())
    try:
        first = svc.uploads.submit(make_png((1, 2, 3)), "a.png", user_id="alice")
        with pytest.raises(UploadLimitExceededError):
            svc.uploads.submit(make_png((4, 5, 6)), "b.png", user_id="alice")
        other = svc.uploads.submit(make_png((7, 8, 9)), "c.png", user_id="bob")
        assert other.status == "processing"
        gate.set()
        svc.uploads.wait(first.job_id, timeout=30)
        svc.uploads.wait(other.job_id, timeout=30)
        again = _run(svc, make_png((4, 5, 6)), "b.png", user_id="alice")
        assert again.status == "processing"
    finally:
        gate.set()
        svc.runner.shutdown(wait=True)
        svc.search.shutdown()


def test_cancel_stops_job_and_keeps_written_entries(tmp_path):
    settings = make_settings(tmp_path)
    started = threading.Event()
    release = threading.Event()

    class BlockingEmbedder(FakeEmbedder):
        def embed(self, texts):
            if texts[0].startswith("Section 2:"):
                # let the two earlier chunks land before signalling
                deadline = time.time() + 10
                while svc.index.count(settings.text_collection) < 2 and time.time() < deadline:
                    time.sleep(0.01)
                started.set()
                release.wait(10)
            return super().embed(texts)

    svc = build_test_services(settings, embedder=BlockingEmbedder())
    try:
        resp = svc.uploads.submit(_ten_paragraphs(), "notes.txt")
        assert started.wait(10)
        assert svc.jobs.cancel(resp.job_id)
        release.set()
        svc.uploads.wait(resp.job_id, timeout=30)
        job = svc.jobs.get(resp.job_id)
        assert job.status == FAILED
        assert job.error_message == "Cancelled by user"
        assert svc.index.count(settings.text_collection) == 2
    finally:
        release.set()
        svc.runner.shutdown(wait=True)
        svc.search.shutdown()


class RecordingJobStore(InMemoryJobStore):
    def __init__(self):
        super().__init__()
        self.seen = []

    def advance(self, job_id, progress):
        changed = super().advance(job_id, progress)
        self.seen.append(self.get(job_id).progress)
        return changed


def test_progress_observations_are_monotonic(tmp_path):
    settings = make_settings(tmp_path, embedding_parallelism=3)
    jobs = RecordingJobStore()
    index = InMemoryVectorIndex(settings.embedding_dimension)
    index.ensure_collection(settings.text_collection)
    index.ensure_collection(settings.image_collection)
    storage = UploadStorage(settings.upload_root, settings.image_dir)
    pipeline = IngestionPipeline(
        jobs=jobs,
        index=index,
        embedder=FakeEmbedder(),
        describer=FakeDescriber(),
        extractor=FakePdfExtractor(),
        storage=storage,
        settings=settings,
    )
    job = jobs.create("doc.pdf", 10)
    path = storage.save_upload(job.job_id, "doc.pdf", b"%PDF-fake")
    pipeline.run(job.job_id, path, "doc.pdf")

    assert jobs.get(job.job_id).status == COMPLETED
    assert jobs.seen == sorted(jobs.seen)
    assert jobs.seen[0] == 5
    assert max(jobs.seen) <= 99


def test_non_ascii_filenames_keep_their_format(tmp_path):
    settings = make_settings(tmp_path, pdf_render_dpi=36)
    svc = build_test_services(settings)
    try:
        src = tmp_path / "source.pdf"
        build_pdf(src, pages_with_images=(), n_pages=1)
        for content, filename in ((make_png((5, 50, 5)), "图片.png"), (src.read_bytes(), "報告.pdf")):
            resp = _run(svc, content, filename)
            job = svc.jobs.get(resp.job_id)
            assert job.status == COMPLETED, job.error_message
            assert job.filename == filename
        assert svc.index.count(settings.image_collection) == 2
        assert svc.index.count(settings.text_collection) >= 1
    finally:
        svc.runner.shutdown(wait=True)
        svc.search.shutdown()


def test_pptx_upload_indexes_slide_text(services, tmp_path):
    deck = tmp_path / "deck.pptx"
    build_pptx(deck, [["Roadmap", "Ship the billing revamp."], ["Risks", "Hiring is behind plan."]])
    resp = _run(services, deck.read_bytes(), "slides.pptx")
    job = services.jobs.get(resp.job_id)
    assert job.status == COMPLETED, job.error_message
    assert job.text_chunks_indexed == 2
    hits = services.index.search(
        services.settings.text_collection, FakeEmbedder().embed(["hiring behind plan"])[0], limit=5
    )
    assert sorted(h.metadata["page"] for h in hits) == [1, 2]


def test_concurrent_duplicates_always_reference_a_live_job(tmp_path, monkeypatch):
    svc = build_test_services(make_settings(tmp_path, max_concurrent_uploads_per_user=50))
    original_create = svc.jobs.create

    def slow_create(*args, **kwargs):
        time.sleep(0.3)
        return original_create(*args, **kwargs)

    monkeypatch.setattr(svc.jobs, "create", slow_create)
    n = 6
    barrier = threading.Barrier(n)
    results = []
    lookups = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        resp = svc.uploads.submit(_ten_paragraphs(), "notes.txt")
        job = svc.jobs.get(resp.existing_job_id or resp.job_id)
        with lock:
            results.append(resp)
            lookups.append(job.job_id)

    threads = [threading.Thread(target=worker) for _ in range(n)]
    try:
        for t in threads:
            t.start()
        for t in threads:
            t.join(30)
        processing = [r for r in results if r.status == "processing"]
        duplicates = [r for r in results if r.status == "duplicate"]
        assert len(processing) == 1
        assert len(duplicates) == n - 1
        assert {r.existing_job_id for r in duplicates} == {processing[0].job_id}
        assert set(lookups) == {processing[0].job_id}
        assert len(svc.jobs.list()) == 1
    finally:
        svc.runner.shutdown(wait=True)
        svc.search.shutdown()


def test_failed_hand_off_fails_job_and_releases_fingerprint(tmp_path):
    settings = make_settings(tmp_path, max_concurrent_uploads_per_user=1)
    svc = build_test_services(settings)
    svc.runner.shutdown(wait=True)
    try:
        with pytest.raises(RuntimeError):
            svc.uploads.submit(_ten_paragraphs(), "notes.txt", user_id="alice")
        [job] = svc.jobs.list()
        assert job.status == FAILED
        assert job.error_message.startswith("could not start ingestion")
        assert svc.fingerprints.get(fingerprint(_ten_paragraphs())) is None
        # the per-user slot came back, so the same user is not reported as over the limit
        with pytest.raises(RuntimeError):
            svc.uploads.submit(_ten_paragraphs(), "notes.txt", user_id="alice")
    finally:
        svc.search.shutdown()


def test_finished_jobs_are_not_tracked(services):
    resp = _run(services, _ten_paragraphs(), "notes.txt")
    deadline = time.time() + 5
    while resp.job_id in services.uploads._futures and time.time() < deadline:
        time.sleep(0.01)
    assert resp.job_id not in services.uploads._futures
    # waiting on an already finished job returns at once
    services.uploads.wait(resp.job_id, timeout=0.01)


def test_cancel_after_completion_is_rejected(services):
    resp = _run(services, _ten_paragraphs(), "notes.txt")
    with pytest.raises(InvalidTransitionError, match="Job already completed"):
        services.uploads.cancel(resp.job_id)
    assert services.jobs.get(resp.job_id).status == COMPLETED
