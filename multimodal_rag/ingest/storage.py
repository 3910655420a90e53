"""Stable on-disk copies of uploads and extracted images, laid out per job under the configured roots."""
import logging
import os
import re
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_filename(filename: str) -> str:
    """Strip directories and unsafe characters from a client-supplied filename; never returns an empty or dot-only name.
    The extension is cleaned separately and always kept (lower-cased), since file type detection reads it from the stored copy."""
    name = os.path.basename((filename or "").replace("\\", "/")).strip()
    suffix = _UNSAFE_CHARS.sub("", Path(name).suffix.lower())
    if suffix == ".":
        suffix = ""
    stem = name[: -len(Path(name).suffix)] if suffix else name
    stem = _UNSAFE_CHARS.sub("_", stem).strip("._")
    return f"{stem or 'upload'}{suffix}"


class UploadStorage:
    """Owns the per-job upload directories and image directories.
    Why available: The pipeline reads only this copy, so the client's transient upload can go away as soon as the request returns."""

    def __init__(self, upload_root: str, image_dir: str):
        self.upload_root = Path(upload_root)
        self.image_dir = Path(image_dir)
        self.upload_root.mkdir(parents=True, exist_ok=True)
        self.image_dir.mkdir(parents=True, exist_ok=True)

    def save_upload(self, job_id: str, filename: str, content: bytes) -> Path:
        job_dir = self.upload_root / job_id
        job_dir.mkdir(parents=True, exist_ok=True)
        out_path = job_dir / sanitize_filename(filename)
        with open(out_path, "wb") as out:
            out.write(content)
        return out_path

    def discard_upload(self, job_id: str) -> None:
        """Remove a job's upload directory (used when the upload turned out to be a duplicate)."""
        shutil.rmtree(self.upload_root / job_id, ignore_errors=True)

    def image_dir_for(self, job_id: str) -> Path:
        path = self.image_dir / job_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    def save_image(self, job_id: str, image_name: str, png_bytes: bytes) -> Path:
        out_path = self.image_dir_for(job_id) / sanitize_filename(image_name)
        with open(out_path, "wb") as out:
            out.write(png_bytes)
        return out_path
