import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List

from langchain_text_splitters import RecursiveCharacterTextSplitter

from .extractors import TextSection

_PARAGRAPH_BREAK = re.compile(r"\n[ \t]*\n+")
_INLINE_SPACE = re.compile(r"[ \t\f\v]+")
_UNICODE_SPACES = {
    "\u00a0": " ",  # no-break space
    "\u2009": " ",  # thin space
    "\u202f": " ",  # narrow no-break space
    "\u2007": " ",  # figure space
    "\u200b": "",  # zero-width space
}

# Coarsest first: paragraph pieces are split on lines, then sentences, then words, then characters.
_SEPARATORS = ["\n", ". ", " ", ""]


@dataclass
class Chunk:
    """One text segment ready to embed, with its position metadata (page, total_pages, segment index).
    Why available: Standard unit for the text collection; metadata is stored next to the vector for result display."""

    chunk_id: str
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)


def clean_text(text: str) -> str:
    """Normalize exotic Unicode spaces and collapse runs of inline whitespace, keeping line and paragraph breaks.
    Why available: PDF text layers are full of NBSP/thin spaces that otherwise split words across embeddings."""
    for src, dst in _UNICODE_SPACES.items():
        text = text.replace(src, dst)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    lines = [_INLINE_SPACE.sub(" ", line).strip() for line in text.split("\n")]
    return "\n".join(lines).strip()


def split_paragraphs(text: str) -> List[str]:
    return [p.strip() for p in _PARAGRAPH_BREAK.split(text) if p.strip()]


def _paragraph_splitter(chunk_size: int, chunk_overlap: int) -> RecursiveCharacterTextSplitter:
    """Splitter for paragraphs longer than chunk_size; sentence separators stay on the end of the piece they close."""
    return RecursiveCharacterTextSplitter(
        chunk_size=chunk_size,
        chunk_overlap=min(chunk_overlap, chunk_size - 1),
        separators=_SEPARATORS,
        keep_separator="end",
    )


def chunk_sections_stream(
    sections: Iterable[TextSection],
    *,
    job_id: str,
    filename: str,
    chunk_size: int = 1000,
    chunk_overlap: int = 100,
    min_chunk_chars: int = 10,
    source: str = "text",
) -> Iterator[Chunk]:
    """Streaming chunker: one segment per blank-line paragraph, oversize paragraphs split recursively with overlap, short segments dropped.
    Why available: Keeps paragraph boundaries as retrieval units so a 10-paragraph note yields 10 searchable entries."""
    splitter = _paragraph_splitter(chunk_size, chunk_overlap)
    index = 0
    for section in sections:
        for paragraph in split_paragraphs(clean_text(section.text)):
            pieces = [paragraph] if len(paragraph) <= chunk_size else splitter.split_text(paragraph)
            for piece in pieces:
                if len(piece) < min_chunk_chars:
                    continue
                index += 1
                metadata: Dict[str, Any] = {
                    "source": source,
                    "filename": filename,
                    "job_id": job_id,
                    "segment_index": index,
                }
                if section.page is not None:
                    metadata["page"] = section.page
                    metadata["total_pages"] = section.total_pages
                yield Chunk(chunk_id=f"{job_id}:text:{index}", text=piece, metadata=metadata)


def chunk_sections(
    sections: List[TextSection],
    *,
    job_id: str,
    filename: str,
    chunk_size: int = 1000,
    chunk_overlap: int = 100,
    min_chunk_chars: int = 10,
    source: str = "text",
) -> List[Chunk]:
    """Non-streaming API used by the worker, which needs the chunk count up front for progress."""
    return list(
        chunk_sections_stream(
            sections,
            job_id=job_id,
            filename=filename,
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            min_chunk_chars=min_chunk_chars,
            source=source,
        )
    )
