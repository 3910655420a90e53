"""Shared OpenAI client for embeddings and image description (api_key and timeout from config)."""
import threading
from typing import Optional

from multimodal_rag.core.config import settings
from openai import OpenAI

_openai_client: Optional[OpenAI] = None
_client_lock = threading.Lock()


def get_openai_client() -> OpenAI:
    """Return a singleton OpenAI client configured from settings, created once even when ingestion workers ask concurrently.
    SDK-level retries are off: embedding and vision calls go through with_retry, which owns the retry count and delay."""
    global _openai_client
    if _openai_client is None:
        with _client_lock:
            if _openai_client is None:
                _openai_client = OpenAI(
                    api_key=settings.openai_api_key,
                    timeout=settings.openai_timeout_seconds,
                    max_retries=0,
                )
    return _openai_client
