"""Startup checks: refuse to serve with a missing credential, a wrong embedding dimension, or an unreachable vector store."""
import logging
from typing import Optional

from multimodal_rag.core.config import Settings
from multimodal_rag.guardrails.errors import ConfigurationError
from multimodal_rag.index.vector_store import VectorIndex

logger = logging.getLogger(__name__)

KNOWN_EMBEDDING_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}
MAX_EMBEDDING_DIMENSION = 3072


def mask_secret(value: Optional[str]) -> str:
    """Show only enough of a secret to recognise it in logs."""
    if not value:
        return "<missing>"
    if len(value) <= 8:
        return "***"
    return f"{value[:3]}...{value[-4:]}"


def check_embedding_dimension(model: str, dimension: int) -> None:
    if dimension <= 0:
        raise ConfigurationError(f"EMBEDDING_DIMENSION must be > 0 (got {dimension})")
    expected = KNOWN_EMBEDDING_DIMENSIONS.get(model)
    if expected is not None and dimension != expected:
        raise ConfigurationError(
            f"EMBEDDING_DIMENSION={dimension} does not match model {model} (expects {expected})"
        )
    if expected is None and dimension > MAX_EMBEDDING_DIMENSION:
        raise ConfigurationError(f"EMBEDDING_DIMENSION must be <= {MAX_EMBEDDING_DIMENSION} (got {dimension})")


def validate_startup(settings: Settings, index: VectorIndex, *, require_api_key: bool = True) -> None:
    """Run every startup check and create the two collections; raises ConfigurationError with a specific message on the first problem.
    Why available: A misconfigured deployment should fail at boot, not on the first upload."""
    if require_api_key:
        key = settings.openai_api_key.strip()
        if not key:
            raise ConfigurationError("OPENAI_API_KEY is not set")
        if not key.startswith("sk-"):
            logger.warning("OPENAI_API_KEY does not look like an OpenAI key: %s", mask_secret(key))
        else:
            logger.info("OpenAI key configured: %s", mask_secret(key))

    check_embedding_dimension(settings.embedding_model, settings.embedding_dimension)
    if index.dimension != settings.embedding_dimension:
        raise ConfigurationError(
            f"vector index dimension {index.dimension} != EMBEDDING_DIMENSION {settings.embedding_dimension}"
        )

    try:
        index.ping()
    except Exception as e:
        raise ConfigurationError(f"vector store unreachable ({settings.vector_backend} at {settings.qdrant_url}): {e}") from e

    for name in (settings.text_collection, settings.image_collection):
        try:
            index.ensure_collection(name)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"cannot prepare collection '{name}': {e}") from e

    logger.info(
        "startup validated",
        extra={
            "vector_backend": settings.vector_backend,
            "embedding_model": settings.embedding_model,
            "dimension": settings.embedding_dimension,
            "cache_backend": settings.cache_backend,
        },
    )
