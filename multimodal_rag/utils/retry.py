import logging
import time
from typing import Callable, Optional, Type, TypeVar, Tuple

T = TypeVar("T")

logger = logging.getLogger(__name__)


def with_retry(
    fn: Callable[[], T],
    *,
    attempts: int = 3,
    delay_seconds: float = 1.0,
    retry_on: Optional[Tuple[Type[BaseException], ...]] = (Exception,),
    label: str = "call",
) -> T:
    """Run fn() up to `attempts` times with a fixed delay between attempts; re-raises the last error. If retry_on is None, defaults to (Exception,).
    Why available: Embedding and vision calls go through this so transient API failures do not fail a whole job or query."""
    exc_types: Tuple[Type[BaseException], ...] = retry_on or (Exception,)
    attempts = max(1, attempts)

    last_err: Optional[BaseException] = None

    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except exc_types as e:
            last_err = e
            if attempt >= attempts:
                raise
            logger.warning(
                "retrying %s after failure (attempt %d/%d): %s",
                label, attempt, attempts, e,
            )
            if delay_seconds > 0:
                time.sleep(delay_seconds)

    # Should be unreachable, but keeps type-checkers happy.
    assert last_err is not None
    raise last_err
