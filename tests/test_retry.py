import pytest

from multimodal_rag.utils.retry import with_retry


def test_succeeds_after_transient_failures():
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ConnectionError("temporary")
        return "ok"

    assert with_retry(flaky, attempts=3, delay_seconds=0) == "ok"
    assert len(calls) == 3


def test_reraises_last_error_when_exhausted():
    calls = []

    def always_down():
        calls.append(1)
        raise TimeoutError(f"attempt {len(calls)}")

    with pytest.raises(TimeoutError, match="attempt 2"):
        with_retry(always_down, attempts=2, delay_seconds=0)
    assert len(calls) == 2


def test_non_matching_error_is_not_retried():
    calls = []

    def bad_input():
        calls.append(1)
        raise ValueError("bad")

    with pytest.raises(ValueError):
        with_retry(bad_input, attempts=5, delay_seconds=0, retry_on=(ConnectionError,))
    assert len(calls) == 1
