import pytest

from genwave.request import RetryPolicy


@pytest.fixture(autouse=True)
def test_set_env(monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEY", "test-key")
    monkeypatch.delenv("GEMINI_API_KEYS", raising=False)
    for name in ("GENWAVE_VIDEO_MODEL", "GENWAVE_CACHE_TTL_SECONDS", "GENWAVE_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def fast_retry_policy() -> RetryPolicy:
    """
    Retry policy without waiting between attempts.
    """
    return RetryPolicy(attempts=3, base_delay_seconds=0.0, jitter_seconds=0.0)
