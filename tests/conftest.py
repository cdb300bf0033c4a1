import pytest

from bulkdispatch.settings import DispatchSettings
from tests.mocks.service import FakeClock, FakeMultiRequestService


@pytest.fixture(autouse=True)
def clear_env(monkeypatch):
    for name in (
        "BULKDISPATCH_BATCH_SIZE",
        "BULKDISPATCH_MAX_RETRIES",
        "BULKDISPATCH_RETRY_DELAY_SECONDS",
        "BULKDISPATCH_EXPONENTIAL_BACKOFF",
        "BULKDISPATCH_POLL_INTERVAL_SECONDS",
        "BULKDISPATCH_MAX_PARALLELISM",
        "BULKDISPATCH_DEFAULT_THROTTLE_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def service() -> FakeMultiRequestService:
    return FakeMultiRequestService()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fast_settings() -> DispatchSettings:
    """Settings with short backoffs so retry tests run quickly."""
    return DispatchSettings(
        batch_size=3,
        max_retries=2,
        retry_delay_seconds=0.01,
        poll_interval_seconds=0.01,
        default_throttle_seconds=0.01,
    )
