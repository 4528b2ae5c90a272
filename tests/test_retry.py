import httpx
import pytest

from paycore.services.retry import backoff_delay, is_retryable_error, retry_with_backoff
from paycore.utils.errors import RetryExhaustedError


@pytest.mark.parametrize("attempt", range(5))
def test_backoff_delay_bounds(attempt):
    base = 1.0 * 2**attempt
    assert backoff_delay(attempt, 1.0, jitter=lambda: 0.0) == pytest.approx(base)
    assert backoff_delay(attempt, 1.0, jitter=lambda: 0.999) <= base * 1.1
    assert backoff_delay(attempt, 1.0) >= base


def test_retry_succeeds_after_transient_failures():
    calls = []
    sleeps: list[float] = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ConnectionError("ECONNRESET")
        return "ok"

    result = retry_with_backoff(flaky, max_retries=5, initial_delay=1.0, sleep=sleeps.append, jitter=lambda: 0.0)

    assert result == "ok"
    assert len(calls) == 3
    assert sleeps == [1.0, 2.0]


def test_retry_exhaustion_wraps_last_error():
    sleeps: list[float] = []

    def always_down():
        raise TimeoutError("timeout")

    with pytest.raises(RetryExhaustedError) as excinfo:
        retry_with_backoff(always_down, max_retries=5, initial_delay=1.0, sleep=sleeps.append, jitter=lambda: 0.0)

    assert excinfo.value.attempts == 6
    assert isinstance(excinfo.value.last_error, TimeoutError)
    assert sleeps == [1.0, 2.0, 4.0, 8.0, 16.0]


def test_retry_sleeps_grow_within_jitter_bounds():
    sleeps_ms: list[float] = []

    def always_down():
        raise ConnectionError("ECONNREFUSED")

    with pytest.raises(RetryExhaustedError) as excinfo:
        retry_with_backoff(
            always_down,
            max_retries=3,
            initial_delay=1.0,
            sleep=lambda seconds: sleeps_ms.append(seconds * 1000),
        )

    assert excinfo.value.attempts == 4
    assert len(sleeps_ms) == 3
    assert sleeps_ms == sorted(sleeps_ms)
    for attempt, delay in enumerate(sleeps_ms):
        base = 1000 * 2**attempt
        assert base <= delay <= base * 1.1 + 1e-6


def test_non_retryable_error_is_raised_immediately():
    calls = []
    sleeps: list[float] = []

    def broken():
        calls.append(1)
        raise ValueError("bad payload")

    with pytest.raises(ValueError):
        retry_with_backoff(broken, sleep=sleeps.append)

    assert len(calls) == 1
    assert sleeps == []


def _status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://provider.test/v2/payment-requests/1")
    response = httpx.Response(code, request=request)
    return httpx.HTTPStatusError("provider error", request=request, response=response)


@pytest.mark.parametrize("code", [408, 429, 500, 502, 503, 504])
def test_gateway_statuses_are_retryable(code):
    assert is_retryable_error(_status_error(code))


@pytest.mark.parametrize("code", [400, 401, 404, 422])
def test_client_statuses_are_not_retryable(code):
    assert not is_retryable_error(_status_error(code))


def test_transport_errors_are_retryable():
    request = httpx.Request("GET", "https://provider.test")
    assert is_retryable_error(httpx.ConnectTimeout("slow", request=request))
    assert is_retryable_error(httpx.ConnectError("refused", request=request))
    assert is_retryable_error(RuntimeError("socket ETIMEDOUT"))
    assert not is_retryable_error(RuntimeError("boom"))
