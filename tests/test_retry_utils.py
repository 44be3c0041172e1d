import pytest

from autozap.utils.retry_utils import (
    is_retryable_error,
    backoff_delay,
    retry_with_backoff,
    classify_transcription_error,
    DEFAULT_TRANSCRIPTION_ERROR,
)


class APIConnectionError(Exception):
    pass


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def test_connection_errors_are_retryable():
    assert is_retryable_error(ConnectionResetError("read ECONNRESET"))
    assert is_retryable_error(APIConnectionError("boom"))
    assert is_retryable_error(Exception("socket hang up"))


def test_other_errors_are_not_retryable():
    assert not is_retryable_error(ValueError("invalid file format"))
    assert not is_retryable_error(None)


def test_backoff_delay_doubles_and_adds_scaled_jitter():
    assert backoff_delay(0, 1.0, jitter=0) == 1.0
    assert backoff_delay(2, 1.0, jitter=0.5) == 4.5
    assert backoff_delay(1, 2.0, jitter=0.5) == 5.0


def test_backoff_delays_strictly_increase():
    for attempt in range(4):
        assert backoff_delay(attempt, 1.0, jitter=0.99) < backoff_delay(attempt + 1, 1.0, jitter=0)


async def test_retry_returns_after_transient_failures():
    sleep = RecordingSleep()
    outcomes = [APIConnectionError("down"), APIConnectionError("down"), "ok"]
    calls = []

    async def call():
        calls.append(1)
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    result = await retry_with_backoff(call, max_retries=3, base_delay=1.0, sleep=sleep)

    assert result == "ok"
    assert len(calls) == 3
    assert len(sleep.delays) == 2
    assert 1.0 <= sleep.delays[0] < 2.0
    assert 2.0 <= sleep.delays[1] < 3.0


async def test_retry_fails_fast_on_non_retryable_error():
    sleep = RecordingSleep()
    calls = []

    async def call():
        calls.append(1)
        raise ValueError("Incorrect API key provided")

    with pytest.raises(ValueError):
        await retry_with_backoff(call, max_retries=3, sleep=sleep)

    assert len(calls) == 1
    assert sleep.delays == []


async def test_retry_raises_last_error_when_attempts_run_out():
    sleep = RecordingSleep()
    calls = []

    async def call():
        calls.append(1)
        raise APIConnectionError(f"attempt {len(calls)}")

    with pytest.raises(APIConnectionError, match="attempt 3"):
        await retry_with_backoff(call, max_retries=2, base_delay=1.0, sleep=sleep)

    assert len(calls) == 3
    assert len(sleep.delays) == 2


async def test_retry_reports_each_retry():
    sleep = RecordingSleep()
    reported = []
    outcomes = [APIConnectionError("down"), "ok"]

    async def call():
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    await retry_with_backoff(
        call,
        max_retries=2,
        on_retry=lambda attempt, delay, error: reported.append((attempt, str(error))),
        sleep=sleep
    )

    assert reported == [(1, "down")]


@pytest.mark.parametrize("message, status_code", [
    ("Connection error.", 503),
    ("read ECONNRESET", 503),
    ("Request timed out.", 408),
    ("Incorrect API key provided: sk-***", 401),
    ("HTTP 401: Unauthorized", 401),
    ("You exceeded your current quota (insufficient_quota)", 429),
    ("Rate limit reached for whisper-1", 429),
    ("Billing hard limit has been reached", 402),
    ("Audio file too large", 413),
    ("Forbidden", 403),
    ("Invalid file format. Supported formats: mp3, wav", 400),
])
def test_transcription_errors_are_classified(message, status_code):
    classified_status, user_message = classify_transcription_error(Exception(message))
    assert classified_status == status_code
    assert user_message


def test_unknown_transcription_error_maps_to_default():
    assert classify_transcription_error(Exception("something odd")) == DEFAULT_TRANSCRIPTION_ERROR
