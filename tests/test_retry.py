import pytest

from bigfile.infra.retry import Backoff, retry_on


class Flaky:
    def __init__(self, failures, exc=RuntimeError):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc(f"fail #{self.calls}")
        return "ok"


def test_retries_until_success():
    fn = Flaky(2)
    sleeps = []
    assert retry_on(fn, attempts=3, sleep=sleeps.append) == "ok"
    assert fn.calls == 3
    assert len(sleeps) == 2
    # backoff + max 25% jitter
    assert 0.2 <= sleeps[0] <= 0.25
    assert 0.4 <= sleeps[1] <= 0.5


def test_gives_up_with_last_exception():
    fn = Flaky(10)
    with pytest.raises(RuntimeError, match="fail #3"):
        retry_on(fn, attempts=3, sleep=lambda s: None)
    assert fn.calls == 3


def test_non_retryable_is_raised_immediately():
    fn = Flaky(5, exc=KeyError)
    with pytest.raises(KeyError):
        retry_on(fn, attempts=3, is_retryable=lambda e: isinstance(e, RuntimeError), sleep=lambda s: None)
    assert fn.calls == 1


def test_on_retry_callback():
    seen = []
    retry_on(
        Flaky(1),
        attempts=3,
        on_retry=lambda attempt, exc, sleep_s: seen.append((attempt, str(exc))),
        sleep=lambda s: None,
    )
    assert seen == [(1, "fail #1")]


def test_delay_is_capped():
    sleeps = []
    with pytest.raises(RuntimeError):
        retry_on(Flaky(10), attempts=6, backoff=Backoff(base=1.0, cap=2.0), sleep=sleeps.append)
    assert max(sleeps) <= 2.5


def test_backoff_without_jitter_is_deterministic():
    b = Backoff(base=0.5, factor=3.0, cap=4.0, jitter=0.0)
    assert [b.delay(i) for i in range(4)] == [0.5, 1.5, 4.0, 4.0]
