import pytest

from codebot.service.retry import RetryPolicy


class Sleeps:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def test_delays_double_and_are_capped():
    policy = RetryPolicy(max_attempts=6, base_delay=1.0, multiplier=2.0, max_delay=10.0)
    assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 10.0]
    with pytest.raises(ValueError):
        policy.delay_for(0)


async def test_retries_until_success():
    sleeps = Sleeps()
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise ConnectionError("transient")
        return "ok"

    result = await RetryPolicy(sleep=sleeps).run(flaky, retry_on=(ConnectionError,))

    assert result == "ok"
    assert len(attempts) == 3
    assert sleeps.delays == [1.0, 2.0]


async def test_gives_up_after_max_attempts():
    sleeps = Sleeps()
    attempts = []

    async def always_fails():
        attempts.append(1)
        raise ConnectionError("down")

    with pytest.raises(ConnectionError):
        await RetryPolicy(max_attempts=3, sleep=sleeps).run(always_fails, retry_on=(ConnectionError,))
    assert len(attempts) == 3
    assert len(sleeps.delays) == 2


async def test_non_matching_errors_are_not_retried():
    sleeps = Sleeps()
    attempts = []

    async def bad_request():
        attempts.append(1)
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        await RetryPolicy(sleep=sleeps).run(bad_request, retry_on=(ConnectionError,))
    assert len(attempts) == 1
    assert sleeps.delays == []


async def test_should_retry_predicate_can_veto():
    sleeps = Sleeps()
    attempts = []

    async def op():
        attempts.append(1)
        raise ConnectionError("permanent")

    with pytest.raises(ConnectionError):
        await RetryPolicy(sleep=sleeps).run(
            op, retry_on=(ConnectionError,), should_retry=lambda exc: "permanent" not in str(exc)
        )
    assert len(attempts) == 1


def test_from_settings(settings):
    policy = RetryPolicy.from_settings(settings)
    assert policy.max_attempts == settings.retry_max_attempts
    assert policy.max_delay == settings.retry_max_delay
