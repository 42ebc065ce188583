import pytest

from sqlgate.core.config import settings
from sqlgate.core.exceptions import CircuitOpenException
from sqlgate.core.gateway.resilience import BreakerConfig, CircuitBreaker, RetryPolicy


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(BreakerConfig(failure_threshold=3, recovery_seconds=30), clock=clock)


def test_breaker_opens_after_threshold(breaker):
    for _ in range(2):
        breaker.record_failure()
    assert breaker.state == "closed"

    breaker.record_failure()

    assert breaker.state == "open"
    assert not breaker.allow_call()


def test_success_resets_failure_count(breaker):
    breaker.record_failure()
    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()

    assert breaker.state == "closed"


def test_guard_raises_while_open(breaker, clock):
    for _ in range(3):
        breaker.record_failure()
    clock.advance(10)

    with pytest.raises(CircuitOpenException) as exc_info:
        breaker.guard("dbo.sp_ExecuteQuery")

    assert exc_info.value.retry_after_seconds == pytest.approx(20)
    assert not exc_info.value.is_transient


def test_half_open_after_cool_down(breaker, clock):
    for _ in range(3):
        breaker.record_failure()
    clock.advance(30)

    assert breaker.allow_call()
    assert breaker.state == "half_open"
    # only one trial call at a time
    assert not breaker.allow_call()


def test_trial_success_closes(breaker, clock):
    for _ in range(3):
        breaker.record_failure()
    clock.advance(31)
    breaker.allow_call()

    breaker.record_success()

    assert breaker.state == "closed"
    assert breaker.retry_after() == 0.0


def test_trial_failure_reopens(breaker, clock):
    for _ in range(3):
        breaker.record_failure()
    clock.advance(31)
    breaker.allow_call()

    breaker.record_failure()

    assert breaker.state == "open"
    assert breaker.retry_after() == pytest.approx(30)


def test_released_half_open_slot_allows_another_call(breaker, clock):
    for _ in range(3):
        breaker.record_failure()
    clock.advance(31)
    assert breaker.allow_call()

    breaker.release_trial()

    assert breaker.state == "half_open"
    assert breaker.allow_call()


def test_releasing_slot_is_noop_when_closed(breaker):
    breaker.release_trial()

    assert breaker.state == "closed"
    assert breaker.allow_call()


def test_cool_down_with_clock_starting_at_zero(clock):
    clock.now = 0.0
    breaker = CircuitBreaker(BreakerConfig(failure_threshold=1, recovery_seconds=30), clock=clock)
    breaker.record_failure()
    assert breaker.retry_after() == pytest.approx(30)

    clock.advance(30)

    assert breaker.allow_call()
    assert breaker.state == "half_open"


def test_breaker_from_settings():
    config = BreakerConfig.from_settings(settings)

    assert config.failure_threshold == settings.CIRCUIT_BREAKER_THRESHOLD
    assert config.recovery_seconds == settings.CIRCUIT_BREAKER_COOLDOWN_SECONDS


# =========================
# Retry policy
# =========================
def test_delay_doubles_and_caps():
    policy = RetryPolicy(max_retries=10, base_delay_ms=1000, max_delay_ms=30000, jitter_ms=0)

    delays = [policy.compute_delay(n) for n in range(1, 8)]

    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]


def test_jitter_is_added():
    policy = RetryPolicy(base_delay_ms=1000, jitter_ms=1000)

    assert policy.compute_delay(1, rng=lambda low, high: high) == 2.0
    assert policy.compute_delay(1, rng=lambda low, high: low) == 1.0


def test_retry_number_is_one_based():
    with pytest.raises(ValueError):
        RetryPolicy().compute_delay(0)


def test_should_retry_bounded():
    policy = RetryPolicy(max_retries=3)

    assert policy.should_retry(0)
    assert policy.should_retry(2)
    assert not policy.should_retry(3)
