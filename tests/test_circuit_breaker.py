"""
בדיקות ל-circuit breaker של Cloud API
"""
import pytest

from app.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    get_whatsapp_cloud_circuit_breaker,
)
from app.core.exceptions import CircuitBreakerOpenError


class _GatewayDown(Exception):
    pass


async def _failing_send():
    raise _GatewayDown("502 from graph")


async def _ok_send():
    return "wamid.ok"


async def _trip(breaker: CircuitBreaker, times: int = 3) -> None:
    for _ in range(times):
        with pytest.raises(_GatewayDown):
            await breaker.execute(_failing_send)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def breaker(clock: FakeClock) -> CircuitBreaker:
    return CircuitBreaker(
        "cloud-test",
        CircuitBreakerConfig(
            failure_threshold=3,
            success_threshold=2,
            timeout_seconds=30.0,
            half_open_max_calls=2,
        ),
        clock=clock,
    )


class TestStateMachine:

    @pytest.mark.unit
    async def test_starts_closed_and_stays_closed_on_success(self, breaker: CircuitBreaker):
        assert await breaker.execute(_ok_send) == "wamid.ok"
        assert breaker.is_closed
        assert not breaker.is_open

    @pytest.mark.unit
    async def test_success_resets_failure_count(self, breaker: CircuitBreaker):
        await _trip(breaker, times=2)
        await breaker.execute(_ok_send)
        await _trip(breaker, times=2)

        assert breaker.is_closed

    @pytest.mark.unit
    async def test_threshold_opens_and_blocks(self, breaker: CircuitBreaker):
        await _trip(breaker)

        assert breaker.is_open
        with pytest.raises(CircuitBreakerOpenError) as exc_info:
            await breaker.execute(_ok_send)
        assert "cloud-test" in str(exc_info.value)

    @pytest.mark.unit
    async def test_half_open_after_timeout_then_closes(
        self, breaker: CircuitBreaker, clock: FakeClock
    ):
        await _trip(breaker)
        clock.now += 31

        await breaker.execute(_ok_send)
        assert breaker.is_half_open

        await breaker.execute(_ok_send)
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.unit
    async def test_half_open_limits_trial_calls(self, breaker: CircuitBreaker, clock: FakeClock):
        await _trip(breaker)
        clock.now += 31

        assert breaker.allow_request()
        assert breaker.allow_request()
        assert not breaker.allow_request()

    @pytest.mark.unit
    async def test_failure_while_half_open_reopens(
        self, breaker: CircuitBreaker, clock: FakeClock
    ):
        await _trip(breaker)
        clock.now += 31

        await _trip(breaker, times=1)

        assert breaker.is_open

    @pytest.mark.unit
    async def test_retry_after_counts_down(self, breaker: CircuitBreaker, clock: FakeClock):
        assert breaker.get_retry_after() == 0.0

        await _trip(breaker)
        clock.now += 10

        assert breaker.get_retry_after() == pytest.approx(20.0)

    @pytest.mark.unit
    async def test_sync_callable_supported(self, breaker: CircuitBreaker):
        assert await breaker.execute(lambda: 42) == 42


class TestRegistry:

    @pytest.mark.unit
    def test_get_instance_is_singleton(self):
        first = CircuitBreaker.get_instance("registry-test", CircuitBreakerConfig())
        assert CircuitBreaker.get_instance("registry-test") is first
        assert first in CircuitBreaker.registered()

    @pytest.mark.unit
    def test_whatsapp_cloud_breaker_config(self):
        cb = get_whatsapp_cloud_circuit_breaker()

        assert cb.service_name == "whatsapp_cloud"
        assert cb.config.failure_threshold == 5
        assert cb is get_whatsapp_cloud_circuit_breaker()

    @pytest.mark.unit
    async def test_snapshot_reflects_open_state(self, breaker: CircuitBreaker):
        await _trip(breaker)

        snap = breaker.snapshot()

        assert snap["service"] == "cloud-test"
        assert snap["state"] == "open"
        assert snap["failure_count"] == 3
        assert snap["retry_after_seconds"] >= 0

    @pytest.mark.unit
    def test_reset_all_clears_registry(self):
        CircuitBreaker.get_instance("to-clear")
        CircuitBreaker.reset_all()
        assert CircuitBreaker.registered() == []
