"""
Circuit Breaker Pattern Implementation

מגן על WhatsApp Cloud API מהצפה בזמן תקלה. רק כשלונות זמניים (רשת,
timeout, 5xx, 429) נספרים; דחייה של דייר ספציפי (טוקן שפג תוקפו, מספר
לא תקין) מטופלת ב-worker ולא פותחת את ה-breaker המשותף לכל הדיירים.

מצבים:
    CLOSED    - בקשות עוברות, כשלונות רצופים נספרים
    OPEN      - בקשות נחסמות עד שעובר timeout_seconds מהכשלון האחרון
    HALF_OPEN - מספר מוגבל של בקשות ניסיון; הצלחות סוגרות, כשלון פותח מחדש
"""
from __future__ import annotations

import inspect
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, ParamSpec, TypeVar

from app.core.exceptions import CircuitBreakerOpenError
from app.core.logging import get_logger

logger = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5      # כשלונות רצופים עד פתיחה
    success_threshold: int = 2      # הצלחות ב-half-open עד סגירה
    timeout_seconds: float = 30.0   # זמן ב-open לפני ניסיון
    half_open_max_calls: int = 3    # בקשות ניסיון מותרות ב-half-open


class CircuitBreaker:
    """
    Breaker אחד לכל שירות חיצוני, משותף לכל התהליך.

    המצב מוגן ב-threading.Lock ולא ב-asyncio.Lock: Celery מריץ כל task
    ב-event loop חדש, וה-breaker חייב לשרוד בין לולאות.
    """

    _registry: dict[str, CircuitBreaker] = {}
    _registry_lock = threading.Lock()

    def __init__(
        self,
        service_name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._trial_calls = 0
        self._last_failure_at = 0.0

    # ── registry ──

    @classmethod
    def get_instance(
        cls,
        service_name: str,
        config: CircuitBreakerConfig | None = None,
    ) -> CircuitBreaker:
        with cls._registry_lock:
            breaker = cls._registry.get(service_name)
            if breaker is None:
                breaker = cls._registry[service_name] = cls(service_name, config)
            return breaker

    @classmethod
    def registered(cls) -> list[CircuitBreaker]:
        with cls._registry_lock:
            return list(cls._registry.values())

    @classmethod
    def reset_all(cls) -> None:
        """ניקוי ה-registry (בדיקות)"""
        with cls._registry_lock:
            cls._registry.clear()

    # ── state ──

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state is CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state is CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self._state is CircuitState.HALF_OPEN

    def _seconds_until_trial(self) -> float:
        if self._state is not CircuitState.OPEN:
            return 0.0
        elapsed = self._clock() - self._last_failure_at
        return max(0.0, self.config.timeout_seconds - elapsed)

    def _move_to(self, new_state: CircuitState) -> None:
        old_state, self._state = self._state, new_state
        self._successes = 0
        if new_state is CircuitState.HALF_OPEN:
            self._trial_calls = 0
        elif new_state is CircuitState.CLOSED:
            self._failures = 0

        logger.info(
            f"Circuit breaker '{self.service_name}': {old_state.value} -> {new_state.value}",
            extra_data={
                "service": self.service_name,
                "old_state": old_state.value,
                "new_state": new_state.value,
                "failure_count": self._failures,
            },
        )

    def snapshot(self) -> dict[str, Any]:
        """מצב רגעי לדיאגנוסטיקה (admin debug)"""
        with self._lock:
            return {
                "service": self.service_name,
                "state": self._state.value,
                "failure_count": self._failures,
                "success_count": self._successes,
                "half_open_calls": self._trial_calls,
                "retry_after_seconds": round(self._seconds_until_trial(), 1),
            }

    def get_retry_after(self) -> float:
        with self._lock:
            return self._seconds_until_trial()

    # ── bookkeeping ──

    def allow_request(self) -> bool:
        """האם מותר לשלוח עכשיו. מעביר open -> half_open כשה-timeout עבר."""
        with self._lock:
            if self._state is CircuitState.OPEN:
                if self._seconds_until_trial() > 0:
                    return False
                self._move_to(CircuitState.HALF_OPEN)

            if self._state is CircuitState.HALF_OPEN:
                if self._trial_calls >= self.config.half_open_max_calls:
                    return False
                self._trial_calls += 1

            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._successes += 1
                if self._successes >= self.config.success_threshold:
                    self._move_to(CircuitState.CLOSED)
            else:
                self._failures = 0

    def record_failure(self, error: BaseException | None = None) -> None:
        with self._lock:
            self._failures += 1
            self._last_failure_at = self._clock()

            logger.warning(
                f"Circuit breaker '{self.service_name}' recorded failure",
                extra_data={
                    "service": self.service_name,
                    "failure_count": self._failures,
                    "threshold": self.config.failure_threshold,
                    "error": str(error) if error else None,
                },
            )

            if self._state is CircuitState.HALF_OPEN or (
                self._state is CircuitState.CLOSED
                and self._failures >= self.config.failure_threshold
            ):
                self._move_to(CircuitState.OPEN)

    async def execute(
        self,
        func: Callable[P, Awaitable[T] | T],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        """
        Run ``func`` under the breaker.

        Every exception raised by ``func`` counts as a failure and is
        re-raised, so callers raise only for conditions that reflect the
        health of the remote service.

        Raises:
            CircuitBreakerOpenError: the breaker rejected the call
        """
        if not self.allow_request():
            raise CircuitBreakerOpenError(self.service_name, self.get_retry_after())

        try:
            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            self.record_failure(e)
            raise

        self.record_success()
        return result


def get_whatsapp_cloud_circuit_breaker() -> CircuitBreaker:
    """Breaker for the WhatsApp Cloud (Graph) API, shared by all tenants"""
    return CircuitBreaker.get_instance(
        "whatsapp_cloud",
        CircuitBreakerConfig(
            failure_threshold=5,
            success_threshold=2,
            timeout_seconds=30.0,
        ),
    )
