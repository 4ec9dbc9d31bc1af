"""Circuit breaker, dead-letter queue and backoff retry.

WHAT:
    - CircuitBreaker: rolling error-rate breaker (closed / open / half-open)
      with a per-call timeout
    - DeadLetterQueue: bounded in-memory ring buffer of failed events
    - retry_with_backoff: exponential backoff with jitter
    - ResilienceWrapper: the long-lived owner of one breaker and one DLQ,
      shared by webhook delivery and the reconciliation worker

WHY:
    When the store or Shopify degrades, failing fast keeps request latency
    bounded and the DLQ keeps the failed events around for replay. The
    idempotency ledger still holds every failed row (processed=False), so a
    process restart that empties the DLQ loses nothing that cannot be retried
    through the operator endpoints.

STATE MACHINE:
    CLOSED ──(error rate > threshold in window)──► OPEN
    OPEN ──(reset timeout elapsed, next call)────► HALF_OPEN (one trial call)
    HALF_OPEN ──(trial succeeds)─────────────────► CLOSED
    HALF_OPEN ──(trial fails)────────────────────► OPEN

REFERENCES:
    - https://martinfowler.com/bliki/CircuitBreaker.html
    - shopsync/services/ingestion.py (webhook path)
    - shopsync/workers/reconciliation_worker.py (page fetch path)
"""

from __future__ import annotations

import asyncio
import enum
import logging
import random
import time
from collections import Counter, OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type

from ..errors import CallTimeoutError, CircuitOpenError, ValidationError
from ..telemetry.sentry import capture_exception

logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[Any]]


# =============================================================================
# CIRCUIT BREAKER
# =============================================================================

class CircuitState(str, enum.Enum):
    closed = "closed"
    open = "open"
    half_open = "half_open"


@dataclass
class CircuitBreakerConfig:
    """
    Circuit breaker configuration.

    Attributes:
        timeout: Per-call timeout in seconds (timeouts count as failures)
        error_threshold_percentage: Open when the window's error rate exceeds this
        reset_timeout: Seconds to stay open before admitting a trial call
        rolling_window: Length of the statistics window in seconds
        rolling_buckets: Number of buckets the window is split into
        volume_threshold: Minimum calls in the window before the breaker may open
        error_filter: Exception types that do not count as failures
    """

    timeout: float = 10.0
    error_threshold_percentage: float = 50.0
    reset_timeout: float = 30.0
    rolling_window: float = 10.0
    rolling_buckets: int = 10
    volume_threshold: int = 0
    error_filter: Tuple[Type[BaseException], ...] = (ValidationError,)


class RollingCounter:
    """Event counts over the last `window` seconds, kept in fixed buckets."""

    def __init__(self, window: float, buckets: int, clock: Callable[[], float]):
        self.window = window
        self.bucket_duration = window / max(buckets, 1)
        self._clock = clock
        self._buckets: deque = deque()  # (bucket_start, Counter)

    def _evict(self, now: float) -> None:
        while self._buckets and self._buckets[0][0] <= now - self.window:
            self._buckets.popleft()

    def record(self, kind: str) -> None:
        now = self._clock()
        self._evict(now)
        start = now - (now % self.bucket_duration)
        if not self._buckets or self._buckets[-1][0] != start:
            self._buckets.append((start, Counter()))
        self._buckets[-1][1][kind] += 1

    def totals(self) -> Counter:
        self._evict(self._clock())
        total: Counter = Counter()
        for _, counts in self._buckets:
            total.update(counts)
        return total

    def reset(self) -> None:
        self._buckets.clear()


class CircuitBreaker:
    """
    Rolling-window circuit breaker for async operations.

    WHAT: Counts successes/failures per window and fails fast while open
    WHY: Stops hammering a failing dependency; one trial call probes recovery

    Usage:
        breaker = CircuitBreaker(CircuitBreakerConfig(timeout=5))
        result = await breaker.call(lambda: client.fetch_page(url))
        breaker.state  # CircuitState.closed
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        name: str = "shopify",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CircuitBreakerConfig()
        self.name = name
        self._clock = clock
        self._state = CircuitState.closed
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._counter = RollingCounter(self.config.rolling_window, self.config.rolling_buckets, clock)

    @property
    def state(self) -> CircuitState:
        """Current state; an open breaker past its reset timeout reads as half-open."""
        if (
            self._state == CircuitState.open
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.config.reset_timeout
        ):
            self._transition(CircuitState.half_open)
        return self._state

    def _transition(self, new_state: CircuitState) -> None:
        if new_state == self._state:
            return
        old_state = self._state
        self._state = new_state
        if new_state == CircuitState.open:
            self._opened_at = self._clock()
            logger.warning(
                "[CIRCUIT] %s opened (was %s); failing fast for %.0fs",
                self.name, old_state.value, self.config.reset_timeout,
            )
        elif new_state == CircuitState.half_open:
            logger.info("[CIRCUIT] %s half-open; admitting one trial call", self.name)
        else:
            self._opened_at = None
            self._counter.reset()
            logger.info("[CIRCUIT] %s closed", self.name)

    def _admit(self) -> bool:
        state = self.state
        if state == CircuitState.closed:
            return True
        if state == CircuitState.half_open and not self._trial_in_flight:
            self._trial_in_flight = True
            return True
        return False

    def _on_success(self, was_trial: bool) -> None:
        self._counter.record("successes")
        if was_trial:
            self._transition(CircuitState.closed)

    def _on_failure(self, was_trial: bool, kind: str = "failures") -> None:
        self._counter.record(kind)
        if was_trial:
            self._transition(CircuitState.open)
            return

        if self._state != CircuitState.closed:
            return

        stats = self._counter.totals()
        calls = stats["successes"] + stats["failures"] + stats["timeouts"]
        if calls < self.config.volume_threshold:
            return
        error_rate = (stats["failures"] + stats["timeouts"]) / calls * 100 if calls else 0.0
        if error_rate > self.config.error_threshold_percentage:
            self._transition(CircuitState.open)

    async def call(self, operation: Operation) -> Any:
        """Run `operation()` through the breaker.

        Raises:
            CircuitOpenError: Breaker is open (operation not invoked)
            CallTimeoutError: Operation exceeded `config.timeout`
            Exception: Whatever the operation raised
        """
        if not self._admit():
            self._counter.record("rejects")
            raise CircuitOpenError(f"Circuit breaker '{self.name}' is open")

        was_trial = self._state == CircuitState.half_open
        try:
            result = await asyncio.wait_for(operation(), timeout=self.config.timeout)
        except asyncio.TimeoutError:
            self._on_failure(was_trial, kind="timeouts")
            raise CallTimeoutError(
                f"Operation exceeded {self.config.timeout}s timeout"
            )
        except self.config.error_filter:
            # Payload errors say nothing about dependency health
            self._on_success(was_trial)
            raise
        except Exception:
            self._on_failure(was_trial)
            raise
        else:
            self._on_success(was_trial)
            return result
        finally:
            if was_trial:
                self._trial_in_flight = False

    def get_status(self) -> Dict[str, Any]:
        """Breaker state and rolling window statistics."""
        stats = self._counter.totals()
        calls = stats["successes"] + stats["failures"] + stats["timeouts"]
        return {
            "name": self.name,
            "state": self.state.value,
            "successes": stats["successes"],
            "failures": stats["failures"],
            "timeouts": stats["timeouts"],
            "rejects": stats["rejects"],
            "error_rate": round((stats["failures"] + stats["timeouts"]) / calls * 100, 2) if calls else 0.0,
        }


# =============================================================================
# DEAD-LETTER QUEUE
# =============================================================================

@dataclass
class WebhookEnvelope:
    """The parts of an event needed to apply it again."""
    id: str
    tenant_id: Optional[str]
    topic: str
    payload: Dict[str, Any]


@dataclass
class DeadLetterEntry:
    id: str
    tenant_id: Optional[str]
    topic: str
    payload: Dict[str, Any]
    error: str
    failed_at: datetime = field(default_factory=datetime.utcnow)
    retry_count: int = 0

    def envelope(self) -> WebhookEnvelope:
        return WebhookEnvelope(id=self.id, tenant_id=self.tenant_id, topic=self.topic, payload=self.payload)


class DeadLetterQueue:
    """Bounded in-memory DLQ; the oldest entry is evicted when full.

    Entries are keyed by event id: dead-lettering the same event again
    replaces its entry (moving it to the newest position) and keeps its
    retry count.
    """

    def __init__(self, max_size: int = 1000):
        self.max_size = max_size
        self._entries: "OrderedDict[str, DeadLetterEntry]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, envelope: WebhookEnvelope, error: BaseException) -> DeadLetterEntry:
        previous = self._entries.pop(envelope.id, None)
        entry = DeadLetterEntry(
            id=envelope.id,
            tenant_id=envelope.tenant_id,
            topic=envelope.topic,
            payload=envelope.payload,
            error=str(error) or error.__class__.__name__,
            retry_count=previous.retry_count if previous else 0,
        )
        self._entries[entry.id] = entry
        while len(self._entries) > self.max_size:
            evicted_id, _ = self._entries.popitem(last=False)
            logger.warning("[DLQ] Full (%d); evicted oldest entry %s", self.max_size, evicted_id)

        logger.error(
            "[DLQ] Added event %s (topic=%s, tenant=%s): %s",
            entry.id, entry.topic, entry.tenant_id, entry.error,
        )
        return entry

    def get(self, entry_id: str) -> Optional[DeadLetterEntry]:
        return self._entries.get(entry_id)

    def get_failed(self, limit: int = 10) -> List[DeadLetterEntry]:
        """The newest `limit` entries, oldest of those first."""
        if limit <= 0:
            return []
        return list(self._entries.values())[-limit:]

    def remove(self, entry_id: str) -> bool:
        return self._entries.pop(entry_id, None) is not None

    def clear(self) -> None:
        self._entries.clear()


# =============================================================================
# RETRY
# =============================================================================

async def retry_with_backoff(
    operation: Operation,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    jitter: Callable[[], float] = lambda: random.uniform(0, 1.0),
) -> Any:
    """Call `operation()` up to `max_attempts` times.

    Delay before attempt n+1 is `base_delay * 2**(n-1) + jitter()` seconds
    (jitter up to one second). The last error is re-raised.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if attempt >= max_attempts:
                logger.error("[RETRY] Max retries exceeded (%d attempts): %s", max_attempts, e)
                raise
            delay = base_delay * (2 ** (attempt - 1)) + jitter()
            logger.warning(
                "[RETRY] Attempt %d/%d failed: %s; retrying in %.2fs",
                attempt, max_attempts, e, delay,
            )
            await sleep(delay)


# =============================================================================
# WRAPPER
# =============================================================================

@dataclass
class ReplayReport:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


def breaker_config_from_settings(settings) -> CircuitBreakerConfig:
    return CircuitBreakerConfig(
        timeout=settings.BREAKER_TIMEOUT_SECONDS,
        error_threshold_percentage=settings.BREAKER_ERROR_THRESHOLD_PERCENT,
        reset_timeout=settings.BREAKER_RESET_TIMEOUT_SECONDS,
        rolling_window=settings.BREAKER_ROLLING_WINDOW_SECONDS,
        rolling_buckets=settings.BREAKER_ROLLING_BUCKETS,
        volume_threshold=settings.BREAKER_VOLUME_THRESHOLD,
    )


class ResilienceWrapper:
    """
    Owns the shared circuit breaker and DLQ for the process lifetime.

    WHAT: Runs event processing through the breaker and dead-letters failures
    WHY: One instance per application (`app.state.resilience`) so webhook
         delivery and the reconciliation worker see the same breaker state

    Usage:
        resilience = ResilienceWrapper()
        result = await resilience.invoke(envelope, lambda: dispatcher.process(...))
        report = await resilience.replay_dead_letters(process_envelope)
    """

    def __init__(
        self,
        breaker: Optional[CircuitBreaker] = None,
        dead_letters: Optional[DeadLetterQueue] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.breaker = breaker or CircuitBreaker()
        self.dead_letters = dead_letters if dead_letters is not None else DeadLetterQueue()
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings) -> "ResilienceWrapper":
        return cls(
            breaker=CircuitBreaker(breaker_config_from_settings(settings)),
            dead_letters=DeadLetterQueue(max_size=settings.DLQ_MAX_SIZE),
        )

    async def invoke(self, envelope: WebhookEnvelope, operation: Operation) -> Any:
        """Run `operation` through the breaker; dead-letter and re-raise on failure.

        ValidationError is re-raised without dead-lettering: replaying a
        malformed payload cannot succeed.
        """
        try:
            return await self.breaker.call(operation)
        except ValidationError:
            raise
        except Exception as e:
            self.dead_letters.add(envelope, e)
            raise

    async def replay_dead_letters(
        self,
        process: Callable[[WebhookEnvelope], Awaitable[Any]],
        batch_size: int = 5,
        max_attempts: int = 3,
        base_delay: float = 2.0,
    ) -> ReplayReport:
        """Retry the newest `batch_size` DLQ entries with backoff.

        Success removes the entry; failure bumps its retry count and leaves it
        queued. One entry's failure never stops the batch.
        """
        report = ReplayReport()
        for entry in self.dead_letters.get_failed(batch_size):
            report.attempted += 1
            envelope = entry.envelope()
            try:
                await retry_with_backoff(
                    lambda: process(envelope),
                    max_attempts=max_attempts,
                    base_delay=base_delay,
                    sleep=self._sleep,
                )
            except Exception as e:
                entry.retry_count += 1
                entry.error = str(e) or e.__class__.__name__
                report.failed += 1
                report.errors.append(f"{entry.id}: {entry.error}")
                logger.error("[DLQ] Replay failed for %s (retries=%d): %s", entry.id, entry.retry_count, e)
                capture_exception(e, extra={"dlq_entry": entry.id, "topic": entry.topic})
                continue

            self.dead_letters.remove(entry.id)
            report.succeeded += 1
            logger.info("[DLQ] Replayed event %s", entry.id)

        return report

    def health(self) -> Dict[str, Any]:
        status = self.breaker.get_status()
        return {
            "state": status["state"],
            "stats": status,
            "dlq_size": len(self.dead_letters),
        }
