"""
Delivery retry engine: exponential backoff with jitter, a circuit breaker,
error classification, delivery metrics and an in-memory fallback queue.

The engine wraps a delivery client, an async callable that performs exactly
one attempt::

    async def client(payload, options) -> Any

``options`` carries ``attempt`` and ``timeout`` (seconds) plus whatever the
caller passed in (headers, for instance). The client raises on any failed
attempt, preferably a DeliveryError carrying the HTTP status code.

State lives on the engine instance and is lost on restart. All flows on one
event loop share it; transitions happen between awaits, so no locking.
"""

import asyncio
import random
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional

from loguru import logger

from tools.errors import (
    DEFAULT_RETRYABLE_KINDS,
    ConfigurationError,
    ErrorAnalysis,
    ErrorKind,
    classify_error,
)

DeliveryClient = Callable[[Any, Dict[str, Any]], Awaitable[Any]]

BASE_TIMEOUT = 10.0
TIMEOUT_STEP = 5.0
MAX_TIMEOUT = 60.0


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class RetryConfig:
    """Configuration for retry, circuit breaker and fallback queue behavior."""

    max_retries: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter_range: float = 0.1  # +/- 10% of the unjittered delay
    retryable_kinds: FrozenSet[str] = DEFAULT_RETRYABLE_KINDS
    circuit_breaker_threshold: int = 5
    circuit_breaker_cooldown: float = 60.0
    fallback_queue: bool = False
    queue_item_delay: float = 1.0
    max_queue_retries: int = 3
    enable_logging: bool = True
    enable_metrics: bool = True

    def __post_init__(self):
        self.retryable_kinds = frozenset(self.retryable_kinds)
        if self.max_retries < 0:
            raise ConfigurationError("max_retries must be >= 0")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ConfigurationError("delays must be >= 0")
        if self.exponential_base < 1:
            raise ConfigurationError("exponential_base must be >= 1")
        if not 0 <= self.jitter_range <= 1:
            raise ConfigurationError("jitter_range must be between 0 and 1")
        if self.circuit_breaker_threshold < 1:
            raise ConfigurationError("circuit_breaker_threshold must be >= 1")
        if self.circuit_breaker_cooldown < 0 or self.queue_item_delay < 0:
            raise ConfigurationError("cooldown and queue delay must be >= 0")


class CircuitBreaker:
    """Two-state breaker: CLOSED lets calls through, OPEN blocks them until the cooldown passes."""

    def __init__(self, threshold: int, cooldown: float, clock: Callable[[], float] = time.monotonic):
        self.threshold = threshold
        self.cooldown = cooldown
        self.is_open = False
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self._clock = clock

    @property
    def status(self) -> str:
        return "OPEN" if self.is_open else "CLOSED"

    def allow(self) -> bool:
        """False while open and cooling down. A call after the cooldown resets the breaker."""
        if not self.is_open:
            return True
        if self._clock() - self.last_failure_time < self.cooldown:
            return False
        self.reset()
        return True

    def record_failure(self) -> None:
        self.failure_count += 1
        if self.failure_count >= self.threshold:
            if not self.is_open:
                logger.warning(f"Circuit breaker opened after {self.failure_count} failures")
            self.is_open = True
            self.last_failure_time = self._clock()

    def reset(self) -> None:
        if self.is_open or self.failure_count > 0:
            self.is_open = False
            self.failure_count = 0
            self.last_failure_time = None
            logger.info("Circuit breaker reset")

    def snapshot(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "failure_count": self.failure_count,
            "threshold": self.threshold,
            "cooldown": self.cooldown,
        }


@dataclass
class DeliveryMetrics:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    retried_requests: int = 0
    error_types: Dict[str, int] = field(default_factory=dict)
    last_reset: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class DeliveryResult:
    """Outcome of one execute_with_retry call. Always returned, never raised."""
    success: bool
    data: Any = None
    error: Optional[Dict[str, Any]] = None
    attempts: int = 0
    duration: int = 0  # milliseconds
    timestamp: str = field(default_factory=_now_iso)
    queued: bool = False
    payload: Any = None

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        if result["payload"] is None:
            result.pop("payload")
        return result


@dataclass
class QueuedDelivery:
    payload: Any
    error: Dict[str, Any]
    timestamp: str = field(default_factory=_now_iso)
    retry_count: int = 0


def _error_info(kind: str, message: str, **details) -> Dict[str, Any]:
    info = {"type": kind, "message": message, "timestamp": _now_iso()}
    info.update(details)
    return info


class RetryEngine:
    """Runs delivery attempts with backoff, circuit breaking and metrics."""

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or RetryConfig()
        self.breaker = CircuitBreaker(
            self.config.circuit_breaker_threshold,
            self.config.circuit_breaker_cooldown,
            clock=clock,
        )
        self.metrics = DeliveryMetrics()
        self.error_queue: List[QueuedDelivery] = []
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()

    def _log(self, level: str, message: str) -> None:
        if self.config.enable_logging:
            logger.log(level, message)

    def unjittered_delay(self, attempt: int) -> float:
        cfg = self.config
        return min(cfg.base_delay * cfg.exponential_base ** attempt, cfg.max_delay)

    def compute_delay(self, attempt: int) -> float:
        """Backoff before the retry that follows failed attempt ``attempt`` (0-based), in seconds."""
        cfg = self.config
        exponential = cfg.base_delay * cfg.exponential_base ** attempt
        jitter = exponential * cfg.jitter_range * self._rng.uniform(-1, 1)
        return max(min(exponential + jitter, cfg.max_delay), 0.0)

    @staticmethod
    def compute_timeout(attempt: int) -> float:
        """Later attempts get more time, capped at 60 seconds."""
        return min(BASE_TIMEOUT + attempt * TIMEOUT_STEP, MAX_TIMEOUT)

    def _elapsed_ms(self, start: float) -> int:
        return int(round((self._clock() - start) * 1000))

    def _record_error(self, kind: str) -> None:
        if self.config.enable_metrics:
            self.metrics.error_types[kind] = self.metrics.error_types.get(kind, 0) + 1

    async def execute_with_retry(
        self,
        client: DeliveryClient,
        payload: Any,
        options: Optional[Dict[str, Any]] = None,
    ) -> DeliveryResult:
        """
        Deliver one payload, retrying transient failures.

        Args:
            client: Async callable performing a single attempt
            payload: Data to deliver
            options: Extra options passed to the client (e.g. headers)

        Returns:
            DeliveryResult; failures are returned, never raised
        """
        return await self._execute(client, payload, options, enqueue=self.config.fallback_queue)

    async def _execute(
        self,
        client: DeliveryClient,
        payload: Any,
        options: Optional[Dict[str, Any]],
        enqueue: bool,
    ) -> DeliveryResult:
        cfg = self.config
        start = self._clock()

        if not self.breaker.allow():
            self._log("WARNING", "Circuit breaker is open, delivery blocked")
            return DeliveryResult(
                success=False,
                error=_error_info(
                    ErrorKind.CIRCUIT_BREAKER_OPEN,
                    "Circuit breaker is open, requests temporarily blocked",
                    circuit_breaker_cooldown=self.breaker.cooldown,
                ),
            )

        self.metrics.total_requests += 1
        last_error: Optional[ErrorAnalysis] = None
        attempts = 0

        for attempt in range(cfg.max_retries + 1):
            attempts = attempt + 1
            self._log("DEBUG", f"Attempt {attempts}/{cfg.max_retries + 1}")
            attempt_options = dict(options or {})
            attempt_options.update(attempt=attempt, timeout=self.compute_timeout(attempt))

            try:
                data = await client(payload, attempt_options)
            except Exception as e:
                last_error = classify_error(e, cfg.retryable_kinds)
                self._record_error(last_error.kind)
                self._log(
                    "WARNING",
                    f"Attempt {attempts} failed: {last_error.message} "
                    f"(type={last_error.kind}, retryable={last_error.retryable})",
                )

                if not last_error.retryable or attempt == cfg.max_retries:
                    break

                self.breaker.record_failure()
                delay = self.compute_delay(attempt)
                self._log("INFO", f"Waiting {delay:.2f}s before retry")
                await self._sleep(delay)
                continue

            self.metrics.successful_requests += 1
            if attempt > 0:
                self.metrics.retried_requests += 1
            self.breaker.reset()

            duration = self._elapsed_ms(start)
            self._log("INFO", f"Delivery succeeded after {attempts} attempt(s) in {duration}ms")
            return DeliveryResult(success=True, data=data, attempts=attempts, duration=duration)

        self.metrics.failed_requests += 1
        duration = self._elapsed_ms(start)
        error = _error_info(
            last_error.kind,
            last_error.message,
            status_code=last_error.status_code,
            retryable=last_error.retryable,
            severity=last_error.severity,
            attempts=attempts,
            duration=duration,
        )
        result = DeliveryResult(success=False, error=error, attempts=attempts, duration=duration)

        if enqueue:
            self.error_queue.append(QueuedDelivery(payload=payload, error=error))
            result.queued = True
            self._log("INFO", f"Added to error queue ({len(self.error_queue)} items)")

        self._log("ERROR", f"Delivery failed after {attempts} attempt(s): {last_error.kind}")
        return result

    async def execute_batch(
        self,
        client: DeliveryClient,
        payloads: Iterable[Any],
        options: Optional[Dict[str, Any]] = None,
        pause: Optional[float] = None,
    ) -> List[DeliveryResult]:
        """Deliver payloads one after another with a fixed pause between them."""
        pause = self.config.queue_item_delay if pause is None else pause
        items = list(payloads)
        results = []
        for index, payload in enumerate(items):
            self._log("INFO", f"Delivering batch item {index + 1}/{len(items)}")
            results.append(await self.execute_with_retry(client, payload, options))
            if index < len(items) - 1:
                await self._sleep(pause)
        return results

    async def process_error_queue(self, client: DeliveryClient) -> List[DeliveryResult]:
        """
        Drain the fallback queue and retry every item once more.

        Items that still fail go back on the queue; an item that has already
        been reprocessed ``max_queue_retries`` times is dropped instead.
        """
        if not self.error_queue:
            return []

        items = self.error_queue
        self.error_queue = []
        self._log("INFO", f"Processing error queue ({len(items)} items)")

        results: List[DeliveryResult] = []
        for index, item in enumerate(items):
            item.retry_count += 1
            if item.retry_count > self.config.max_queue_retries:
                self._log("WARNING", f"Dropping queued delivery after {item.retry_count - 1} queue retries")
                results.append(DeliveryResult(
                    success=False,
                    error=_error_info(
                        ErrorKind.MAX_QUEUE_RETRIES_EXCEEDED,
                        "Max queue retry attempts exceeded",
                        retry_count=item.retry_count - 1,
                    ),
                    payload=item.payload,
                ))
                continue

            result = await self._execute(client, item.payload, None, enqueue=False)
            results.append(result)
            if not result.success:
                item.error = result.error
                self.error_queue.append(item)

            if index < len(items) - 1:
                await self._sleep(self.config.queue_item_delay)

        return results

    def clear_error_queue(self) -> int:
        cleared = len(self.error_queue)
        self.error_queue = []
        self._log("INFO", f"Cleared {cleared} items from error queue")
        return cleared

    def get_metrics(self) -> Dict[str, Any]:
        m = self.metrics
        now = datetime.now(timezone.utc)
        total = m.total_requests
        return {
            "total_requests": total,
            "successful_requests": m.successful_requests,
            "failed_requests": m.failed_requests,
            "retried_requests": m.retried_requests,
            "error_types": dict(m.error_types),
            "last_reset": m.last_reset.isoformat(),
            "duration": int((now - m.last_reset).total_seconds() * 1000),
            "success_rate": round(m.successful_requests / total * 100, 2) if total else 0.0,
            "retry_rate": round(m.retried_requests / total * 100, 2) if total else 0.0,
            "queue_size": len(self.error_queue),
            "circuit_breaker_status": self.breaker.status,
            "circuit_breaker": self.breaker.snapshot(),
        }

    def reset_metrics(self) -> None:
        """Reset counters. The error queue and breaker state are left alone."""
        self.metrics = DeliveryMetrics()
        self._log("INFO", "Delivery metrics reset")
