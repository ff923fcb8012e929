"""
Outbound WhatsApp gateway contract and the guards every provider shares.

A provider client (ZapiGateway, MockGateway) implements MessagingGateway.
The factory then wraps it in RateLimitedGateway, which holds per-session
send budgets: a per-minute token bucket and a rolling hourly cap. A send
over budget comes back as a failed SendResult without reaching the
provider. Clients keep their own CircuitBreaker and GatewayMetrics.
"""
from __future__ import annotations

import abc
import time
import structlog
from collections import defaultdict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from models.schemas import MessagingSession, SendResult

logger = structlog.get_logger()

RATE_LIMITED = "rate_limited"


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class GatewayError(Exception):
    """A provider call that could not be completed."""

    def __init__(self, message: str, session_id: str = "", retryable: bool = False):
        self.session_id = session_id
        self.retryable = retryable
        super().__init__(message)


class NoActiveSessionError(GatewayError):
    def __init__(self, tenant_id: str = ""):
        self.tenant_id = tenant_id
        super().__init__(f"tenant {tenant_id} has no active messaging session", retryable=True)


# ══════════════════════════════════════════════════════════════
#  SEND BUDGETS
# ══════════════════════════════════════════════════════════════

class MinuteBucket:
    """Non-blocking token bucket holding up to `per_minute` sends, refilled continuously."""

    def __init__(self, per_minute: int):
        self.capacity = float(per_minute)
        self._refill_per_s = per_minute / 60.0
        self._tokens = self.capacity
        self._stamp = time.monotonic()

    def try_take(self) -> bool:
        now = time.monotonic()
        self._tokens = min(self.capacity, self._tokens + (now - self._stamp) * self._refill_per_s)
        self._stamp = now
        if self._tokens < 1.0:
            return False
        self._tokens -= 1.0
        return True


class HourlyWindow:
    """At most `limit` sends inside any trailing `window_s` seconds."""

    def __init__(self, limit: int, window_s: float = 3600.0):
        self.limit = limit
        self.window_s = window_s
        self._sent_at: deque[float] = deque()

    def _expire(self, now: float) -> None:
        horizon = now - self.window_s
        while self._sent_at and self._sent_at[0] <= horizon:
            self._sent_at.popleft()

    def try_acquire(self) -> bool:
        now = time.monotonic()
        self._expire(now)
        if len(self._sent_at) >= self.limit:
            return False
        self._sent_at.append(now)
        return True

    @property
    def used(self) -> int:
        return len(self._sent_at)


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Stops calling a provider after `failure_threshold` consecutive failures.

    Once `recovery_timeout` seconds pass the breaker reports HALF_OPEN and
    lets one probe through; its outcome closes or re-opens the circuit.
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> BreakerState:
        if self._opened_at is None:
            return BreakerState.CLOSED
        if time.monotonic() - self._opened_at >= self.recovery_timeout:
            return BreakerState.HALF_OPEN
        return BreakerState.OPEN

    @property
    def is_open(self) -> bool:
        return self.state is BreakerState.OPEN

    def record_failure(self) -> None:
        self._consecutive_failures += 1
        probing = self.state is BreakerState.HALF_OPEN
        if probing or self._consecutive_failures >= self.failure_threshold:
            self._opened_at = time.monotonic()
            logger.warning("gateway_circuit_opened",
                           failures=self._consecutive_failures, after_probe=probing)

    def record_success(self) -> None:
        if self._opened_at is not None:
            logger.info("gateway_circuit_closed")
        self._consecutive_failures = 0
        self._opened_at = None


# ══════════════════════════════════════════════════════════════
#  METRICS
# ══════════════════════════════════════════════════════════════

@dataclass
class GatewayMetrics:
    name: str
    sent: int = 0
    failed: int = 0
    _latency_total_ms: float = 0.0
    _latency_samples: int = 0
    _recent_errors: deque = field(default_factory=lambda: deque(maxlen=10))

    def record_send(self, latency_ms: float = 0.0) -> None:
        self.sent += 1
        if latency_ms > 0:
            self._latency_total_ms += latency_ms
            self._latency_samples += 1

    def record_failure(self, error: str = "") -> None:
        self.failed += 1
        if error:
            self._recent_errors.append(error)

    def to_dict(self) -> dict[str, Any]:
        attempts = self.sent + self.failed
        return {
            "gateway": self.name,
            "sent": self.sent,
            "failed": self.failed,
            "avg_latency_ms": round(self._latency_total_ms / self._latency_samples, 1)
            if self._latency_samples else 0.0,
            "failure_rate": round(self.failed / attempts, 4) if attempts else 0.0,
            "recent_errors": list(self._recent_errors),
        }


# ══════════════════════════════════════════════════════════════
#  GATEWAY CONTRACT
# ══════════════════════════════════════════════════════════════

class MessagingGateway(abc.ABC):
    """Text, image and video sends through one provider. Failures come back as SendResult."""

    name: str = "gateway"

    @abc.abstractmethod
    async def send_text(self, session: MessagingSession, phone: str, text: str) -> SendResult:
        ...

    @abc.abstractmethod
    async def send_image(self, session: MessagingSession, phone: str, url: str) -> SendResult:
        ...

    @abc.abstractmethod
    async def send_video(self, session: MessagingSession, phone: str, url: str) -> SendResult:
        ...

    async def health_check(self) -> dict[str, Any]:
        return {"gateway": self.name}

    async def close(self) -> None:
        pass


class RateLimitedGateway(MessagingGateway):
    """Per-session send budgets in front of another gateway."""

    def __init__(self, inner: MessagingGateway, rate_per_minute: int = 10, max_per_hour: int = 100):
        self.inner = inner
        self.name = inner.name
        self.rate_per_minute = rate_per_minute
        self.max_per_hour = max_per_hour
        self._minute: dict[str, MinuteBucket] = defaultdict(lambda: MinuteBucket(rate_per_minute))
        self._hour: dict[str, HourlyWindow] = defaultdict(lambda: HourlyWindow(max_per_hour))

    def _over_budget(self, session: MessagingSession) -> Optional[str]:
        if not self._minute[session.id].try_take():
            return "minute"
        if not self._hour[session.id].try_acquire():
            return "hour"
        return None

    async def _guarded(self, session: MessagingSession, send, *args) -> SendResult:
        exceeded = self._over_budget(session)
        if exceeded:
            logger.warning("gateway_rate_limited", session_id=session.id, window=exceeded)
            return SendResult(success=False, error=RATE_LIMITED)
        return await send(session, *args)

    async def send_text(self, session: MessagingSession, phone: str, text: str) -> SendResult:
        return await self._guarded(session, self.inner.send_text, phone, text)

    async def send_image(self, session: MessagingSession, phone: str, url: str) -> SendResult:
        return await self._guarded(session, self.inner.send_image, phone, url)

    async def send_video(self, session: MessagingSession, phone: str, url: str) -> SendResult:
        return await self._guarded(session, self.inner.send_video, phone, url)

    async def health_check(self) -> dict[str, Any]:
        health = await self.inner.health_check()
        health["rate_limits"] = {
            "per_minute": self.rate_per_minute,
            "per_hour": self.max_per_hour,
            "sessions": {session_id: window.used for session_id, window in self._hour.items()},
        }
        return health

    async def close(self) -> None:
        await self.inner.close()
