"""
Provider client interface shared by the card and mobile-money rails.

Implements:
- One async shape for initiating a payment and querying its status
- Circuit breaker that fails fast while a provider is unreachable
"""
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import structlog

from ticket_payments.core.errors import ProviderUnreachable
from ticket_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class QueryOutcome(Enum):
    """Provider's verdict on a payment, as reported by a status query."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"
    CANCELLED = "cancelled"


@dataclass
class InitiationResult:
    """Synchronous answer to an initiation request (acceptance, not payment)."""

    accepted: bool
    correlation_ids: Dict[str, str]
    human_message: str
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StatusQueryResult:
    """Provider-reported status of one payment."""

    outcome: QueryOutcome
    result_code: Optional[str]
    result_description: Optional[str]
    raw_result: Dict[str, Any] = field(default_factory=dict)


class CircuitBreaker:
    """
    Circuit breaker for outbound provider calls.

    Only transport failures (``ProviderUnreachable``) count against the
    circuit; a provider saying no is a healthy answer. While open, calls
    fail immediately with ``ProviderUnreachable`` so the caller falls back
    to last-known local state.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        timeout: float = 60.0,
        success_threshold: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Provider name, used in logs and errors
            failure_threshold: Consecutive failures before opening circuit
            timeout: Seconds before a half-open probe is allowed
            success_threshold: Successful probes needed to close circuit
            clock: Monotonic time source
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open
        self._clock = clock

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Await ``func()`` with circuit breaker protection.

        Raises:
            ProviderUnreachable: If the circuit is open, or the call itself was
                unreachable
        """
        if self.state == "open":
            if (
                self.last_failure_time is not None
                and self._clock() - self.last_failure_time >= self.timeout
            ):
                self.state = "half_open"
                self.success_count = 0
                metrics.set_circuit_breaker_state(self.name, self.state)
                logger.info("circuit_breaker_half_open", provider=self.name)
            else:
                raise ProviderUnreachable(
                    f"{self.name} circuit breaker is open", provider=self.name
                )

        try:
            result = await func()
        except ProviderUnreachable:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = "closed"
                metrics.set_circuit_breaker_state(self.name, self.state)
                logger.info("circuit_breaker_closed", provider=self.name)

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = self._clock()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            if self.state != "open":
                logger.warning(
                    "circuit_breaker_opened",
                    provider=self.name,
                    failure_count=self.failure_count,
                )
            self.state = "open"
            metrics.set_circuit_breaker_state(self.name, self.state)


class ProviderClient(ABC):
    """
    Outbound calls to one payment provider.

    Implementations raise ``ProviderRejected`` when the provider declines a
    request synchronously and ``ProviderUnreachable`` on network failure or
    timeout. A timeout is never a verdict on the payment.
    """

    name: str = "provider"

    @abstractmethod
    async def initiate(
        self,
        payer: str,
        amount: float,
        reference: str,
        description: str,
        **context: Any,
    ) -> InitiationResult:
        """Ask the provider to start a payment."""

    @abstractmethod
    async def query_status(self, correlation_id: str) -> StatusQueryResult:
        """Ask the provider for the authoritative status of a payment."""

    async def health_check(self) -> bool:
        """Return True if the provider looks reachable. Defaults to the circuit state."""
        breaker: Optional[CircuitBreaker] = getattr(self, "circuit_breaker", None)
        return breaker is None or breaker.state != "open"

    async def close(self) -> None:
        """Release any network resources."""
        return None
