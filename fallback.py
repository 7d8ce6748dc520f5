"""
Circuit-Breaking Fallback Decider - wraps the provider chain, never fails.

STATE MACHINE:
    CLOSED     requests go to the orchestrator (bounded retry + hard timeout per attempt)
               success -> consecutive_failures = 0
               failure -> consecutive_failures += 1, at FAILURE_THRESHOLD -> OPEN
    OPEN       requests are answered from the static table, zero provider calls
               a one-shot recovery timer (RECOVERY_DELAY_SECONDS) is armed
    HALF_OPEN  the recovery timer is probing providers; requests still go static
               any provider healthy -> CLOSED, otherwise -> OPEN and re-arm

    Circuit-open is a routing decision, not an error. explain() always
    returns an Explanation.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import metrics
import static_errors
from config import ATTEMPT_TIMEOUT_SECONDS
from models import Explanation
from orchestrator import MultiProviderOrchestrator
from scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

FAILURE_THRESHOLD = 3
RECOVERY_DELAY_SECONDS = 60
MAX_ATTEMPTS = 2
RETRY_DELAY_SECONDS = 1.0


class CircuitBreakerState(Enum):
    """Circuit breaker state machine."""
    CLOSED = "closed"          # Normal operation
    OPEN = "open"              # Failing - static answers only
    HALF_OPEN = "half_open"    # Recovery probe in flight


class Route(Enum):
    """Where a request was answered from."""
    PROVIDERS = "providers"
    STATIC_CIRCUIT_OPEN = "static_circuit_open"
    STATIC_AFTER_FAILURE = "static_after_failure"


@dataclass
class FallbackState:
    """Process-wide breaker state."""

    circuit_open: bool = False
    probing: bool = False
    consecutive_failures: int = 0
    last_attempt: Optional[float] = None
    recovery_timer: Optional[TimerHandle] = None


class FallbackDecider:
    """Circuit breaker in front of the multi-provider orchestrator."""

    def __init__(
        self,
        orchestrator: MultiProviderOrchestrator,
        scheduler: Scheduler,
        failure_threshold: int = FAILURE_THRESHOLD,
        recovery_delay: float = RECOVERY_DELAY_SECONDS,
        max_attempts: int = MAX_ATTEMPTS,
        retry_delay: float = RETRY_DELAY_SECONDS,
        attempt_timeout: float = ATTEMPT_TIMEOUT_SECONDS,
    ):
        self.orchestrator = orchestrator
        self.scheduler = scheduler
        self.failure_threshold = failure_threshold
        self.recovery_delay = recovery_delay
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.attempt_timeout = attempt_timeout
        self.state = FallbackState()

    @property
    def circuit_state(self) -> CircuitBreakerState:
        if not self.state.circuit_open:
            return CircuitBreakerState.CLOSED
        if self.state.probing:
            return CircuitBreakerState.HALF_OPEN
        return CircuitBreakerState.OPEN

    async def explain(self, code: int, context: Optional[str] = None) -> Explanation:
        """Provider answer while CLOSED, static answer otherwise. Never raises."""
        explanation, _route = await self.decide(code, context)
        return explanation

    async def decide(self, code: int, context: Optional[str] = None) -> tuple[Explanation, Route]:
        """Same as explain(), also reporting which route produced the answer."""
        if self.state.circuit_open:
            logger.info(f"Circuit {self.circuit_state.value}: static answer for code {code}")
            return self._static(code), Route.STATIC_CIRCUIT_OPEN

        try:
            result = await self._attempt_with_retry(code, context)
        except Exception as e:
            logger.warning(f"Provider chain failed for code {code}: {type(e).__name__}: {e}")
            self._record_failure()
            return self._static(code), Route.STATIC_AFTER_FAILURE

        self._record_success()
        return result, Route.PROVIDERS

    async def _attempt_with_retry(self, code: int, context: Optional[str]) -> Explanation:
        """
        Up to max_attempts orchestrator calls, each under a hard timeout, linear backoff between.

        A failed attempt marks every provider it tried as unhealthy, and nothing
        probes them during the backoff. The next attempt therefore skips them and
        ends in AllProvidersUnavailableError unless a probe has already brought one
        back. A provider cut off by the attempt timeout is not marked and is
        called again.
        """
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await asyncio.wait_for(self.orchestrator.explain(code, context), timeout=self.attempt_timeout)
            except asyncio.TimeoutError as e:
                last_error = e
                logger.warning(f"Provider chain attempt {attempt}/{self.max_attempts} timed out after {self.attempt_timeout}s")
            except Exception as e:
                last_error = e
                logger.warning(f"Provider chain attempt {attempt}/{self.max_attempts} failed: {e}")

            if attempt < self.max_attempts:
                await self.scheduler.sleep(self.retry_delay * attempt)

        raise last_error

    def record_abandoned(self, code: int) -> None:
        """Charge a request whose provider chain was cancelled by the caller's deadline."""
        if self.state.circuit_open:
            return
        logger.warning(f"Provider chain abandoned for code {code}, counting as failure")
        self._record_failure()

    def _static(self, code: int) -> Explanation:
        explanation = static_errors.explain_error(code)
        logger.info(f"Using static fallback for error code {code}")
        return explanation

    def _record_success(self) -> None:
        if self.state.circuit_open:
            logger.info("Circuit breaker: CLOSED - in-flight request succeeded")
            self.stop()
            self.state.circuit_open = False
            metrics.record_circuit_state(self.circuit_state.value)
        self.state.consecutive_failures = 0
        self.state.last_attempt = self.scheduler.now()

    def _record_failure(self) -> None:
        self.state.consecutive_failures += 1
        self.state.last_attempt = self.scheduler.now()
        if not self.state.circuit_open and self.state.consecutive_failures >= self.failure_threshold:
            self.state.circuit_open = True
            logger.error(f"Circuit breaker: OPEN - {self.state.consecutive_failures} consecutive failures")
            metrics.record_circuit_state(self.circuit_state.value)
            self._arm_recovery_timer()

    def _arm_recovery_timer(self) -> None:
        if self.state.recovery_timer is not None:
            self.state.recovery_timer.cancel()
        self.state.recovery_timer = self.scheduler.call_later(
            self.recovery_delay, self._recovery_probe, name="circuit-recovery"
        )

    async def _recovery_probe(self) -> None:
        self.state.recovery_timer = None
        if not self.state.circuit_open:
            return

        self.state.probing = True
        metrics.record_circuit_state(self.circuit_state.value)
        try:
            results = await self.orchestrator.probe_all()
            recovered = any(results.values())
        except Exception as e:
            logger.warning(f"Circuit recovery probe failed: {e}")
            recovered = False
        finally:
            self.state.probing = False

        if recovered:
            self.state.circuit_open = False
            self.state.consecutive_failures = 0
            logger.info("Circuit breaker: CLOSED - provider recovery detected")
        else:
            logger.warning(f"Circuit breaker: still OPEN, next probe in {self.recovery_delay}s")
            self._arm_recovery_timer()
        metrics.record_circuit_state(self.circuit_state.value)

    def stop(self) -> None:
        if self.state.recovery_timer is not None:
            self.state.recovery_timer.cancel()
            self.state.recovery_timer = None

    def stats(self) -> dict:
        return {
            "state": self.circuit_state.value,
            "consecutive_failures": self.state.consecutive_failures,
            "last_attempt": self.state.last_attempt,
            "failure_threshold": self.failure_threshold,
            "recovery_pending": self.state.recovery_timer is not None,
            "preferred_provider": self.orchestrator.preferred_provider(),
            "static_codes": len(static_errors.available_codes()),
        }
