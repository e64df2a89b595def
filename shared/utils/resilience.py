"""
shared/utils/resilience.py
Circuit breakers for outbound delivery channels (FCM, Twilio, Resend).
"""

import logging
from typing import Any, Callable

from pybreaker import CircuitBreaker, CircuitBreakerListener
from starlette.concurrency import run_in_threadpool

logger = logging.getLogger(__name__)


class LoggingListener(CircuitBreakerListener):
    """Logs breaker state changes so an open channel shows up in the JSON logs."""

    def state_change(self, cb, old_state, new_state):
        logger.warning(
            f"Circuit breaker '{cb.name}' changed from "
            f"{old_state.name if old_state else None} to {new_state.name}"
        )

    def failure(self, cb, exc):
        logger.warning(f"Circuit breaker '{cb.name}' recorded failure: {exc}")


class CircuitBreakerManager:
    """Manages circuit breakers for each downstream service."""

    def __init__(self, fail_max: int = 5, reset_timeout: int = 60):
        self.fail_max = fail_max
        self.reset_timeout = reset_timeout
        self.breakers: dict[str, CircuitBreaker] = {}

    def get_breaker(self, service_name: str) -> CircuitBreaker:
        """Get or create a circuit breaker for a service."""
        if service_name not in self.breakers:
            self.breakers[service_name] = CircuitBreaker(
                fail_max=self.fail_max,
                reset_timeout=self.reset_timeout,
                name=service_name,
                listeners=[LoggingListener()],
            )
        return self.breakers[service_name]

    def call(self, service_name: str, func: Callable, *args, **kwargs) -> Any:
        """Synchronous guarded call (Celery workers)."""
        return self.get_breaker(service_name).call(func, *args, **kwargs)

    async def call_async(self, service_name: str, func: Callable, *args, **kwargs) -> Any:
        """Run a blocking SDK call through the breaker without blocking the event loop."""
        return await run_in_threadpool(self.call, service_name, func, *args, **kwargs)

    def status(self) -> dict[str, str]:
        return {name: breaker.current_state for name, breaker in self.breakers.items()}


circuit_breaker_manager = CircuitBreakerManager()
