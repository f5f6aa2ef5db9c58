"""
shared/utils/resilience.py
Circuit breakers for outbound notification providers (Resend, Twilio).
Calls are synchronous and run inside Celery workers.
"""

import logging
from typing import Dict

from pybreaker import CircuitBreaker, CircuitBreakerListener

logger = logging.getLogger(__name__)


class LoggingListener(CircuitBreakerListener):
    """Logs breaker state transitions."""

    def state_change(self, cb, old_state, new_state):
        logger.warning(
            f"Circuit breaker '{cb.name}' changed from "
            f"{old_state.name if old_state else None} to {new_state.name}"
        )


class CircuitBreakerManager:
    """Manages circuit breakers for each downstream service."""

    def __init__(self, fail_max: int = 5, reset_timeout: int = 60):
        self.fail_max = fail_max
        self.reset_timeout = reset_timeout
        self.breakers: Dict[str, CircuitBreaker] = {}

    def get_breaker(self, service_name: str) -> CircuitBreaker:
        """Get or create a circuit breaker for a service."""
        if service_name not in self.breakers:
            self.breakers[service_name] = CircuitBreaker(
                fail_max=self.fail_max,          # Open after 5 failures
                reset_timeout=self.reset_timeout,  # Try again after 60 seconds
                listeners=[LoggingListener()],
                name=service_name,
            )
        return self.breakers[service_name]

    def states(self) -> Dict[str, str]:
        return {name: breaker.current_state for name, breaker in self.breakers.items()}


circuit_breaker_manager = CircuitBreakerManager()
