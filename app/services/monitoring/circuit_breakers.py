"""
Circuit Breaker Implementation for Blob Store Dependencies

Protects against cascading failures by opening circuits after consecutive failures
and automatically attempting recovery after a timeout period.

Services protected:
- Local filesystem blob store
- Google Cloud Storage blob store
"""

import logging
from typing import Dict, Optional

import pybreaker

from app.config import settings

logger = logging.getLogger(__name__)

KNOWN_SERVICES = ("local_storage", "gcs")


class CircuitBreakerLogListener(pybreaker.CircuitBreakerListener):
    """
    Logging listener for circuit breaker state changes.

    An open circuit means every upload and delete for that backend fails
    fast; the reconciler reports those items as store failures.
    """

    def state_change(self, cb: pybreaker.CircuitBreaker, old_state: pybreaker.CircuitBreakerState, new_state: pybreaker.CircuitBreakerState):
        """
        Handle circuit breaker state changes.

        Args:
            cb: The circuit breaker instance
            old_state: Previous state
            new_state: New state
        """
        old_name = old_state.name if old_state is not None else "none"
        extra = {
            "circuit_breaker": cb.name,
            "old_state": old_name,
            "new_state": new_state.name,
            "fail_count": cb.fail_counter,
        }

        if new_state.name == pybreaker.STATE_OPEN:
            logger.error(
                f"Circuit breaker opened: {cb.name} isolated for {cb.reset_timeout} seconds",
                extra=extra
            )
        else:
            logger.warning(
                f"Circuit breaker state change: {cb.name} transitioned from {old_name} to {new_state.name}",
                extra=extra
            )


def _create_breaker(name: str, listener: CircuitBreakerLogListener) -> pybreaker.CircuitBreaker:
    """
    Create a circuit breaker with configured thresholds.

    Args:
        name: Service name for the circuit breaker
        listener: State change listener

    Returns:
        Configured CircuitBreaker instance
    """
    return pybreaker.CircuitBreaker(
        name=name,
        fail_max=settings.circuit_breaker_fail_max,
        reset_timeout=settings.circuit_breaker_reset_timeout,
        listeners=[listener]
    )


# Module-level instances (lazy initialization)
_listener: Optional[CircuitBreakerLogListener] = None
_breakers: Dict[str, pybreaker.CircuitBreaker] = {}


def get_breaker(service_name: str) -> pybreaker.CircuitBreaker:
    """
    Get circuit breaker for a specific service.

    Lazy initializes breakers on first access to avoid import-time side effects.

    Args:
        service_name: Service name ("local_storage" or "gcs")

    Returns:
        Circuit breaker instance for the service

    Raises:
        ValueError: If service_name is not recognized
    """
    global _listener

    if service_name not in KNOWN_SERVICES:
        raise ValueError(f"Unknown service name: {service_name}. Must be one of {', '.join(KNOWN_SERVICES)}")

    if _listener is None:
        _listener = CircuitBreakerLogListener()

    if service_name not in _breakers:
        _breakers[service_name] = _create_breaker(service_name, _listener)
        logger.info(f"Initialized {service_name} circuit breaker")

    return _breakers[service_name]


# Re-export exception for caller handling
from pybreaker import CircuitBreakerError

__all__ = [
    "CircuitBreakerLogListener",
    "get_breaker",
    "CircuitBreakerError",
]
