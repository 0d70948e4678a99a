"""
Correlation ID Middleware
Tags every request with an id that appears in all of its log lines
"""

from asgi_correlation_id import CorrelationIdMiddleware
from asgi_correlation_id.context import correlation_id

# Re-export CorrelationIdMiddleware for convenience
__all__ = ["CorrelationIdMiddleware", "get_correlation_id"]


def get_correlation_id() -> str:
    """
    Get current correlation ID from async context.

    Threads started by the reconciler's executor do not inherit the request
    context; read the id here before handing work off if it must be logged.

    Returns:
        str: The correlation ID or 'none' if not available
    """
    return correlation_id.get() or 'none'
