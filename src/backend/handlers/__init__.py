"""
Backend event handlers.

Handlers are reactive: they subscribe to keeper events on the EventBus
and never drive the keeper themselves.
"""

from .metrics_handler import MetricsHandler

__all__ = ['MetricsHandler']
