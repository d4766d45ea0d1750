"""Logfire tracing for circulation operations."""

import functools
import inspect
import logging
from collections.abc import Callable
from datetime import datetime

import logfire

from .config import CirculationConfig

logger = logging.getLogger(__name__)


def initialize_observability(config: CirculationConfig) -> None:
    """Configure Logfire for this process."""
    if not config.tracing_enabled:
        logger.debug("Tracing disabled via configuration")
        return

    logfire.configure(
        service_name=config.server_name,
        service_version=config.server_version,
        send_to_logfire=config.send_to_logfire,
        console=False,
    )
    logger.debug("Logfire configured (send_to_logfire=%s)", config.send_to_logfire)


def traced(operation: str):
    """
    Wrap a circulation service method in a Logfire span.

    Simple arguments (ids, limits) become span attributes. The wrapped
    method's owner must carry a ``config`` with ``tracing_enabled``.
    """

    def decorator(func: Callable) -> Callable:
        signature = inspect.signature(func)

        @functools.wraps(func)
        def wrapper(self, *args, **kwargs):
            if not self.config.tracing_enabled:
                return func(self, *args, **kwargs)

            bound = signature.bind(self, *args, **kwargs)
            attributes = {
                f"circulation.{name}": value
                for name, value in bound.arguments.items()
                if name != "self" and isinstance(value, str | int | float | bool)
            }

            with logfire.span(
                f"circulation.{operation}", operation=operation, **attributes
            ) as span:
                start_time = datetime.now()
                try:
                    result = func(self, *args, **kwargs)
                except Exception as e:
                    span.set_attribute("circulation.success", False)
                    span.set_attribute("circulation.error", type(e).__name__)
                    raise

                span.set_attribute("circulation.success", True)
                span.set_attribute(
                    "circulation.duration_ms",
                    (datetime.now() - start_time).total_seconds() * 1000,
                )
                return result

        return wrapper

    return decorator
