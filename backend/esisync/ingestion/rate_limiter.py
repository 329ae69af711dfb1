"""
Cross-job rate limiter for upstream resource classes.

Every task touching a resource class (e.g. "market-history") shares one
fixed window. A caller that is refused does not wait: it gets the time
left until the window closes and reschedules itself.
"""

import logging
from dataclasses import dataclass
from typing import Union

from esisync.ingestion.shared_store import WindowCounterStore

logger = logging.getLogger(__name__)

RATE_LIMIT_KEY_PREFIX = "rate_limit"


@dataclass(frozen=True)
class Admitted:
    """The call was counted against the current window."""


@dataclass(frozen=True)
class Throttled:
    """The window is full; retry_after is the time left in it (seconds)."""
    retry_after: float


AcquireResult = Union[Admitted, Throttled]


class RateLimiter:
    """Fixed-window limiter over a shared WindowCounterStore."""

    def __init__(
        self,
        store: WindowCounterStore,
        key_prefix: str = RATE_LIMIT_KEY_PREFIX,
    ):
        self.store = store
        self.key_prefix = key_prefix

    def key_for(self, resource_class: str) -> str:
        return f"{self.key_prefix}.{resource_class}"

    def try_acquire(
        self,
        resource_class: str,
        ceiling: int,
        window_seconds: float,
    ) -> AcquireResult:
        """
        Try to count one call for resource_class.

        Args:
            resource_class: Name of the shared window
            ceiling: Max calls admitted per window
            window_seconds: Window length

        Returns:
            Admitted, or Throttled with the seconds until the window resets

        Raises:
            ValueError: If ceiling or window_seconds is not positive
        """
        if ceiling <= 0:
            raise ValueError(f"ceiling must be positive, got {ceiling}")
        if window_seconds <= 0:
            raise ValueError(f"window_seconds must be positive, got {window_seconds}")

        admitted, remaining = self.store.increment_within_window(
            self.key_for(resource_class),
            ceiling,
            window_seconds,
        )
        if admitted:
            return Admitted()

        logger.debug(
            "Rate limit window full",
            extra={
                "resource_class": resource_class,
                "ceiling": ceiling,
                "retry_after": remaining,
            },
        )
        return Throttled(retry_after=remaining)
