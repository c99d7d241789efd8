import time
import logging

from scene_import.errors import ImportTimeoutError

logger = logging.getLogger(__name__)


class Deadline:
    """Cumulative soft deadline for one run. `timeout_ms <= 0` disables it."""

    def __init__(self, timeout_ms: int, clock=time.monotonic):
        self.timeout_ms = timeout_ms
        self._clock = clock
        self.started_at = clock()

    @property
    def elapsed_ms(self) -> float:
        return (self._clock() - self.started_at) * 1000

    def expired(self) -> bool:
        return self.timeout_ms > 0 and self.elapsed_ms > self.timeout_ms

    def check(self, step: str):
        if self.expired():
            logger.warning("Soft deadline of %d ms exceeded at %s", self.timeout_ms, step)
            raise ImportTimeoutError(
                "Processing took too long (timeout). Try again with fewer pages.",
                details=f"soft deadline {self.timeout_ms} ms exceeded at {step}",
            )
