"""
Reliability utilities.

Circuit breaker guarding calls to the telematics device API.
"""

import logging
import time
from typing import Callable, Any

logger = logging.getLogger("fleetrental.reliability")


class CircuitOpenError(Exception):
    pass


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    After ``failure_threshold`` failures in a row the circuit opens and
    rejects calls for ``reset_timeout`` seconds, then lets one trial call
    through (HALF_OPEN). A success closes it again.
    """
    def __init__(self, failure_threshold: int = 5, reset_timeout: int = 60, name: str = "device_api"):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.name = name
        self.failures = 0
        self.last_failure_time = 0
        self.state = "CLOSED"  # CLOSED, OPEN, HALF_OPEN

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        if self.state == "OPEN":
            if time.time() - self.last_failure_time > self.reset_timeout:
                self.state = "HALF_OPEN"
                logger.info("Circuit %s half-open, sending a trial call", self.name)
            else:
                raise CircuitOpenError(f"Circuit {self.name} is OPEN")

        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.reset_state()
        return result

    def record_failure(self):
        self.failures += 1
        self.last_failure_time = time.time()
        if self.state != "OPEN" and (self.state == "HALF_OPEN" or self.failures >= self.failure_threshold):
            self.state = "OPEN"
            logger.warning(
                "Circuit %s opened after %d failures, pausing calls for %ss",
                self.name, self.failures, self.reset_timeout
            )

    def reset_state(self):
        if self.state != "CLOSED":
            logger.info("Circuit %s closed", self.name)
        self.failures = 0
        self.state = "CLOSED"
