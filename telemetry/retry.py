from __future__ import annotations

import random
import time
from typing import Callable, Iterable, Optional, Type, TypeVar

from telemetry.logging_utils import get_logger

T = TypeVar("T")

logger = get_logger(__name__)


def _compute_backoff(attempt: int, base_delay: float, factor: float, jitter: float) -> float:
    delay = base_delay * (factor ** attempt)
    if jitter:
        delay += random.uniform(0, jitter)
    return delay


def retry_with_backoff(
    fn: Callable[[], T],
    *,
    retries: int = 3,
    base_delay: float = 0.25,
    factor: float = 2.0,
    jitter: float = 0.05,
    retry_exceptions: Iterable[Type[BaseException]] = (Exception,),
    operation: Optional[str] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn`` until it succeeds or ``retries`` attempts are used; the last error propagates."""
    retry_on = tuple(retry_exceptions)
    attempts = max(1, retries)
    for attempt in range(attempts):
        try:
            return fn()
        except retry_on as exc:
            if attempt >= attempts - 1:
                raise
            delay = _compute_backoff(attempt, base_delay, factor, jitter)
            logger.warning(
                "retry_scheduled",
                extra={
                    "operation": operation,
                    "attempt": attempt + 1,
                    "delay_s": round(delay, 3),
                    "error_type": type(exc).__name__,
                },
            )
            sleep(delay)
    raise AssertionError("unreachable")
