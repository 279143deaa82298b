# bigfile/infra/retry.py
import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Backoff:
    """Exponentiële backoff, afgekapt op ``cap``, plus tot ``jitter`` * delay extra."""

    base: float = 0.2
    factor: float = 2.0
    cap: float = 2.0
    jitter: float = 0.25

    def delay(self, attempt: int) -> float:
        delay = min(self.base * (self.factor ** attempt), self.cap)
        return delay + random.uniform(0, delay * self.jitter)


DEFAULT_BACKOFF = Backoff()


def retry_on(
    fn: Callable[[], T],
    *,
    attempts: int = 3,
    backoff: Backoff = DEFAULT_BACKOFF,
    is_retryable: Optional[Callable[[Exception], bool]] = None,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Roep ``fn`` aan tot hij slaagt of ``attempts`` op is; de laatste fout gaat door.
    Fouten waarvoor ``is_retryable`` False geeft gaan direct door.
    """
    attempts = max(attempts, 1)
    for i in range(attempts):
        try:
            return fn()
        except Exception as e:
            if is_retryable and not is_retryable(e):
                raise
            if i == attempts - 1:
                raise
            sleep_s = backoff.delay(i)
            if on_retry:
                on_retry(i + 1, e, sleep_s)
            else:
                logger.warning("retry #%s in %.2fs due to %s", i + 1, sleep_s, repr(e))
            sleep(sleep_s)
    raise AssertionError("unreachable")
