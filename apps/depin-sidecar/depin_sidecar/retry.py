"""
Retry Policy
============

Bounded exponential backoff for marketplace calls that hit rate limits.

Only rate-limit failures are retried (RateLimited, an HTTP 429 from requests, or
anything whose message mentions "429" / "Too Many Requests"). Every other
exception propagates on the first attempt.

With the defaults (5 retries, 0.5s base) the delays are 0.5, 1, 2, 4, 8 seconds.
"""

from __future__ import annotations
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

import requests

from .errors import RateLimited

log = logging.getLogger(__name__)

T = TypeVar("T")


def is_rate_limited(exc: BaseException) -> bool:
    if isinstance(exc, RateLimited):
        return True
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        if exc.response.status_code == 429:
            return True
    msg = str(exc)
    return "429" in msg or "Too Many Requests" in msg


@dataclass
class RetryPolicy:
    retries:    int                     = 5
    base_delay: float                   = 0.5
    sleep:      Callable[[float], None] = field(default=time.sleep, repr=False)

    def call(self, fn: Callable[[], T]) -> T:
        delay = self.base_delay
        remaining = self.retries
        while True:
            try:
                return fn()
            except Exception as e:
                if remaining <= 0 or not is_rate_limited(e):
                    raise
                log.info(f"[retry] Rate limited, retrying in {delay:.1f}s ({remaining} left)")
                self.sleep(delay)
                delay *= 2
                remaining -= 1

    __call__ = call
