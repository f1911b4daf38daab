"""
Watch Registry
==============

The only state shared between watch threads: job address → WatchedJob.

Each watch loop writes only its own entry; the lock just keeps insert / lookup /
delete consistent and is never held across a network call. A watch loop that
finds its entry gone stops at its next tick.
"""

from __future__ import annotations
import logging
import threading
from typing import Optional

from .models import WatchedJob

log = logging.getLogger(__name__)


class WatchRegistry:
    def __init__(self):
        self._lock = threading.Lock()
        self._jobs: dict[str, WatchedJob] = {}

    def add(self, job: WatchedJob) -> bool:
        """Insert a new entry. Refuses (returns False) if the address is already watched."""
        with self._lock:
            if job.job_address in self._jobs:
                return False
            self._jobs[job.job_address] = job
            return True

    def get(self, job_address: str) -> Optional[WatchedJob]:
        with self._lock:
            return self._jobs.get(job_address)

    def __contains__(self, job_address: str) -> bool:
        with self._lock:
            return job_address in self._jobs

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def remove(self, job_address: str) -> Optional[WatchedJob]:
        with self._lock:
            return self._jobs.pop(job_address, None)

    def addresses(self) -> list[str]:
        with self._lock:
            return list(self._jobs)

    def mark_user_stopped(self, job_address: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_address)
            if job is None:
                return False
            job.user_stopped = True
        log.info(f"[user-stop] Marked job {job_address} as user-stopped")
        return True

    def record_service_url(self, job_address: str, url: str) -> bool:
        """Set the service URL unless one was already resolved. First resolution wins."""
        with self._lock:
            job = self._jobs.get(job_address)
            if job is None or job.service_url:
                return False
            job.service_url = url
            return True
