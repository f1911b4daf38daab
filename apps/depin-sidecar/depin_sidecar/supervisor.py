"""
Task Supervisor
===============

Owns the sidecar's background threads: one per watched job, one per
confidential handoff. Threads are daemons so a SIGKILL never hangs on them;
a target that raises is logged with its traceback instead of dying silently.
"""

from __future__ import annotations
import logging
import threading
import time
from typing import Callable, Optional

log = logging.getLogger(__name__)


class TaskSupervisor:
    def __init__(self):
        self._lock    = threading.Lock()
        self._threads: dict[str, threading.Thread] = {}

    def spawn(self, name: str, target: Callable, *args, **kwargs) -> threading.Thread:
        def _run():
            try:
                target(*args, **kwargs)
            except Exception:
                log.exception(f"[supervisor] Task {name} crashed")
            finally:
                with self._lock:
                    if self._threads.get(name) is threading.current_thread():
                        self._threads.pop(name, None)

        t = threading.Thread(target=_run, name=name, daemon=True)
        with self._lock:
            self._threads[name] = t
        t.start()
        return t

    def active(self) -> list[str]:
        with self._lock:
            return [name for name, t in self._threads.items() if t.is_alive()]

    def join(self, timeout: Optional[float] = None):
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._lock:
            threads = list(self._threads.values())
        for t in threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            t.join(remaining)
