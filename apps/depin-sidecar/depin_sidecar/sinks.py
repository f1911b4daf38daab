"""
Heartbeat & Audit Sinks
=======================

Two one-way collaborators the watchdog reports to:

  - Orchestrator inventory:  POST {orchestrator}/inventory/heartbeat
  - Audit log:               POST {audit}/audit/internal/log

Neither is on the correctness path. Calls are handed to a small shared thread
pool and forgotten; a failure is logged and dropped. The pool size bounds how
many of these requests can be in flight at once.
"""

from __future__ import annotations
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

import requests

from .models import ResourceProfile

log = logging.getLogger(__name__)

DEFAULT_PROVIDER = "nosana"


# ─── Heartbeat Payloads ───────────────────────────────────────────────────────

def heartbeat_payload(
    job_address:     str,
    state:           str,
    resources:       Optional[ResourceProfile] = None,
    health_score:    int                       = 0,
    expose_url:      Optional[str]             = None,
    old_job_address: Optional[str]             = None,
    provider:        str                       = DEFAULT_PROVIDER,
) -> dict:
    """
    Build one inventory heartbeat. `failed` and `terminated` always report zero
    allocation and zero health, whatever the caller passes.
    """
    if state in ("failed", "terminated") or resources is None:
        resources    = ResourceProfile(gpu=0, vcpu=0, ram_gb=0)
    if state in ("failed", "terminated"):
        health_score = 0

    payload = {
        "provider":             provider,
        "provider_instance_id": job_address,
        **resources.to_heartbeat_fields(),
        "health_score":         health_score,
        "state":                state,
    }
    if expose_url:
        payload["expose_url"] = expose_url
    if old_job_address:
        payload["old_provider_instance_id"] = old_job_address
    return payload


# ─── Dispatch ─────────────────────────────────────────────────────────────────

class _DetachedSink:
    def __init__(
        self,
        executor: Optional[ThreadPoolExecutor] = None,
        session:  Optional[requests.Session]   = None,
        timeout:  int                          = 5,
    ):
        self._executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="sink")
        self._session  = session or requests.Session()
        self.timeout   = timeout

    def _dispatch(self, fn, *args) -> Optional[Future]:
        try:
            return self._executor.submit(fn, *args)
        except RuntimeError as e:
            # executor already shut down
            log.debug(f"Sink dispatch skipped: {e}")
            return None

    def shutdown(self, wait: bool = False):
        self._executor.shutdown(wait=wait)


class HeartbeatSink(_DetachedSink):
    def __init__(self, provider: str = DEFAULT_PROVIDER, **kwargs):
        super().__init__(**kwargs)
        self.provider = provider

    def send_now(self, orchestrator_url: str, payload: dict) -> bool:
        try:
            resp = self._session.post(
                f"{orchestrator_url.rstrip('/')}/inventory/heartbeat",
                json    = payload,
                headers = {"Content-Type": "application/json"},
                timeout = self.timeout,
            )
            if not resp.ok:
                log.warning(
                    f"[heartbeat] {payload.get('provider_instance_id')} → "
                    f"{resp.status_code} {resp.text[:200]}"
                )
            return resp.ok
        except Exception as e:
            log.error(f"[heartbeat] Failed to send heartbeat for {payload.get('provider_instance_id')}: {e}")
            return False

    def beat(
        self,
        orchestrator_url: str,
        job_address:      str,
        state:            str,
        resources:        Optional[ResourceProfile] = None,
        health_score:     int                       = 0,
        expose_url:       Optional[str]             = None,
        old_job_address:  Optional[str]             = None,
    ) -> Optional[Future]:
        payload = heartbeat_payload(
            job_address,
            state,
            resources       = resources,
            health_score    = health_score,
            expose_url      = expose_url,
            old_job_address = old_job_address,
            provider        = self.provider,
        )
        return self._dispatch(self.send_now, orchestrator_url, payload)


class AuditSink(_DetachedSink):
    def __init__(self, audit_url: str, internal_api_key: str, **kwargs):
        super().__init__(**kwargs)
        self.audit_url        = audit_url.rstrip("/")
        self.internal_api_key = internal_api_key

    def send_now(self, payload: dict) -> bool:
        try:
            resp = self._session.post(
                f"{self.audit_url}/audit/internal/log",
                json    = payload,
                headers = {
                    "Content-Type":       "application/json",
                    "X-Internal-API-Key": self.internal_api_key,
                },
                timeout = self.timeout,
            )
            return resp.ok
        except Exception as e:
            log.error(f"[audit] Failed to send audit log for {payload.get('action')}: {e}")
            return False

    def record(
        self,
        action:      str,
        job_address: str,
        details:     Optional[dict] = None,
        status:      str            = "success",
    ) -> Optional[Future]:
        payload = {
            "action":        action,
            "resource_type": "job",
            "resource_id":   job_address,
            "details":       details or {},
            "status":        status,
        }
        return self._dispatch(self.send_now, payload)
