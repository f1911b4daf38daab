"""
Job Lifecycle Watchdog
======================

Launches compute jobs on the marketplace and supervises each one until it ends.

Per watched job, every 60 seconds:
  - state changed           → audit JOB_STATE_CHANGED
  - RUNNING                 → auto-extend when ≤ 5 min of lease is left (by 30 min),
                              heartbeat the orchestrator at most every 30s
  - COMPLETED / STOPPED / … → audit WATCHDOG_TERMINATED, then
        user stopped it       → nothing more
        ran < 20 minutes      → report "failed" (no redeploy — stops crash loops)
        otherwise             → redeploy the same definition on the same market,
                                report "provisioning" old → new, and ask the
                                scheduler to watch the new job
    and always a final "terminated" heartbeat, then the entry is dropped.

A watch loop never raises: tick errors are logged and the loop sleeps as usual.
Watch threads are started by a single scheduler thread reading WatchRequests
off a queue, so a redeploy chain never nests one loop inside another.
"""

from __future__ import annotations
import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .auth import AuthProvider
from .errors import (
    LaunchError,
    MarketplaceError,
    NodeRejected,
    SidecarError,
    UnsupportedOperation,
)
from .handoff import ConfidentialHandoff
from .logs import LogStreamer
from .marketplace import MarketplaceClient
from .models import JobState, JobStatus, LaunchResult, ResourceProfile, WatchedJob
from .node import NodeClient
from .registry import WatchRegistry
from .retry import RetryPolicy
from .sinks import AuditSink, HeartbeatSink
from .supervisor import TaskSupervisor

log = logging.getLogger(__name__)

# ─── Policy ───────────────────────────────────────────────────────────────────

JOB_TIMEOUT              = 30 * 60   # lease granted per post / extension, seconds
EXTEND_THRESHOLD         = 5 * 60
EXTEND_DURATION          = 1800
MIN_RUNTIME_FOR_REDEPLOY = 20 * 60
TICK_INTERVAL            = 60
HEARTBEAT_INTERVAL       = 30
SUMMARY_INTERVAL         = 60

DEFAULT_ORCHESTRATOR_URL = "http://localhost:8080"


@dataclass
class WatchRequest:
    job_address:       str
    orchestrator_url:  str
    definition:        Optional[dict]            = None
    market_address:    str                       = ""
    confidential:      bool                      = True
    resources:         Optional[ResourceProfile] = None
    deployment_handle: Optional[str]             = None


# ─── Watch Loop ───────────────────────────────────────────────────────────────

class JobWatcher:
    def __init__(self, controller: "JobLifecycleController", job_address: str, orchestrator_url: str):
        self.controller       = controller
        self.job_address      = job_address
        self.orchestrator_url = orchestrator_url
        self.last_state: Optional[JobState] = None
        self.last_heartbeat: Optional[float] = None

    def run(self):
        c = self.controller
        log.info(f"[watchdog] Started watching job {self.job_address}")
        while True:
            if self.job_address not in c.registry:
                log.info(f"[watchdog] Job {self.job_address} removed from watch list — stopping loop")
                return
            try:
                if self.tick():
                    return
            except Exception as e:
                log.error(f"[watchdog] Error in loop for {self.job_address}: {e}")
            if c.stop_event.wait(c.tick_interval):
                return

    def tick(self) -> bool:
        """One reconciliation pass. Returns True once the watch is over."""
        c = self.controller
        now = c.clock()
        status = c.get_job(self.job_address)

        job = c.registry.get(self.job_address)
        if job is None:
            log.info(f"[watchdog] Job {self.job_address} removed from watch list — stopping loop")
            return True

        if status.state != self.last_state:
            old = self.last_state.name if self.last_state is not None else None
            log.info(f"[watchdog] Job state changed: {old} → {status.state.name} for {self.job_address}")
            c.audit("JOB_STATE_CHANGED", self.job_address, {"old_state": old, "new_state": status.state.name})
            self.last_state = status.state

        if status.state == JobState.RUNNING:
            self._maybe_extend(job, now)
            self._maybe_heartbeat(job, status, now)

        if status.state.is_terminal:
            self._finish(job, status.state, now)
            return True
        return False

    def _maybe_extend(self, job: WatchedJob, now: float):
        remaining = JOB_TIMEOUT - (now - job.last_extend_time)
        if not (0 < remaining <= EXTEND_THRESHOLD):
            return
        c = self.controller
        log.info(f"[auto-extend] Job {job.job_address} has {int(remaining)}s left — extending")
        try:
            c.extend_job(job.job_address, EXTEND_DURATION)
            job.last_extend_time = max(job.last_extend_time, now)
            log.info(f"[auto-extend] ✓ Extended job {job.job_address}")
            c.audit("JOB_AUTO_EXTENDED", job.job_address, {"duration": EXTEND_DURATION})
        except Exception as e:
            log.error(f"[auto-extend] ✗ Failed to extend job {job.job_address}: {e}")
            c.audit("JOB_AUTO_EXTEND_FAILED", job.job_address, {"error": str(e)}, status="error")

    def _maybe_heartbeat(self, job: WatchedJob, status: JobStatus, now: float):
        if self.last_heartbeat is not None and now - self.last_heartbeat < HEARTBEAT_INTERVAL:
            return
        self.controller.heartbeat(
            self.orchestrator_url,
            job.job_address,
            "ready",
            resources    = job.resources,
            health_score = 100,
            expose_url   = status.service_url or job.service_url,
        )
        self.last_heartbeat = now

    def _finish(self, job: WatchedJob, state: JobState, now: float):
        c = self.controller
        runtime = now - job.start_time
        runtime_mins = round(runtime / 60)
        log.info(f"[watchdog] Job {job.job_address} ended ({state.name}) after {runtime_mins} min")
        c.audit("WATCHDOG_TERMINATED", job.job_address, {
            "final_state":  state.name,
            "runtime_mins": runtime_mins,
            "user_stopped": job.user_stopped,
        })

        if job.user_stopped:
            log.info(f"[watchdog] Job {job.job_address} was stopped by the user — not redeploying")
        elif runtime < MIN_RUNTIME_FOR_REDEPLOY:
            log.warning(
                f"[watchdog] Job {job.job_address} ran only {runtime_mins} min — "
                f"reporting failed instead of redeploying"
            )
            c.heartbeat(self.orchestrator_url, job.job_address, "failed")
        elif job.can_redeploy:
            self._redeploy(job)
        else:
            log.info(f"[watchdog] No definition/market recorded for {job.job_address} — cannot redeploy")

        c.heartbeat(self.orchestrator_url, job.job_address, "terminated")
        c.registry.remove(job.job_address)

    def _redeploy(self, job: WatchedJob):
        c = self.controller
        log.info(f"[auto-redeploy] Redeploying {job.job_address}…")
        try:
            result = c.launch_job(job.definition, job.market_address, job.confidential)
        except Exception as e:
            log.error(f"[auto-redeploy] ✗ Redeploy of {job.job_address} failed: {e}")
            c.heartbeat(self.orchestrator_url, job.job_address, "failed")
            return

        log.info(f"[auto-redeploy] ✓ {job.job_address} → {result.job_address}")
        c.heartbeat(
            self.orchestrator_url,
            result.job_address,
            "provisioning",
            resources       = job.resources,
            health_score    = 50,
            old_job_address = job.job_address,
        )
        c.request_watch(WatchRequest(
            job_address       = result.job_address,
            orchestrator_url  = self.orchestrator_url,
            definition        = job.definition,
            market_address    = job.market_address,
            confidential      = job.confidential,
            resources         = job.resources,
            deployment_handle = result.deployment_handle,
        ))


# ─── Controller ───────────────────────────────────────────────────────────────

class JobLifecycleController:
    def __init__(
        self,
        marketplace:      MarketplaceClient,
        auth:             AuthProvider,
        nodes:            Optional[NodeClient]          = None,
        heartbeats:       Optional[HeartbeatSink]       = None,
        audit_sink:       Optional[AuditSink]           = None,
        registry:         Optional[WatchRegistry]       = None,
        supervisor:       Optional[TaskSupervisor]      = None,
        handoff:          Optional[ConfidentialHandoff] = None,
        retry:            Optional[RetryPolicy]         = None,
        orchestrator_url: str                           = DEFAULT_ORCHESTRATOR_URL,
        clock:            Callable[[], float]           = time.time,
        tick_interval:    float                         = TICK_INTERVAL,
    ):
        self.marketplace      = marketplace
        self.auth             = auth
        self.nodes            = nodes or NodeClient()
        self.heartbeats       = heartbeats
        self.audit_sink       = audit_sink
        self.registry         = registry or WatchRegistry()
        self.supervisor       = supervisor or TaskSupervisor()
        self.retry            = retry or RetryPolicy()
        self.orchestrator_url = orchestrator_url
        self.clock            = clock
        self.tick_interval    = tick_interval
        self.stop_event       = threading.Event()
        self.handoff          = handoff or ConfidentialHandoff(
            marketplace, self.nodes, auth, self.registry, stop_event=self.stop_event,
        )
        self._watch_requests: "queue.Queue[WatchRequest]" = queue.Queue()
        self._started = False

    @property
    def auth_mode(self) -> str:
        return self.auth.mode

    # ─── Background Services ──────────────────────────────────────────────────

    def start(self):
        """Start the watch scheduler and the periodic summary log."""
        if self._started:
            return
        self._started = True
        self.supervisor.spawn("watch-scheduler", self._schedule_loop)
        self.supervisor.spawn("watchdog-summary", self._summary_loop)
        log.info(f"[watchdog] Controller started ({self.auth_mode} mode)")

    def shutdown(self, timeout: float = 5):
        self.stop_event.set()
        self.supervisor.join(timeout)
        for sink in (self.heartbeats, self.audit_sink):
            if sink is not None:
                sink.shutdown(wait=False)

    def _schedule_loop(self):
        while not self.stop_event.is_set():
            try:
                req = self._watch_requests.get(timeout=1)
            except queue.Empty:
                continue
            try:
                self._start_watch(req)
            finally:
                self._watch_requests.task_done()

    def _summary_loop(self):
        while not self.stop_event.wait(SUMMARY_INTERVAL):
            total = len(self.registry)
            if total:
                log.info(f"[watchdog-summary] Currently watching {total} job(s)")
                for address in self.registry.addresses():
                    job = self.registry.get(address)
                    if job is not None:
                        log.debug(f"[watchdog-summary] {job.summary()}")

    def request_watch(self, req: WatchRequest):
        self._watch_requests.put(req)

    def is_idle(self) -> bool:
        """Nothing watched and no watch request queued or being started."""
        return len(self.registry) == 0 and self._watch_requests.unfinished_tasks == 0

    def _start_watch(self, req: WatchRequest) -> bool:
        now = self.clock()
        job = WatchedJob(
            job_address       = req.job_address,
            start_time        = now,
            last_extend_time  = now,
            definition        = req.definition,
            market_address    = req.market_address,
            confidential      = req.confidential,
            resources         = req.resources or ResourceProfile(),
            deployment_handle = req.deployment_handle,
        )
        if not self.registry.add(job):
            log.info(f"[watchdog] Job {req.job_address} is already being watched")
            return False

        self.audit("WATCHDOG_STARTED", req.job_address, {
            "resources":         job.resources.to_heartbeat_fields(),
            "deployment_handle": req.deployment_handle,
        })
        watcher = JobWatcher(self, req.job_address, req.orchestrator_url)
        self.supervisor.spawn(f"watch-{req.job_address}", watcher.run)
        return True

    # ─── Side Calls ───────────────────────────────────────────────────────────

    def audit(self, action: str, job_address: str, details: Optional[dict] = None, status: str = "success"):
        if self.audit_sink is not None:
            self.audit_sink.record(action, job_address, details, status)

    def heartbeat(self, orchestrator_url: str, job_address: str, state: str, **kwargs):
        if self.heartbeats is not None:
            self.heartbeats.beat(orchestrator_url, job_address, state, **kwargs)

    # ─── Operations ───────────────────────────────────────────────────────────

    def launch_job(self, definition: dict, market_address: str, confidential: bool = True) -> LaunchResult:
        try:
            result = self.handoff.publish(definition, market_address, confidential)
        except LaunchError:
            raise
        except Exception as e:
            log.error(f"[launch] ✗ Launch failed: {e}")
            raise LaunchError(f"Launch failed: {e}") from e

        if confidential:
            self.supervisor.spawn(
                f"handoff-{result.job_address}",
                self.handoff.hand_off, result.job_address, definition,
            )

        self.audit("JOB_LAUNCHED", result.job_address, {
            "content_ref":       result.content_ref,
            "market_address":    market_address,
            "confidential":      confidential,
            "auth_mode":         self.auth_mode,
            "deployment_handle": result.deployment_handle,
        })
        log.info(f"[launch] ✓ Job {result.job_address} posted on market {market_address}")
        return result

    def watch_job(
        self,
        job_address:       str,
        orchestrator_url:  Optional[str]             = None,
        definition:        Optional[dict]            = None,
        market_address:    str                       = "",
        confidential:      bool                      = True,
        resources:         Optional[ResourceProfile] = None,
        deployment_handle: Optional[str]             = None,
    ) -> bool:
        return self._start_watch(WatchRequest(
            job_address       = job_address,
            orchestrator_url  = orchestrator_url or self.orchestrator_url,
            definition        = definition,
            market_address    = market_address,
            confidential      = confidential,
            resources         = resources,
            deployment_handle = deployment_handle,
        ))

    def deploy(
        self,
        definition:       dict,
        market_address:   str,
        confidential:     bool                      = True,
        resources:        Optional[ResourceProfile] = None,
        orchestrator_url: Optional[str]             = None,
    ) -> LaunchResult:
        """Launch a job and start watching it."""
        result = self.launch_job(definition, market_address, confidential)
        self.watch_job(
            result.job_address,
            orchestrator_url  = orchestrator_url,
            definition        = definition,
            market_address    = market_address,
            confidential      = confidential,
            resources         = resources,
            deployment_handle = result.deployment_handle,
        )
        return result

    def mark_job_as_stopping(self, job_address: str) -> bool:
        return self.registry.mark_user_stopped(job_address)

    def stop_job(self, job_address: str) -> dict:
        self.mark_job_as_stopping(job_address)
        log.info(f"Stopping job {job_address} ({self.auth_mode} mode)")
        try:
            result = self.retry.call(lambda: self.marketplace.stop_job(job_address))
        except Exception as e:
            log.error(f"✗ Stop failed for {job_address}: {e}")
            self.audit("JOB_STOP_FAILED", job_address, {"error": str(e)}, status="error")
            raise MarketplaceError(f"Stop failed: {e}", getattr(e, "status", None)) from e

        self.audit("JOB_STOPPED", job_address, {**result, "manual_stop": True, "via": self.auth_mode})
        return {"status": "stopped", "job_address": job_address, **result}

    def extend_job(self, job_address: str, seconds: int) -> dict:
        log.info(f"Extending job {job_address} by {seconds}s")
        try:
            result = self.marketplace.extend_job(job_address, seconds)
        except Exception as e:
            self.audit("JOB_EXTEND_FAILED", job_address, {"duration": seconds, "error": str(e)}, status="error")
            raise MarketplaceError(f"Extend failed: {e}", getattr(e, "status", None)) from e

        self.audit("JOB_EXTENDED", job_address, {"duration": seconds, **result, "via": self.auth_mode})
        return {"status": "success", "job_address": job_address, **result}

    def get_job(self, job_address: str) -> JobStatus:
        try:
            snap = self.retry.call(lambda: self.marketplace.get_job(job_address))
        except Exception as e:
            raise MarketplaceError(f"Get job failed: {e}", getattr(e, "status", None)) from e

        entry = self.registry.get(job_address)
        service_url = entry.service_url if entry else None

        if snap.state == JobState.RUNNING and not service_url and snap.definition_ref:
            try:
                definition = self.retry.call(lambda: self.marketplace.retrieve_blob(snap.definition_ref))
                service_url = self.nodes.service_url(definition, job_address)
                if service_url and entry and not self.registry.record_service_url(job_address, service_url):
                    service_url = entry.service_url or service_url
            except Exception as e:
                log.error(f"Failed to resolve service URL for {job_address}: {e}")

        return JobStatus(
            job_address = job_address,
            state       = snap.state,
            node        = snap.node,
            price       = snap.price,
            result_ref  = snap.result_ref,
            service_url = service_url,
        )

    def get_job_logs(self, job_address: str) -> dict:
        try:
            snap = self.retry.call(lambda: self.marketplace.get_job(job_address))
        except Exception as e:
            raise MarketplaceError(f"Get logs failed: {e}", getattr(e, "status", None)) from e

        if not snap.result_ref:
            return {"status": "pending", "logs": ["Job is running or hasn't posted results yet."]}

        try:
            result = self.retry.call(lambda: self.marketplace.retrieve_blob(snap.result_ref))
        except Exception as e:
            log.info(f"[confidential] Result blob unavailable ({e}) — asking node directly for {job_address}")
            return self.retrieve_confidential_results(job_address)
        return {"status": "completed", "result_ref": snap.result_ref, "result": result}

    def retrieve_confidential_results(self, job_address: str) -> dict:
        try:
            snap = self.marketplace.get_job(job_address)
            if not snap.node:
                return {"status": "pending", "logs": ["Job has no node assigned."]}
            try:
                results = self.nodes.get_results(snap.node, job_address, self.auth.produce().header)
            except NodeRejected:
                self.auth.clear()
                results = self.nodes.get_results(snap.node, job_address, self.auth.produce().header)
            return {"status": "completed", "confidential": True, "result": results}
        except Exception as e:
            log.error(f"[confidential] Failed to retrieve results for {job_address}: {e}")
            return {"status": "error", "logs": [f"Failed to retrieve confidential results: {e}"]}

    def get_balance(self) -> dict:
        try:
            return self.marketplace.get_balance()
        except SidecarError:
            raise
        except Exception as e:
            raise MarketplaceError(f"Balance lookup failed: {e}") from e

    def get_log_streamer(self) -> LogStreamer:
        return LogStreamer(self.auth, ingress_domain=self.nodes.ingress_domain)

    # ─── Recovery ─────────────────────────────────────────────────────────────

    def recover_jobs(self, orchestrator_url: Optional[str] = None) -> int:
        """
        Re-attach watch loops after a restart. Returns how many jobs were adopted.

        Only a local identity can list the ledger's jobs; in delegated mode the
        best we can do is re-check what is still in the registry.
        """
        try:
            jobs = self.retry.call(self.marketplace.list_all_jobs)
        except UnsupportedOperation:
            self._recheck_registry()
            return 0
        except Exception as e:
            log.error(f"[recovery] Failed to list jobs: {e}")
            return 0

        identity = getattr(self.marketplace, "identity", None) or getattr(self.auth, "identity", None)
        recovered = 0
        for job in jobs:
            if job.owner != identity or job.state != JobState.RUNNING or job.address in self.registry:
                continue
            log.info(f"[recovery] Recovering watchdog for running job {job.address}")
            if self.watch_job(job.address, orchestrator_url, confidential=True, resources=ResourceProfile()):
                recovered += 1
        return recovered

    def _recheck_registry(self):
        log.info("[recovery] Delegated mode: re-checking watched jobs only")
        for address in self.registry.addresses():
            try:
                status = self.get_job(address)
            except Exception as e:
                log.warning(f"[recovery] Could not check job {address}: {e}")
                continue
            if status.state.is_terminal:
                log.info(f"[recovery] Job {address} is no longer running ({status.state.name})")
                self.registry.remove(address)
            else:
                log.info(f"[recovery] Job {address} is {status.state.name} — watchdog stays active")
