"""
Confidential Handoff
====================

Job definitions pinned to IPFS are public. For a confidential job the sidecar
pins a placeholder that keeps only what the marketplace needs to route the job
(listen endpoints, trigger metadata) and withholds the real definition until a
node is actually running the job:

  1. Pin placeholder → content ref
  2. Post the job (or, if the API rejects the post, create a deployment and wait
     up to 30 × 2s for it to resolve to a job address)
  3. In the background, poll the job every 3s (≤ 600 times) until RUNNING
  4. POST the real definition straight to that node, signed. A 4xx gets one
     retry with a freshly signed header.
  5. Record the first exposed service URL on the watch entry

Launch returns after step 2. Handoff failures are logged, never rolled back.
"""

from __future__ import annotations
import copy
import logging
import threading
from typing import Optional

from .auth import AuthProvider
from .errors import HandoffTimeout, LaunchTimeout, NodeRejected, UnsupportedOperation
from .marketplace import MarketplaceClient
from .models import JobSnapshot, JobState, LaunchResult
from .node import NodeClient
from .registry import WatchRegistry
from .retry import RetryPolicy

log = logging.getLogger(__name__)

POLL_INTERVAL        = 3      # seconds between RUNNING checks
POLL_ATTEMPTS        = 600    # ≈ 10 minutes
DEPLOYMENT_INTERVAL  = 2
DEPLOYMENT_ATTEMPTS  = 30
REAUTH_DELAY         = 5


def build_placeholder(definition: dict) -> dict:
    """Public stand-in for a confidential definition. No ops, no images, no env."""
    placeholder = {
        "version": definition.get("version") or "0.1",
        "type":    definition.get("type") or "container",
        "meta":    {**copy.deepcopy(definition.get("meta") or {}), "trigger": "cli"},
        "logistics": {
            "send":    {"type": "api-listen", "args": {}},
            "receive": {"type": "api-listen", "args": {}},
        },
        "ops": [],
    }
    logistics = definition.get("logistics") or {}
    for direction in ("send", "receive"):
        leg = logistics.get(direction)
        if isinstance(leg, dict) and leg.get("type") == "api":
            placeholder["logistics"][direction] = copy.deepcopy(leg)
    return placeholder


class ConfidentialHandoff:
    def __init__(
        self,
        marketplace: MarketplaceClient,
        nodes:       NodeClient,
        auth:        AuthProvider,
        registry:    WatchRegistry,
        stop_event:  Optional[threading.Event] = None,
        poll_retry:  Optional[RetryPolicy]     = None,
        poll_interval:       float = POLL_INTERVAL,
        poll_attempts:       int   = POLL_ATTEMPTS,
        deployment_interval: float = DEPLOYMENT_INTERVAL,
        deployment_attempts: int   = DEPLOYMENT_ATTEMPTS,
        reauth_delay:        float = REAUTH_DELAY,
    ):
        self.marketplace = marketplace
        self.nodes       = nodes
        self.auth        = auth
        self.registry    = registry
        self._stop       = stop_event or threading.Event()
        self.poll_retry  = poll_retry or RetryPolicy(retries=3, base_delay=2.0)

        self.poll_interval       = poll_interval
        self.poll_attempts       = poll_attempts
        self.deployment_interval = deployment_interval
        self.deployment_attempts = deployment_attempts
        self.reauth_delay        = reauth_delay

    # ─── Publish ──────────────────────────────────────────────────────────────

    def publish(self, definition: dict, market: str, confidential: bool) -> LaunchResult:
        if confidential:
            log.info("[launch] Confidential mode ACTIVE — pinning placeholder definition")
            to_pin = build_placeholder(definition)
        else:
            log.info("[launch] Confidential mode INACTIVE — pinning full definition")
            to_pin = definition

        content_ref = self.marketplace.pin_blob(to_pin)
        log.info(f"[launch] Pinned definition: {content_ref}")

        try:
            address = self.marketplace.post_job(content_ref, market)
            return LaunchResult(job_address=address, content_ref=content_ref)
        except Exception as post_error:
            try:
                handle = self.marketplace.create_deployment(to_pin, market)
            except UnsupportedOperation:
                raise post_error
            log.warning(f"[launch] Direct post failed ({post_error}) — fell back to deployment {handle}")

        return self._await_deployment(handle, content_ref)

    def _await_deployment(self, handle: str, content_ref: str) -> LaunchResult:
        for _ in range(self.deployment_attempts):
            status = self.marketplace.get_deployment(handle) or {}
            jobs = status.get("jobs") or []
            if jobs:
                address = jobs[0].get("address") or jobs[0].get("job")
                if address:
                    log.info(f"[launch] Deployment {handle} resolved to job {address}")
                    return LaunchResult(
                        job_address       = address,
                        content_ref       = jobs[0].get("ipfs_job") or content_ref,
                        deployment_handle = handle,
                    )
            if self._stop.wait(self.deployment_interval):
                break
        raise LaunchTimeout(f"Timeout waiting for job address from deployment {handle}")

    # ─── Handoff ──────────────────────────────────────────────────────────────

    def wait_for_running(self, job_address: str) -> Optional[JobSnapshot]:
        """RUNNING snapshot, or None if the job ended first. Raises HandoffTimeout."""
        for _ in range(self.poll_attempts):
            try:
                job = self.poll_retry.call(lambda: self.marketplace.get_job(job_address))
                if job.state == JobState.RUNNING:
                    log.info(f"[confidential] Job {job_address} is RUNNING on node {job.node}")
                    return job
                if job.state.is_terminal:
                    log.warning(f"[confidential] Job {job_address} ended ({job.state.name}) before the definition was sent")
                    return None
            except Exception as e:
                log.debug(f"[confidential] Poll error for {job_address}: {e}")
            if self._stop.wait(self.poll_interval):
                break
        raise HandoffTimeout(f"Timeout waiting for job {job_address} to run")

    def push(self, job: JobSnapshot, definition: dict) -> Optional[str]:
        """Send the real definition to the node running `job`. Returns the service URL, if any."""
        log.info(f"[confidential] Posting definition to node {job.node} for {job.address}")
        header = self.auth.produce().header
        try:
            self.nodes.post_job_definition(job.node, job.address, definition, header)
        except NodeRejected as e:
            log.warning(f"[confidential] Node rejected definition ({e.status}) — re-signing and retrying once")
            self._stop.wait(self.reauth_delay)
            self.auth.clear()
            header = self.auth.produce().header
            self.nodes.post_job_definition(job.node, job.address, definition, header)

        log.info(f"[confidential] ✓ Handed off definition for job {job.address}")

        url = self.nodes.service_url(definition, job.address)
        if url and self.registry.record_service_url(job.address, url):
            log.info(f"[confidential] Service URL for {job.address}: {url}")
        return url

    def hand_off(self, job_address: str, definition: dict):
        """Background target: wait for RUNNING, then push. Never raises."""
        log.info(f"[confidential] Waiting for {job_address} to run before sending the definition")
        try:
            job = self.wait_for_running(job_address)
            if job is not None:
                self.push(job, definition)
        except HandoffTimeout as e:
            log.error(f"[confidential] {e}")
        except Exception as e:
            log.error(f"[confidential] Failed to hand off definition for {job_address}: {e}")
