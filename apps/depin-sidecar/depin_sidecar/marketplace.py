"""
Marketplace Adapters
====================

The sidecar never talks to the ledger directly. Everything it needs from the
marketplace goes through MarketplaceClient:

  post_job / get_job / stop_job / extend_job   — job lifecycle on the ledger
  pin_blob / retrieve_blob                     — content-addressed storage
  list_all_jobs                                — recovery scan (local identity only)
  create_deployment / get_deployment           — fallback launch path (API only)

Two adapters:

  ApiMarketplaceClient     — delegated mode. Talks to the marketplace Dashboard
                             API with a bearer API key. Cannot list jobs.
  LedgerMarketplaceClient  — local-identity mode. Wraps an opaque ledger client
                             that signs with the sidecar's own key.
"""

from __future__ import annotations
import logging
import time
from typing import Any, Optional

import requests

from .errors import MarketplaceError, RateLimited, UnsupportedOperation
from .models import JobSnapshot, JobState

log = logging.getLogger(__name__)

DEFAULT_API_URL      = "https://dashboard.k8s.prd.nos.ci/api"
DEFAULT_PINNING_URL  = "https://api.pinata.cloud"
DEFAULT_IPFS_GATEWAY = "https://nosana.mypinata.cloud"
LEDGER_POST_TIMEOUT  = 1800   # initial lease, seconds


def raise_for_status(resp: requests.Response, what: str):
    """Map a non-2xx response onto the sidecar's error taxonomy."""
    if resp.ok:
        return
    text = resp.text[:500]
    if resp.status_code == 429:
        raise RateLimited(f"{what} rate limited (429): Too Many Requests", 429, text)
    raise MarketplaceError(f"{what} error ({resp.status_code}): {text}", resp.status_code, text)


def snapshot_from_payload(address: str, raw: Any) -> JobSnapshot:
    """Normalise a job payload (API detail or ledger account) into a JobSnapshot."""
    if isinstance(raw, JobSnapshot):
        return raw
    if not isinstance(raw, dict):
        raise MarketplaceError(f"Unexpected job payload for {address}: {type(raw).__name__}")

    state = raw.get("state")
    if state is None:
        state = raw.get("status")
    price = raw.get("price")
    return JobSnapshot(
        address        = str(raw.get("address") or raw.get("job") or address),
        state          = JobState.parse(state),
        node           = raw.get("node"),
        definition_ref = raw.get("ipfsJob") or raw.get("definition_ref"),
        result_ref     = raw.get("ipfsResult") or raw.get("result_ref"),
        owner          = raw.get("owner") or raw.get("project"),
        price          = str(price) if price is not None else None,
    )


# ─── Content Store ────────────────────────────────────────────────────────────

class ContentStore:
    """IPFS: pin through a pinning service, read back through an HTTP gateway."""

    def __init__(
        self,
        pinning_url: str                        = DEFAULT_PINNING_URL,
        jwt:         Optional[str]              = None,
        gateway:     str                        = DEFAULT_IPFS_GATEWAY,
        session:     Optional[requests.Session] = None,
        timeout:     int                        = 30,
    ):
        self.pinning_url = pinning_url.rstrip("/")
        self.gateway     = gateway.rstrip("/")
        self.jwt         = jwt
        self.timeout     = timeout
        self._session    = session or requests.Session()

    def pin(self, obj: dict) -> str:
        headers = {"Content-Type": "application/json"}
        if self.jwt:
            headers["Authorization"] = f"Bearer {self.jwt}"
        resp = self._session.post(
            f"{self.pinning_url}/pinning/pinJSONToIPFS",
            json    = {"pinataContent": obj},
            headers = headers,
            timeout = self.timeout,
        )
        raise_for_status(resp, "IPFS pin")
        ref = resp.json().get("IpfsHash")
        if not ref:
            raise MarketplaceError("IPFS pin returned no hash")
        return ref

    def retrieve(self, ref: str) -> Any:
        resp = self._session.get(f"{self.gateway}/ipfs/{ref}", timeout=self.timeout)
        raise_for_status(resp, "IPFS retrieve")
        return resp.json()


# ─── Capability Boundary ──────────────────────────────────────────────────────

class MarketplaceClient:
    mode = "none"

    def __init__(self, content_store: ContentStore):
        self.content_store = content_store

    def post_job(self, content_ref: str, market: str) -> str:
        raise NotImplementedError

    def get_job(self, address: str) -> JobSnapshot:
        raise NotImplementedError

    def stop_job(self, address: str) -> dict:
        raise NotImplementedError

    def extend_job(self, address: str, seconds: int) -> dict:
        raise NotImplementedError

    def get_balance(self) -> dict:
        raise NotImplementedError

    def list_all_jobs(self) -> list[JobSnapshot]:
        raise UnsupportedOperation(f"{self.mode} mode cannot list jobs")

    def create_deployment(self, definition: dict, market: str) -> str:
        raise UnsupportedOperation(f"{self.mode} mode has no deployments API")

    def get_deployment(self, handle: str) -> dict:
        raise UnsupportedOperation(f"{self.mode} mode has no deployments API")

    def pin_blob(self, obj: dict) -> str:
        return self.content_store.pin(obj)

    def retrieve_blob(self, ref: str) -> Any:
        return self.content_store.retrieve(ref)


# ─── Delegated (API key) ──────────────────────────────────────────────────────

class ApiMarketplaceClient(MarketplaceClient):
    mode = "api"

    def __init__(
        self,
        api_key:       str,
        content_store: ContentStore,
        api_url:       str                        = DEFAULT_API_URL,
        session:       Optional[requests.Session] = None,
        timeout:       int                        = 15,
    ):
        super().__init__(content_store)
        self.api_url  = api_url.rstrip("/")
        self.api_key  = api_key
        self.timeout  = timeout
        self._session = session or requests.Session()

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type":  "application/json",
        }

    def _request(self, method: str, path: str, body: Optional[dict] = None) -> Any:
        resp = self._session.request(
            method,
            f"{self.api_url}{path}",
            json    = body if method != "GET" else None,
            headers = self._headers(),
            timeout = self.timeout,
        )
        raise_for_status(resp, "Marketplace API")
        if not resp.content:
            return {}
        return resp.json()

    def post_job(self, content_ref: str, market: str) -> str:
        data = self._request("POST", "/jobs/list", {"ipfsHash": content_ref, "market": market})
        credits = data.get("credits") or {}
        log.info(
            f"[api] Job posted: {data.get('job')} tx={data.get('tx')} "
            f"credits_used={credits.get('creditsUsed')}"
        )
        return data["job"]

    def get_job(self, address: str) -> JobSnapshot:
        return snapshot_from_payload(address, self._request("GET", f"/jobs/{address}"))

    def stop_job(self, address: str) -> dict:
        data = self._request("POST", f"/jobs/{address}/stop")
        return {"tx": data.get("tx"), "delisted": data.get("delisted")}

    def extend_job(self, address: str, seconds: int) -> dict:
        data = self._request("POST", f"/jobs/{address}/extend", {"seconds": seconds})
        credits = data.get("credits") or {}
        return {"tx": data.get("tx"), "credits_used": credits.get("creditsUsed")}

    def get_balance(self) -> dict:
        data = self._request("GET", "/credits/balance")
        assigned = float(data.get("assignedCredits", 0))
        reserved = float(data.get("reservedCredits", 0))
        settled  = float(data.get("settledCredits", 0))
        return {
            "available":        round(assigned - reserved - settled, 2),
            "assigned_credits": assigned,
            "reserved_credits": reserved,
            "settled_credits":  settled,
            "address":          "API_ACCOUNT",
        }

    def sign_message_external(self, message: str) -> dict:
        return self._request("POST", "/auth/sign-message/external", {"message": message})

    def create_deployment(self, definition: dict, market: str) -> str:
        data = self._request("POST", "/deployments/create", {
            "name":           f"depin-{int(time.time() * 1000)}",
            "market":         market,
            "job_definition": definition,
            "replicas":       1,
            "timeout":        3600,
            "strategy":       1,
        })
        handle = data.get("uuid") or data.get("id")
        if not handle:
            raise MarketplaceError("Deployment created without an id")
        return handle

    def get_deployment(self, handle: str) -> dict:
        return self._request("GET", f"/deployments/{handle}")


# ─── Local Identity (ledger) ──────────────────────────────────────────────────

class LedgerMarketplaceClient(MarketplaceClient):
    """
    Adapts an opaque ledger client that signs with the sidecar's own key.

    The ledger object must provide:
      identity                          — address of the signing key
      post(content_ref, market, timeout) -> job address
      get(address)                      -> job payload (dict or JobSnapshot)
      end(address) / delist(address)    -> transaction signature
      extend(address, seconds)          -> transaction signature
      all()                             -> iterable of job payloads
      balance()                         -> dict
    """

    mode = "wallet"

    def __init__(self, ledger: Any, content_store: ContentStore):
        super().__init__(content_store)
        self.ledger = ledger

    @property
    def identity(self) -> Optional[str]:
        return getattr(self.ledger, "identity", None)

    def post_job(self, content_ref: str, market: str) -> str:
        address = self.ledger.post(content_ref, market, LEDGER_POST_TIMEOUT)
        log.info(f"[ledger] Job posted: {address}")
        return str(address)

    def get_job(self, address: str) -> JobSnapshot:
        return snapshot_from_payload(address, self.ledger.get(address))

    def stop_job(self, address: str) -> dict:
        job = self.get_job(address)
        if job.state == JobState.RUNNING:
            return {"tx": self.ledger.end(address), "delisted": False}
        if job.state == JobState.QUEUED:
            return {"tx": self.ledger.delist(address), "delisted": True}
        raise MarketplaceError(f"Cannot stop job in state: {job.state.name}")

    def extend_job(self, address: str, seconds: int) -> dict:
        return {"tx": self.ledger.extend(address, seconds)}

    def get_balance(self) -> dict:
        data = dict(self.ledger.balance())
        data.setdefault("address", self.identity or "Unknown")
        return data

    def list_all_jobs(self) -> list[JobSnapshot]:
        jobs = []
        for raw in self.ledger.all():
            address = raw.address if isinstance(raw, JobSnapshot) else str(raw.get("address", ""))
            jobs.append(snapshot_from_payload(address, raw))
        return jobs
