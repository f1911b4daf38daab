"""
Node-Direct Client
==================

Each job runs on an ephemeral, untrusted node operator's machine, reachable
through the marketplace ingress as `https://<node>.<ingress-domain>`.

  POST /job/<addr>/job-definition   — confidential push of the real definition
  GET  /job/<addr>/results          — result fallback when IPFS has nothing

Both carry the signed `<challenge>:<signature>` header as Authorization.
"""

from __future__ import annotations
import hashlib
import logging
from typing import Any, Optional

import requests

from .errors import MarketplaceError, NodeRejected

log = logging.getLogger(__name__)

DEFAULT_INGRESS_DOMAIN = "node.k8s.prd.nos.ci"


# ─── Exposed Services ─────────────────────────────────────────────────────────

def _exposed_ports(expose: Any) -> list[int]:
    if expose is None or expose is False:
        return []
    if isinstance(expose, bool):
        return []
    if isinstance(expose, int):
        return [expose]
    if isinstance(expose, str):
        return [int(expose)] if expose.strip().isdigit() else []
    if isinstance(expose, dict):
        return _exposed_ports(expose.get("port"))
    if isinstance(expose, (list, tuple)):
        ports = []
        for item in expose:
            ports.extend(_exposed_ports(item))
        return ports
    return []


def service_hash(job_address: str, op_id: str, port: int) -> str:
    """Stable DNS label for one exposed port of one op."""
    digest = hashlib.sha256(f"{job_address}:{op_id}:{port}".encode()).hexdigest()
    return digest[:40]


def job_exposed_services(definition: Optional[dict], job_address: str) -> list[dict]:
    """List `{op, port, hash}` for every port the definition's ops expose."""
    services = []
    for index, op in enumerate((definition or {}).get("ops") or []):
        if not isinstance(op, dict):
            continue
        op_id = str(op.get("id") or index)
        for port in _exposed_ports((op.get("args") or {}).get("expose")):
            services.append({
                "op":   op_id,
                "port": port,
                "hash": service_hash(job_address, op_id, port),
            })
    return services


# ─── Node Client ──────────────────────────────────────────────────────────────

class NodeClient:
    def __init__(
        self,
        ingress_domain: str                        = DEFAULT_INGRESS_DOMAIN,
        session:        Optional[requests.Session] = None,
        timeout:        int                        = 30,
    ):
        self.ingress_domain = ingress_domain
        self.timeout        = timeout
        self._session       = session or requests.Session()

    def node_url(self, node: str) -> str:
        return f"https://{node}.{self.ingress_domain}"

    def service_url(self, definition: Optional[dict], job_address: str) -> Optional[str]:
        """URL of the first exposed service, or None when nothing is exposed."""
        services = job_exposed_services(definition, job_address)
        if not services:
            return None
        return f"https://{services[0]['hash']}.{self.ingress_domain}"

    def _check(self, resp: requests.Response, what: str):
        if resp.ok:
            return
        text = resp.text[:500]
        if 400 <= resp.status_code < 500:
            raise NodeRejected(f"Node rejected {what}: {resp.status_code} {text}", resp.status_code, text)
        raise MarketplaceError(f"Node error on {what}: {resp.status_code} {text}", resp.status_code, text)

    def post_job_definition(self, node: str, job_address: str, definition: dict, auth_header: str):
        resp = self._session.post(
            f"{self.node_url(node)}/job/{job_address}/job-definition",
            json    = definition,
            headers = {"Content-Type": "application/json", "Authorization": auth_header},
            timeout = self.timeout,
        )
        self._check(resp, "job definition")

    def get_results(self, node: str, job_address: str, auth_header: str) -> Any:
        resp = self._session.get(
            f"{self.node_url(node)}/job/{job_address}/results",
            headers = {"Authorization": auth_header},
            timeout = self.timeout,
        )
        self._check(resp, "result fetch")
        return resp.json()
