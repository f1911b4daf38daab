"""Shared fakes for the sidecar tests. Nothing here touches the network."""

from __future__ import annotations

import copy
import json

import pytest

from depin_sidecar.auth import AuthProvider
from depin_sidecar.errors import MarketplaceError, UnsupportedOperation
from depin_sidecar.marketplace import MarketplaceClient
from depin_sidecar.models import AuthResult, JobSnapshot, JobState
from depin_sidecar.node import NodeClient
from depin_sidecar.retry import RetryPolicy
from depin_sidecar.watchdog import JobLifecycleController


REAL_DEFINITION = {
    "version": "0.1",
    "type": "container",
    "meta": {"trigger": "api", "system_requirements": {"required_vram": 24}},
    "logistics": {"send": {"type": "api", "args": {"endpoint": "https://orch/send"}}},
    "ops": [
        {
            "type": "container/run",
            "id": "vllm",
            "args": {
                "image": "docker.io/vllm/vllm-openai:latest",
                "cmd": ["--model", "secret-model"],
                "env": {"HF_TOKEN": "hf_secret"},
                "expose": 8000,
                "gpu": True,
            },
        }
    ],
}


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeMarketplace(MarketplaceClient):
    mode = "api"

    def __init__(self):
        super().__init__(content_store=None)
        self.scripts: dict[str, list] = {}
        self.pinned: dict[str, dict] = {}
        self.posted: list[tuple[str, str]] = []
        self.extended: list[tuple[str, int]] = []
        self.stopped: list[str] = []
        self.get_calls = 0
        self.fail_post = None
        self.fail_extend = None
        self.deployments: list = []
        self.deployment_created = []
        self.listing = None
        self.identity = None

    def set_state(self, address, state, node="node-1", **kwargs):
        self.scripts[address] = [JobSnapshot(address=address, state=state, node=node, **kwargs)]

    def script(self, address, items):
        """Each get_job pops one item; the last one sticks. Exceptions are raised."""
        self.scripts[address] = list(items)

    def get_job(self, address):
        self.get_calls += 1
        items = self.scripts[address]
        item = items.pop(0) if len(items) > 1 else items[0]
        if isinstance(item, Exception):
            raise item
        if isinstance(item, JobState):
            return JobSnapshot(address=address, state=item, node="node-1")
        return item

    def post_job(self, content_ref, market):
        if self.fail_post is not None:
            raise self.fail_post
        self.posted.append((content_ref, market))
        return f"new-job-{len(self.posted)}"

    def stop_job(self, address):
        self.stopped.append(address)
        return {"tx": "tx-stop", "delisted": False}

    def extend_job(self, address, seconds):
        if self.fail_extend is not None:
            raise self.fail_extend
        self.extended.append((address, seconds))
        return {"tx": "tx-extend"}

    def get_balance(self):
        return {"available": 12.5}

    def pin_blob(self, obj):
        ref = f"Qm{len(self.pinned)}"
        self.pinned[ref] = copy.deepcopy(obj)
        return ref

    def retrieve_blob(self, ref):
        if ref not in self.pinned:
            raise MarketplaceError("IPFS retrieve error (404): not found", 404)
        return self.pinned[ref]

    def list_all_jobs(self):
        if self.listing is None:
            raise UnsupportedOperation("api mode cannot list jobs")
        return self.listing

    def create_deployment(self, definition, market):
        if self.deployments is None:
            raise UnsupportedOperation("no deployments")
        self.deployment_created.append((definition, market))
        return "dep-1"

    def get_deployment(self, handle):
        items = self.deployments
        return items.pop(0) if len(items) > 1 else (items[0] if items else {})


class FakeAuth(AuthProvider):
    mode = "api"

    def __init__(self, identity="owner-1"):
        self.identity = identity
        self.produced = 0
        self.cleared = 0

    def produce(self):
        self.produced += 1
        return AuthResult(header=f"Hello Nosana Node!:sig-{self.produced}", identity=self.identity)

    def clear(self):
        self.cleared += 1


class FakeNodes(NodeClient):
    def __init__(self, errors=None):
        super().__init__("node.test")
        self.errors = list(errors or [])
        self.definitions = []
        self.result_calls = []
        self.results = {"logs": ["done"]}

    def post_job_definition(self, node, job_address, definition, auth_header):
        self.definitions.append((node, job_address, copy.deepcopy(definition), auth_header))
        if self.errors:
            raise self.errors.pop(0)

    def get_results(self, node, job_address, auth_header):
        self.result_calls.append((node, job_address, auth_header))
        if self.errors:
            raise self.errors.pop(0)
        return self.results


class RecordingHeartbeats:
    def __init__(self):
        self.calls = []

    def beat(self, orchestrator_url, job_address, state, **kwargs):
        self.calls.append({"url": orchestrator_url, "job_address": job_address, "state": state, **kwargs})

    def states(self):
        return [c["state"] for c in self.calls]

    def shutdown(self, wait=False):
        pass


class RecordingAudit:
    def __init__(self):
        self.events = []

    def record(self, action, job_address, details=None, status="success"):
        self.events.append({"action": action, "job_address": job_address, "details": details or {}, "status": status})

    def actions(self):
        return [e["action"] for e in self.events]

    def shutdown(self, wait=False):
        pass


class RecordingSupervisor:
    """Records spawned tasks instead of starting threads."""

    def __init__(self):
        self.spawned = []

    def spawn(self, name, target, *args, **kwargs):
        self.spawned.append((name, target, args))

    def names(self):
        return [s[0] for s in self.spawned]

    def join(self, timeout=None):
        pass


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else (json.dumps(payload) if payload is not None else "")
        self.content = self.text.encode()

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        return self._payload


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def request(self, method, url, json=None, headers=None, timeout=None):
        self.requests.append({"method": method, "url": url, "json": json, "headers": headers or {}})
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item

    def post(self, url, json=None, headers=None, timeout=None):
        return self.request("POST", url, json=json, headers=headers, timeout=timeout)

    def get(self, url, headers=None, timeout=None):
        return self.request("GET", url, headers=headers, timeout=timeout)


def no_sleep_retry(retries=5, base_delay=0.5):
    return RetryPolicy(retries=retries, base_delay=base_delay, sleep=lambda s: None)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def market():
    return FakeMarketplace()


@pytest.fixture
def auth():
    return FakeAuth()


@pytest.fixture
def nodes():
    return FakeNodes()


@pytest.fixture
def heartbeats():
    return RecordingHeartbeats()


@pytest.fixture
def audit():
    return RecordingAudit()


@pytest.fixture
def supervisor():
    return RecordingSupervisor()


@pytest.fixture
def controller(market, auth, nodes, heartbeats, audit, supervisor, clock):
    return JobLifecycleController(
        marketplace      = market,
        auth             = auth,
        nodes            = nodes,
        heartbeats       = heartbeats,
        audit_sink       = audit,
        supervisor       = supervisor,
        retry            = no_sleep_retry(),
        orchestrator_url = "http://orch",
        clock            = clock,
        tick_interval    = 0,
    )
