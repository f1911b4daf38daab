"""
Job Models
==========

Plain dataclasses shared by the marketplace adapters, the confidential handoff
and the watchdog.

  - JobState:        marketplace job states (the sidecar observes, never drives)
  - JobSnapshot:     read-only view of one job as the marketplace reports it
  - ResourceProfile: what the orchestrator is told the job occupies
  - WatchedJob:      one registry entry, owned by its watch loop
  - AuthResult:      a signed node-authentication header
"""

from __future__ import annotations
from dataclasses import dataclass, field, asdict
from enum import IntEnum
from typing import Any, Optional


# ─── Job State ────────────────────────────────────────────────────────────────

class JobState(IntEnum):
    QUEUED     = 0
    RUNNING    = 1
    COMPLETED  = 2
    STOPPED    = 3
    TERMINATED = 4   # any other terminal code the ledger reports

    @property
    def is_terminal(self) -> bool:
        return self >= JobState.COMPLETED

    @classmethod
    def parse(cls, raw: Any) -> "JobState":
        """Accept the integer code or the state name (any case)."""
        if isinstance(raw, JobState):
            return raw
        if isinstance(raw, int) or (isinstance(raw, str) and raw.strip().isdigit()):
            code = int(raw)
            if code in cls._value2member_map_:
                return cls(code)
            if code > cls.TERMINATED:
                return cls.TERMINATED
            raise ValueError(f"Unknown job state code: {raw}")
        if isinstance(raw, str):
            name = raw.strip().upper()
            if name in cls.__members__:
                return cls[name]
            if name in ("DONE", "FINISHED"):
                return cls.COMPLETED
            if name in ("TIMEOUT", "EXPIRED", "FAILED"):
                return cls.TERMINATED
        raise ValueError(f"Unknown job state: {raw!r}")


# ─── Snapshots ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class JobSnapshot:
    address:        str
    state:          JobState
    node:           Optional[str]  = None   # node identifier running the job
    definition_ref: Optional[str]  = None   # content ref of the pinned definition
    result_ref:     Optional[str]  = None   # content ref of the posted results
    owner:          Optional[str]  = None   # identity that posted the job
    price:          Optional[str]  = None


@dataclass
class JobStatus:
    """What get_job returns to callers: the snapshot plus the resolved service URL."""
    job_address: str
    state:       JobState
    node:        Optional[str]
    price:       Optional[str]
    result_ref:  Optional[str]
    service_url: Optional[str] = None
    status:      str           = "success"


@dataclass
class LaunchResult:
    job_address:       str
    content_ref:       str
    deployment_handle: Optional[str] = None
    status:            str           = "success"


# ─── Resources ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ResourceProfile:
    gpu:    int   = 1
    vcpu:   int   = 8
    ram_gb: float = 32

    def to_heartbeat_fields(self) -> dict:
        return {
            "gpu_allocated":    self.gpu,
            "vcpu_allocated":   self.vcpu,
            "ram_gb_allocated": self.ram_gb,
        }


# ─── Watch Registry Entry ─────────────────────────────────────────────────────

@dataclass
class WatchedJob:
    job_address:       str
    start_time:        float
    last_extend_time:  float
    definition:        Optional[dict]   = None
    market_address:    str              = ""
    confidential:      bool             = True
    resources:         ResourceProfile  = field(default_factory=ResourceProfile)
    deployment_handle: Optional[str]    = None
    user_stopped:      bool             = False
    service_url:       Optional[str]    = None

    @property
    def can_redeploy(self) -> bool:
        return bool(self.definition) and bool(self.market_address)

    def summary(self) -> dict:
        d = asdict(self)
        d.pop("definition")
        return d


# ─── Auth ─────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class AuthResult:
    header:   str   # "<challenge>:<signature>"
    identity: str   # address of the signing identity
