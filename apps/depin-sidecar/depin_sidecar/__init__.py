"""
DePIN Sidecar
=============

Runs GPU compute jobs on a decentralized compute marketplace on behalf of the
orchestrator.

What it does:
  1. Launch jobs — for confidential jobs only a placeholder goes to public IPFS
  2. Hand the real definition straight to the node once it is RUNNING
  3. Watch every job: auto-extend its lease, heartbeat the orchestrator
  4. Redeploy jobs that end after a healthy run; report short-lived ones as failed
  5. Stream a job's logs from its node over a websocket
  6. Audit every lifecycle step to the control plane's audit log

Auth:
  - API key  → the marketplace signs node challenges for us (cached 5 min)
  - otherwise → a local key signs them (eth-account)

Requirements:
  pip install requests eth-account websocket-client python-dotenv

Usage:
  depin-sidecar --api-key <key> run
  depin-sidecar launch job.json --market <market-address> --watch
"""

__version__ = "0.1.0"

from .auth import AuthProvider, DelegatedSigner, OfflineSigner
from .errors import (
    AuthUnavailable,
    ConnectionTimeout,
    HandoffTimeout,
    LaunchError,
    LaunchTimeout,
    MarketplaceError,
    NodeRejected,
    RateLimited,
    SidecarError,
    UnsupportedOperation,
)
from .logs import LogStreamer
from .marketplace import ApiMarketplaceClient, ContentStore, LedgerMarketplaceClient, MarketplaceClient
from .models import AuthResult, JobSnapshot, JobState, JobStatus, LaunchResult, ResourceProfile, WatchedJob
from .retry import RetryPolicy
from .watchdog import JobLifecycleController

__all__ = [
    "__version__",
    "AuthProvider",
    "DelegatedSigner",
    "OfflineSigner",
    "AuthUnavailable",
    "ConnectionTimeout",
    "HandoffTimeout",
    "LaunchError",
    "LaunchTimeout",
    "MarketplaceError",
    "NodeRejected",
    "RateLimited",
    "SidecarError",
    "UnsupportedOperation",
    "LogStreamer",
    "ApiMarketplaceClient",
    "ContentStore",
    "LedgerMarketplaceClient",
    "MarketplaceClient",
    "AuthResult",
    "JobSnapshot",
    "JobState",
    "JobStatus",
    "LaunchResult",
    "ResourceProfile",
    "WatchedJob",
    "RetryPolicy",
    "JobLifecycleController",
]
