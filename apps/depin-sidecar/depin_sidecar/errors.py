"""
Sidecar Errors
==============

Every failure the sidecar raises on purpose derives from SidecarError.

Background threads (watch loops, handoffs, log sockets) log these and carry on;
public operations (launch / stop / extend) wrap whatever went wrong in one of
them so callers get a descriptive message.
"""

from __future__ import annotations
from typing import Optional


class SidecarError(Exception):
    """Base class for all sidecar failures."""


class AuthUnavailable(SidecarError):
    """No signing capability is configured for the call that needs one."""


class UnsupportedOperation(SidecarError):
    """The marketplace adapter in use cannot perform this operation."""


class MarketplaceError(SidecarError):
    """An HTTP surface (marketplace API, node, pinning service) answered non-2xx."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body   = body


class RateLimited(MarketplaceError):
    """HTTP 429 / Too Many Requests. Absorbed by RetryPolicy up to its bound."""


class NodeRejected(MarketplaceError):
    """The node operator's machine answered 4xx to a direct request."""


class LaunchError(SidecarError):
    """Posting a job failed."""


class LaunchTimeout(LaunchError):
    """The deployment fallback never resolved a job address."""


class HandoffTimeout(SidecarError):
    """A confidential job never reached RUNNING within the polling budget."""


class ConnectionTimeout(SidecarError):
    """The log socket was still connecting when the connect deadline passed."""
