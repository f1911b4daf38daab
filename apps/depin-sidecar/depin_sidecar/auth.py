"""
Node Authentication
===================

Nodes accept requests carrying `Authorization: <challenge>:<signature>`, where
the challenge is a fixed message signed by the identity that posted the job.

Two interchangeable providers, chosen once when the sidecar starts:

  OfflineSigner    — signs the challenge with a locally held key (eth-account)
  DelegatedSigner  — asks the marketplace's external signing endpoint to sign on
                     behalf of the managed account, and caches the answer for
                     five minutes

Callers only ever see `produce()` and `clear()`.
"""

from __future__ import annotations
import logging
import threading
import time
from typing import Callable, Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount

from .errors import AuthUnavailable
from .models import AuthResult

log = logging.getLogger(__name__)

DEFAULT_CHALLENGE = "Hello Nosana Node!"
DELEGATED_CACHE_TTL = 5 * 60   # seconds


class AuthProvider:
    """Produces the signed header nodes expect."""

    mode = "none"

    def produce(self) -> AuthResult:
        raise NotImplementedError

    def clear(self) -> None:
        """Drop any cached signature so the next produce() signs afresh."""


# ─── Local Key ────────────────────────────────────────────────────────────────

class OfflineSigner(AuthProvider):
    mode = "wallet"

    def __init__(self, account: Optional[LocalAccount], challenge: str = DEFAULT_CHALLENGE):
        self._account  = account
        self.challenge = challenge

    @classmethod
    def from_key(cls, private_key: Optional[str], challenge: str = DEFAULT_CHALLENGE) -> "OfflineSigner":
        if not private_key or not private_key.strip():
            return cls(None, challenge)
        pk = private_key.strip()
        if pk.startswith("0x"):
            pk = pk[2:]
        return cls(Account.from_key(pk), challenge)

    @property
    def identity(self) -> Optional[str]:
        return self._account.address if self._account else None

    def produce(self) -> AuthResult:
        if self._account is None:
            raise AuthUnavailable("No local signing identity configured")
        signed = self._account.sign_message(encode_defunct(text=self.challenge))
        return AuthResult(
            header   = f"{self.challenge}:{signed.signature.hex()}",
            identity = self._account.address,
        )


# ─── Remote Signing Service ───────────────────────────────────────────────────

class DelegatedSigner(AuthProvider):
    """
    `request_fn(message)` must return `{signature, message, userAddress}`.

    The cache is keyed by message and shared by every job the sidecar watches;
    the check-then-use sequence runs under a lock, the network call does not.
    """

    mode = "api"

    def __init__(
        self,
        request_fn: Callable[[str], dict],
        challenge:  str                    = DEFAULT_CHALLENGE,
        ttl:        float                  = DELEGATED_CACHE_TTL,
        clock:      Callable[[], float]    = time.monotonic,
    ):
        if request_fn is None:
            raise AuthUnavailable("Delegated signing needs a signing endpoint")
        self._request_fn = request_fn
        self.challenge   = challenge
        self.ttl         = ttl
        self._clock      = clock
        self._lock       = threading.Lock()
        self._cached: Optional[tuple[str, AuthResult, float]] = None  # message, result, ts

    def _lookup(self, message: str, now: float) -> Optional[AuthResult]:
        with self._lock:
            if self._cached is None:
                return None
            msg, result, ts = self._cached
            if msg != message or now - ts >= self.ttl:
                return None
            return result

    def produce(self) -> AuthResult:
        now = self._clock()
        cached = self._lookup(self.challenge, now)
        if cached is not None:
            log.debug("[auth] Using cached delegated signature")
            return cached

        log.info("[auth] Requesting signed challenge from signing service…")
        try:
            data = self._request_fn(self.challenge)
        except Exception as e:
            raise AuthUnavailable(f"Delegated signing failed: {e}") from e

        signature = data.get("signature")
        message   = data.get("message") or self.challenge
        identity  = data.get("userAddress") or data.get("ownerIdentity")
        if not signature or not identity:
            raise AuthUnavailable(f"Signing service returned an incomplete answer: {sorted(data)}")

        result = AuthResult(header=f"{message}:{signature}", identity=identity)
        with self._lock:
            self._cached = (self.challenge, result, now)
        log.info(f"[auth] Received signature for {identity}")
        return result

    def clear(self) -> None:
        with self._lock:
            self._cached = None
