"""Admission policy: origin allow-list, bearer token auth and fixed-window rate limiting."""
from __future__ import annotations

import hmac
import time
from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock
from typing import Iterable, List, Optional

from loguru import logger

from .config import GatewayConfig
from .protocol import ErrorInfo, ErrorKind


def now_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass(frozen=True)
class Admission:
    allowed: bool
    error: Optional[ErrorInfo] = None

    @classmethod
    def allow(cls) -> "Admission":
        return cls(allowed=True)

    @classmethod
    def deny(cls, kind: ErrorKind, message: str) -> "Admission":
        return cls(allowed=False, error=ErrorInfo(kind=kind, message=message))


class OriginPolicy:
    """Allow-list of browser origins. ``*`` admits everything.

    Requests without an Origin header (non-browser clients) are admitted.
    """

    def __init__(self, allowed_origins: Iterable[str]):
        origins = {self._normalize(o) for o in allowed_origins if o}
        self.allow_any = "*" in origins
        self.allowed = origins - {"*"}

    @staticmethod
    def _normalize(origin: str) -> str:
        return origin.strip().rstrip("/").lower()

    def is_allowed(self, origin: Optional[str]) -> bool:
        if not origin or self.allow_any:
            return True
        return self._normalize(origin) in self.allowed


class TokenAuthenticator:
    def __init__(self, enabled: bool, token: str = ""):
        self.enabled = enabled
        self._expected = (token or "").encode("utf-8")
        if enabled and not self._expected:
            logger.warning("Auth is enabled but no token is configured; every request will be rejected")

    def verify(self, token: Optional[str]) -> bool:
        if not self.enabled:
            return True
        if not token or not self._expected:
            return False
        return hmac.compare_digest(token.encode("utf-8"), self._expected)


@dataclass
class RateWindow:
    window_start: float
    count: int = 0


class _Shard:
    __slots__ = ("lock", "windows")

    def __init__(self) -> None:
        self.lock = Lock()
        self.windows: "OrderedDict[str, RateWindow]" = OrderedDict()


class FixedWindowRateLimiter:
    """Per-key fixed window counter.

    Keys are spread over independently locked shards; each shard keeps its
    windows in LRU order and drops the least recently seen key when full.
    An over-limit hit keeps the window intact, so the key stays rejected
    until the window expires.
    """

    def __init__(self, window_ms: float, max_requests: int, max_keys: int = 10000, shards: int = 16):
        if window_ms <= 0 or max_requests < 1:
            raise ValueError("window_ms must be > 0 and max_requests >= 1")
        self.window_ms = float(window_ms)
        self.max_requests = int(max_requests)
        self._shards: List[_Shard] = [_Shard() for _ in range(max(1, shards))]
        self._per_shard_capacity = max(1, max_keys // len(self._shards))

    def _shard_for(self, key: str) -> _Shard:
        return self._shards[hash(key) % len(self._shards)]

    def hit(self, key: str, now: Optional[float] = None) -> bool:
        """Record one request for ``key``; return False when it is over the limit."""
        now = now_ms() if now is None else now
        shard = self._shard_for(key)
        with shard.lock:
            window = shard.windows.get(key)
            if window is None or now >= window.window_start + self.window_ms:
                window = RateWindow(window_start=now, count=1)
                shard.windows[key] = window
            else:
                # saturate one past the limit so the counter stays bounded
                window.count = min(window.count + 1, self.max_requests + 1)
            shard.windows.move_to_end(key)
            while len(shard.windows) > self._per_shard_capacity:
                shard.windows.popitem(last=False)
            return window.count <= self.max_requests

    def get_window(self, key: str) -> Optional[RateWindow]:
        shard = self._shard_for(key)
        with shard.lock:
            window = shard.windows.get(key)
            return RateWindow(window.window_start, window.count) if window else None

    def evict_expired(self, now: Optional[float] = None) -> int:
        now = now_ms() if now is None else now
        removed = 0
        for shard in self._shards:
            with shard.lock:
                expired = [
                    key for key, window in shard.windows.items()
                    if now >= window.window_start + self.window_ms
                ]
                for key in expired:
                    del shard.windows[key]
                removed += len(expired)
        return removed

    def __len__(self) -> int:
        return sum(len(shard.windows) for shard in self._shards)


class PolicyLayer:
    """Gate run before any command reaches the dispatcher.

    Check order is origin, then auth, then rate limit: the cheapest stateless
    checks fail first and unauthenticated calls never consume a client's quota.
    """

    def __init__(
        self,
        origin_policy: Optional[OriginPolicy] = None,
        authenticator: Optional[TokenAuthenticator] = None,
        rate_limiter: Optional[FixedWindowRateLimiter] = None,
    ):
        self.origin_policy = origin_policy or OriginPolicy(["*"])
        self.authenticator = authenticator or TokenAuthenticator(enabled=False)
        self.rate_limiter = rate_limiter

    @classmethod
    def from_config(cls, cfg: GatewayConfig) -> "PolicyLayer":
        limiter = None
        if cfg.rate_limit.enabled:
            limiter = FixedWindowRateLimiter(
                window_ms=cfg.rate_limit.window_ms,
                max_requests=cfg.rate_limit.max_requests,
                max_keys=cfg.rate_limit.max_keys,
            )
        return cls(
            origin_policy=OriginPolicy(cfg.cors.allowed_origins),
            authenticator=TokenAuthenticator(cfg.auth.enabled, cfg.auth.token),
            rate_limiter=limiter,
        )

    def check_origin(self, origin: Optional[str]) -> Admission:
        if self.origin_policy.is_allowed(origin):
            return Admission.allow()
        return Admission.deny(ErrorKind.BAD_INPUT, f"Origin not allowed: {origin}")

    def authenticate(self, auth_token: Optional[str]) -> Admission:
        if self.authenticator.verify(auth_token):
            return Admission.allow()
        message = "Missing bearer token" if not auth_token else "Invalid token"
        return Admission.deny(ErrorKind.UNAUTHORIZED, message)

    def throttle(self, client_key: str, now: Optional[float] = None) -> Admission:
        if self.rate_limiter is None or self.rate_limiter.hit(client_key, now):
            return Admission.allow()
        return Admission.deny(ErrorKind.RATE_LIMITED, "Too many requests, please try again later.")

    def admit(
        self,
        client_key: str,
        auth_token: Optional[str],
        now: Optional[float] = None,
        origin: Optional[str] = None,
    ) -> Admission:
        admission = self.check_origin(origin)
        if not admission.allowed:
            return admission
        admission = self.authenticate(auth_token)
        if not admission.allowed:
            return admission
        return self.throttle(client_key, now)
