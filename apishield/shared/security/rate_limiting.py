"""
Tiered rate limiting.

Fixed-window request counting per (client, tier). Each request is
charged to exactly one tier, chosen by the longest matching path prefix.
Rates use the slowapi / limits notation ("5/15 minutes").

A client may see up to twice a tier's limit across a window boundary.
That is the accepted cost of O(1) state per client.
"""

import math
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Optional, Union

from limits import parse
from slowapi.util import get_remote_address
from starlette.requests import Request
from starlette.responses import JSONResponse

GENERAL_TIER = "general"
AUTH_TIER = "auth"
HEAVY_TIER = "heavy"

TIER_MESSAGES = {
    GENERAL_TIER: "Too many requests from this IP, please try again later.",
    AUTH_TIER: "Too many authentication attempts, please try again later.",
    HEAVY_TIER: "Too many API requests from this IP, please try again later.",
}

HTTP_429 = 429


@dataclass(frozen=True)
class Tier:
    """A named rate-limit policy bound to a set of path prefixes."""

    tier_id: str
    max_requests: int
    window_seconds: float
    paths: tuple[str, ...]
    message: str

    @classmethod
    def from_rate(
        cls, tier_id: str, rate: str, paths: Iterable[str], message: Optional[str] = None
    ) -> "Tier":
        """Build a tier from a rate string such as ``"100/15 minutes"``."""
        item = parse(rate)
        return cls(
            tier_id=tier_id,
            max_requests=item.amount,
            window_seconds=float(item.get_expiry()),
            paths=tuple(paths),
            message=message or TIER_MESSAGES.get(tier_id, TIER_MESSAGES[GENERAL_TIER]),
        )


@dataclass
class WindowCounter:
    """Requests seen from one client on one tier in the current window."""

    key: str
    tier: str
    count: int
    window_start: float


@dataclass(frozen=True)
class Allow:
    """Admission decision for a request within the tier limit."""

    limit: int
    remaining: int
    reset_at: float


@dataclass(frozen=True)
class Deny:
    """Rejection decision for a request over the tier limit."""

    limit: int
    retry_after: float
    reset_at: float
    remaining: int = 0


Decision = Union[Allow, Deny]


class _Slot:
    """Lock and current window counter for one (client, tier) pair."""

    __slots__ = ("lock", "counter", "retired")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.counter: Optional[WindowCounter] = None
        self.retired = False

    def expired(self, now: float, window_seconds: float) -> bool:
        return self.counter is None or now >= self.counter.window_start + window_seconds


class RateLimiter:
    """Fixed-window limiter owning every window counter.

    A stale counter is replaced the next time its client is seen, and
    pairs whose window has ended are dropped by a sweep that runs at most
    once per shortest tier window. Updates for one (client, tier) pair
    are serialized by a per-pair lock.

    Args:
        tiers: The tiers to enforce. Tier ids must be unique.
    """

    def __init__(self, tiers: Iterable[Tier]) -> None:
        self._tiers = {tier.tier_id: tier for tier in tiers}
        self._by_specificity = sorted(
            (
                (prefix, tier)
                for tier in self._tiers.values()
                for prefix in tier.paths
            ),
            key=lambda entry: len(entry[0]),
            reverse=True,
        )
        self._slots: dict[tuple[str, str], _Slot] = {}
        self._slots_lock = threading.Lock()
        self._sweep_interval = min(
            (tier.window_seconds for tier in self._tiers.values()), default=60.0
        )
        self._next_sweep: Optional[float] = None

    @property
    def tiers(self) -> dict[str, Tier]:
        """Configured tiers keyed by tier id."""
        return dict(self._tiers)

    @property
    def tracked_pairs(self) -> int:
        """Number of (client, tier) pairs currently holding a counter slot."""
        return len(self._slots)

    def tier_for(self, path: str) -> Optional[Tier]:
        """Return the tier whose longest path prefix matches ``path``."""
        for prefix, tier in self._by_specificity:
            if _matches(path, prefix):
                return tier
        return None

    def admit(self, client_key: str, tier_id: str, now: float) -> Decision:
        """Charge one request to ``client_key`` on ``tier_id``.

        Args:
            client_key: Rate-limiting identity of the caller.
            tier_id: Id of a configured tier.
            now: Current time in epoch seconds.

        Returns:
            Allow while the window count is within the tier maximum,
            otherwise Deny with the seconds left in the window.

        Raises:
            KeyError: If ``tier_id`` is not configured.
        """
        tier = self._tiers[tier_id]
        self._sweep(now)
        while True:
            slot = self._slot(client_key, tier_id)
            with slot.lock:
                if slot.retired:
                    continue
                counter = slot.counter
                if counter is None or not (
                    counter.window_start <= now < counter.window_start + tier.window_seconds
                ):
                    counter = WindowCounter(client_key, tier_id, 0, now)
                    slot.counter = counter
                counter.count += 1
                count = counter.count
                reset_at = counter.window_start + tier.window_seconds
                break

        if count > tier.max_requests:
            return Deny(limit=tier.max_requests, retry_after=reset_at - now, reset_at=reset_at)
        return Allow(
            limit=tier.max_requests,
            remaining=tier.max_requests - count,
            reset_at=reset_at,
        )

    def _slot(self, client_key: str, tier_id: str) -> _Slot:
        pair = (client_key, tier_id)
        slot = self._slots.get(pair)
        if slot is None:
            with self._slots_lock:
                slot = self._slots.setdefault(pair, _Slot())
        return slot

    def _sweep(self, now: float) -> None:
        """Drop slots whose window has ended.

        A slot still locked by an admit in progress is skipped. A dropped
        slot is marked retired so an admit already holding it starts over.
        """
        if self._next_sweep is not None and now < self._next_sweep:
            return
        with self._slots_lock:
            if self._next_sweep is not None and now < self._next_sweep:
                return
            self._next_sweep = now + self._sweep_interval
            for pair, slot in list(self._slots.items()):
                if not slot.lock.acquire(blocking=False):
                    continue
                try:
                    if slot.expired(now, self._tiers[pair[1]].window_seconds):
                        slot.retired = True
                        del self._slots[pair]
                finally:
                    slot.lock.release()


def _matches(path: str, prefix: str) -> bool:
    if prefix == "/":
        return True
    prefix = prefix.rstrip("/")
    return path == prefix or path.startswith(prefix + "/")


def build_tiers(
    general_rate: str,
    auth_rate: str,
    heavy_rate: str,
    auth_paths: Iterable[str],
    heavy_paths: Iterable[str],
) -> list[Tier]:
    """Build the general, auth and heavy-API tiers."""
    return [
        Tier.from_rate(GENERAL_TIER, general_rate, ["/"]),
        Tier.from_rate(AUTH_TIER, auth_rate, auth_paths),
        Tier.from_rate(HEAVY_TIER, heavy_rate, heavy_paths),
    ]


def client_key(request: Request, trust_forwarded_for: bool = False) -> str:
    """Return the rate-limiting identity of a request.

    With ``trust_forwarded_for`` the leftmost X-Forwarded-For entry is used.
    Clients can set that entry freely, so only enable it behind a proxy
    that overwrites the header with the real peer address.
    """
    if trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return get_remote_address(request)


def rate_limit_headers(decision: Decision) -> dict[str, str]:
    """Standard RateLimit-* headers for a decision. Legacy X-RateLimit-* are not sent."""
    headers = {
        "RateLimit-Limit": str(decision.limit),
        "RateLimit-Remaining": str(max(decision.remaining, 0)),
        "RateLimit-Reset": str(math.ceil(decision.reset_at)),
    }
    if isinstance(decision, Deny):
        headers["Retry-After"] = str(max(math.ceil(decision.retry_after), 1))
    return headers


def rate_limit_exceeded_response(tier: Tier, decision: Deny) -> JSONResponse:
    """Build the 429 response for a denied request.

    Args:
        tier: The tier that denied the request.
        decision: The deny decision.

    Returns:
        A 429 JSON response with the tier message and rate-limit headers.
    """
    return JSONResponse(
        status_code=HTTP_429,
        content={"success": False, "error": tier.message},
        headers=rate_limit_headers(decision),
    )
