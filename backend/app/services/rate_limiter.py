from __future__ import annotations

import json
import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Protocol

import boto3

from app.core.config import settings
from app.core.errors import RateLimited

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    retry_after_seconds: int
    limit: int
    remaining: int
    count: int
    window_reset_epoch: int
    limiter_key: str
    window_seconds: int


class RateLimiter(Protocol):
    backend_name: str

    def check(
        self,
        *,
        identifier: str,
        route_key: str,
        limit: int,
        window_seconds: int,
        now: float | None = None,
        record: bool = True,
    ) -> RateLimitResult:
        """
        With ``record=False`` the request is evaluated as if it were counted but nothing is
        stored, so callers can test several keys before charging any of them.
        """
        ...


def build_limiter_key(route_key: str, window_seconds: int) -> str:
    return f"route:{route_key}:window:{window_seconds}"


class NoopRateLimiter:
    """
    Disabled limiter that always allows requests. Used when rate limiting is turned off
    or configuration is incomplete.
    """

    backend_name = "disabled"

    def check(
        self,
        *,
        identifier: str,
        route_key: str,
        limit: int,
        window_seconds: int,
        now: float | None = None,
        record: bool = True,
    ) -> RateLimitResult:
        now_ts = int(now or time.time())
        return RateLimitResult(
            allowed=True,
            retry_after_seconds=0,
            limit=limit,
            remaining=max(0, limit),
            count=0,
            window_reset_epoch=now_ts + window_seconds,
            limiter_key=f"noop:{route_key}:window:{window_seconds}",
            window_seconds=window_seconds,
        )


class InMemoryRateLimiter:
    """
    Exact sliding-window log kept in process memory.

    Limits are per instance: with several instances behind a load balancer a client can make
    up to ``limit`` requests on each of them. Use the DynamoDB backend when one global limit is
    required. Rejected requests are not recorded, so a blocked client regains capacity as soon
    as its oldest accepted request leaves the window.

    Keys whose log has emptied are dropped, and every ``sweep_interval`` checks all keys are
    pruned, so memory stays proportional to the clients active within one window.
    """

    backend_name = "memory"

    def __init__(self, *, sweep_interval: int = 1000) -> None:
        # (identifier, limiter_key) -> (accepted timestamps, window_seconds)
        self._events: dict[tuple[str, str], tuple[deque[float], int]] = {}
        self._lock = threading.Lock()
        self._sweep_interval = max(1, sweep_interval)
        self._checks_since_sweep = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def check(
        self,
        *,
        identifier: str,
        route_key: str,
        limit: int,
        window_seconds: int,
        now: float | None = None,
        record: bool = True,
    ) -> RateLimitResult:
        now_ts = float(now if now is not None else time.time())
        limiter_key = build_limiter_key(route_key, window_seconds)

        if limit <= 0 or window_seconds <= 0:
            return RateLimitResult(
                allowed=True,
                retry_after_seconds=0,
                limit=limit,
                remaining=0,
                count=0,
                window_reset_epoch=int(now_ts),
                limiter_key=limiter_key,
                window_seconds=window_seconds,
            )

        key = (identifier, limiter_key)
        with self._lock:
            self._checks_since_sweep += 1
            if self._checks_since_sweep >= self._sweep_interval:
                self._sweep(now_ts)

            entry = self._events.get(key)
            events: deque[float] = entry[0] if entry else deque()
            _prune(events, now_ts - window_seconds)

            if len(events) >= limit:
                oldest = events[0]
                return RateLimitResult(
                    allowed=False,
                    retry_after_seconds=max(1, math.ceil(oldest + window_seconds - now_ts)),
                    limit=limit,
                    remaining=0,
                    count=len(events),
                    window_reset_epoch=math.ceil(oldest + window_seconds),
                    limiter_key=limiter_key,
                    window_seconds=window_seconds,
                )

            if record:
                events.append(now_ts)
                self._events[key] = (events, window_seconds)
                count = len(events)
            else:
                if not events:
                    self._events.pop(key, None)
                count = len(events) + 1
            oldest = events[0] if events else now_ts

        return RateLimitResult(
            allowed=True,
            retry_after_seconds=0,
            limit=limit,
            remaining=max(0, limit - count),
            count=count,
            window_reset_epoch=math.ceil(oldest + window_seconds),
            limiter_key=limiter_key,
            window_seconds=window_seconds,
        )

    def _sweep(self, now_ts: float) -> None:
        # Caller holds the lock.
        self._checks_since_sweep = 0
        for key, (events, window_seconds) in list(self._events.items()):
            _prune(events, now_ts - window_seconds)
            if not events:
                del self._events[key]


def _prune(events: deque[float], cutoff: float) -> None:
    while events and events[0] <= cutoff:
        events.popleft()


_limiter: RateLimiter | None = None
_lock = threading.Lock()


def get_rate_limiter() -> RateLimiter:
    global _limiter
    if _limiter is not None:
        return _limiter
    with _lock:
        if _limiter is None:
            _limiter = _build_rate_limiter()
    return _limiter


def reset_rate_limiter() -> None:
    """
    Test helper to ensure a fresh limiter instance is constructed after settings change.
    """

    global _limiter
    with _lock:
        _limiter = None


def _build_rate_limiter() -> RateLimiter:
    if not settings.RATE_LIMIT_ENABLED:
        logger.info("Rate limiting disabled via RATE_LIMIT_ENABLED=false; using NoopRateLimiter")
        return NoopRateLimiter()

    backend = (settings.RATE_LIMIT_BACKEND or "memory").strip().lower()
    if backend == "memory":
        logger.info("Rate limiting enabled using per-instance in-memory sliding window")
        return InMemoryRateLimiter()
    if backend != "dynamodb":
        raise RuntimeError(f"Unsupported RATE_LIMIT_BACKEND={backend!r}. Supported: memory, dynamodb.")

    table_name = settings.DDB_RATE_LIMIT_TABLE
    region = settings.AWS_REGION
    if not table_name:
        logger.warning("RATE_LIMIT_BACKEND=dynamodb but DDB_RATE_LIMIT_TABLE is unset; using in-memory limiter")
        return InMemoryRateLimiter()
    if not region:
        logger.warning("RATE_LIMIT_BACKEND=dynamodb but AWS_REGION is unset; using in-memory limiter")
        return InMemoryRateLimiter()

    from app.services.rate_limiter_dynamo import DynamoRateLimiter

    client = boto3.client("dynamodb", region_name=region)
    logger.info("Rate limiting enabled using DynamoDB table %s in %s", table_name, region)
    return DynamoRateLimiter(client, table_name=table_name)


def log_rate_limit_decision(*, result: RateLimitResult, identifier: str, route_key: str, **context) -> None:
    payload = {
        **context,
        "identifier": identifier,
        "route_key": route_key,
        "limiter_key": result.limiter_key,
        "window_seconds": result.window_seconds,
        "limit": result.limit,
        "current_count": result.count,
        "remaining": result.remaining,
        "reset_epoch": result.window_reset_epoch,
        "decision": "allow" if result.allowed else "block",
    }
    logger.info(json.dumps(payload, separators=(",", ":"), default=str))


def enforce_rate_limit(
    limiter: RateLimiter,
    *,
    identifiers: list[str],
    route_key: str,
    limit: int,
    window_seconds: int,
    now: float | None = None,
    **context,
) -> None:
    """
    Checks every identifier (e.g. client IP and target email) and raises ``RateLimited`` on the
    first one over its limit.

    With several identifiers all of them are tested without recording first, so a request blocked
    by one key is not charged against the others.
    """
    limits = {"route_key": route_key, "limit": limit, "window_seconds": window_seconds, "now": now}

    if len(identifiers) > 1:
        for identifier in identifiers:
            result = limiter.check(identifier=identifier, record=False, **limits)
            if not result.allowed:
                log_rate_limit_decision(result=result, identifier=identifier, route_key=route_key, **context)
                raise RateLimited(result.retry_after_seconds, limit=result.limit)

    for identifier in identifiers:
        result = limiter.check(identifier=identifier, **limits)
        log_rate_limit_decision(result=result, identifier=identifier, route_key=route_key, **context)
        if not result.allowed:
            raise RateLimited(result.retry_after_seconds, limit=result.limit)
