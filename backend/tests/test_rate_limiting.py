from __future__ import annotations

import json
import logging

import pytest

from app.core import config as app_config
from app.core.errors import RateLimited
from app.services import rate_limiter as rate_limiter_module
from app.services.rate_limiter import (
    InMemoryRateLimiter,
    NoopRateLimiter,
    enforce_rate_limit,
    get_rate_limiter,
    reset_rate_limiter,
)


def _check(
    limiter,
    now: float,
    *,
    identifier: str = "email:alice@example.com",
    limit: int = 3,
    window: int = 60,
    record: bool = True,
):
    return limiter.check(
        identifier=identifier, route_key="token_issuance", limit=limit, window_seconds=window, now=now, record=record
    )


def test_memory_limiter_allows_up_to_limit_then_blocks():
    limiter = InMemoryRateLimiter()

    results = [_check(limiter, 1000 + i) for i in range(3)]
    assert all(r.allowed for r in results)
    assert [r.remaining for r in results] == [2, 1, 0]

    blocked = _check(limiter, 1010)
    assert not blocked.allowed
    assert blocked.remaining == 0
    # Oldest accepted request (t=1000) leaves the window at t=1060.
    assert blocked.retry_after_seconds == 50


def test_memory_limiter_window_slides():
    limiter = InMemoryRateLimiter()
    for i in range(3):
        _check(limiter, 1000 + i)

    assert not _check(limiter, 1059).allowed
    # t=1000 has slid out; t=1001 and t=1002 have not.
    assert _check(limiter, 1060).allowed
    assert not _check(limiter, 1060.5).allowed
    assert _check(limiter, 1061).allowed


def test_memory_limiter_does_not_record_rejections():
    limiter = InMemoryRateLimiter()
    for i in range(3):
        _check(limiter, 1000 + i)
    for i in range(20):
        assert not _check(limiter, 1010 + i).allowed

    result = _check(limiter, 1060)
    assert result.allowed
    assert result.count == 3


def test_memory_limiter_keys_are_independent():
    limiter = InMemoryRateLimiter()
    for i in range(3):
        _check(limiter, 1000 + i)

    assert not _check(limiter, 1004).allowed
    assert _check(limiter, 1004, identifier="email:bob@example.com").allowed
    other_route = limiter.check(
        identifier="email:alice@example.com", route_key="token_verification", limit=3, window_seconds=60, now=1004
    )
    assert other_route.allowed


def test_noop_limiter_always_allows():
    limiter = NoopRateLimiter()
    for i in range(50):
        assert _check(limiter, 1000 + i, limit=1).allowed


def test_get_rate_limiter_follows_settings():
    app_config.settings.RATE_LIMIT_ENABLED = False
    reset_rate_limiter()
    assert isinstance(get_rate_limiter(), NoopRateLimiter)

    app_config.settings.RATE_LIMIT_ENABLED = True
    app_config.settings.RATE_LIMIT_BACKEND = "memory"
    reset_rate_limiter()
    limiter = get_rate_limiter()
    assert isinstance(limiter, InMemoryRateLimiter)
    assert get_rate_limiter() is limiter


def test_dynamodb_backend_without_table_falls_back_to_memory():
    app_config.settings.RATE_LIMIT_ENABLED = True
    app_config.settings.RATE_LIMIT_BACKEND = "dynamodb"
    app_config.settings.DDB_RATE_LIMIT_TABLE = ""
    app_config.settings.AWS_REGION = "us-east-1"
    reset_rate_limiter()

    assert isinstance(get_rate_limiter(), InMemoryRateLimiter)


def test_unknown_backend_is_rejected():
    app_config.settings.RATE_LIMIT_ENABLED = True
    app_config.settings.RATE_LIMIT_BACKEND = "redis"
    reset_rate_limiter()

    with pytest.raises(RuntimeError):
        get_rate_limiter()


def test_enforce_rate_limit_checks_every_identifier():
    limiter = InMemoryRateLimiter()
    kwargs = {"route_key": "token_issuance", "limit": 2, "window_seconds": 60}

    enforce_rate_limit(limiter, identifiers=["ip:10.0.0.1", "email:a@example.com"], now=1000, **kwargs)
    enforce_rate_limit(limiter, identifiers=["ip:10.0.0.1", "email:b@example.com"], now=1001, **kwargs)

    # Different email, same IP: the IP bucket is exhausted.
    with pytest.raises(RateLimited) as exc_info:
        enforce_rate_limit(limiter, identifiers=["ip:10.0.0.1", "email:c@example.com"], now=1002, **kwargs)

    assert exc_info.value.retry_after_seconds == 58
    assert exc_info.value.headers == {"Retry-After": "58"}
    assert exc_info.value.details == {"retry_after_seconds": 58, "limit": 2}


def test_decisions_are_logged_as_json(caplog):
    limiter = InMemoryRateLimiter()
    caplog.set_level(logging.INFO, logger=rate_limiter_module.logger.name)

    enforce_rate_limit(
        limiter,
        identifiers=["ip:10.0.0.1"],
        route_key="token_issuance",
        limit=1,
        window_seconds=60,
        now=1000,
        correlation_id="req-1",
    )
    with pytest.raises(RateLimited):
        enforce_rate_limit(
            limiter,
            identifiers=["ip:10.0.0.1"],
            route_key="token_issuance",
            limit=1,
            window_seconds=60,
            now=1001,
            correlation_id="req-2",
        )

    payloads = [json.loads(r.getMessage()) for r in caplog.records if r.name == rate_limiter_module.logger.name]
    assert [p["decision"] for p in payloads] == ["allow", "block"]
    assert payloads[1]["correlation_id"] == "req-2"
    assert payloads[1]["identifier"] == "ip:10.0.0.1"
    assert payloads[1]["limiter_key"] == "route:token_issuance:window:60"


def test_memory_limiter_forgets_idle_identifiers():
    limiter = InMemoryRateLimiter(sweep_interval=100)

    # Every identifier is new and each earlier one has left its window.
    for i in range(5000):
        assert _check(limiter, 1000 + i * 61, identifier=f"email:user{i}@example.com").allowed

    assert len(limiter) <= 100


def test_memory_limiter_keeps_active_identifiers_through_sweeps():
    limiter = InMemoryRateLimiter(sweep_interval=2)
    for i in range(3):
        _check(limiter, 1000 + i)
    for i in range(10):
        _check(limiter, 1003 + i, identifier=f"email:other{i}@example.com")

    assert not _check(limiter, 1020).allowed


def test_unrecorded_check_leaves_no_state():
    limiter = InMemoryRateLimiter()

    for i in range(50):
        result = _check(limiter, 1000, identifier=f"email:user{i}@example.com", record=False)
        assert result.allowed
        assert result.count == 1

    assert len(limiter) == 0
    assert [_check(limiter, 1001).remaining for _ in range(3)] == [2, 1, 0]


def test_request_blocked_by_identity_is_not_charged_to_ip():
    limiter = InMemoryRateLimiter()
    kwargs = {"route_key": "token_issuance", "limit": 2, "window_seconds": 60}

    enforce_rate_limit(limiter, identifiers=["ip:10.0.0.1", "email:a@example.com"], now=1000, **kwargs)
    enforce_rate_limit(limiter, identifiers=["ip:10.0.0.2", "email:a@example.com"], now=1001, **kwargs)
    with pytest.raises(RateLimited):
        enforce_rate_limit(limiter, identifiers=["ip:10.0.0.3", "email:a@example.com"], now=1002, **kwargs)

    # ip:10.0.0.3 still has both of its slots.
    enforce_rate_limit(limiter, identifiers=["ip:10.0.0.3", "email:b@example.com"], now=1003, **kwargs)
    enforce_rate_limit(limiter, identifiers=["ip:10.0.0.3", "email:c@example.com"], now=1004, **kwargs)
