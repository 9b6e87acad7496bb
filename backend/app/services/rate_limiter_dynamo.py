from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Any

from botocore.client import BaseClient

from app.services.rate_limiter import RateLimitResult, build_limiter_key


@dataclass(frozen=True)
class DynamoRateLimiter:
    """
    Sliding-window counter shared by every instance through one DynamoDB table.

    Each fixed window gets its own counter item. The effective count is the current window's
    counter plus the previous window's counter weighted by how much of it still overlaps the
    sliding window. Every recorded check increments the counter, rejected ones included;
    ``record=False`` only reads both counters.
    """

    client: BaseClient
    table_name: str
    ttl_buffer_seconds: int = 5
    backend_name: str = "dynamodb"

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
                window_reset_epoch=int(now_ts) + max(window_seconds, 0),
                limiter_key=limiter_key,
                window_seconds=window_seconds,
            )

        window_start = int(now_ts) - (int(now_ts) % window_seconds)
        previous_start = window_start - window_seconds
        # A counter is still needed as the "previous" window during the following window.
        expires_at = window_start + 2 * window_seconds + self.ttl_buffer_seconds

        previous_count = self._read_count(identifier=identifier, sort_key=self._window_key(limiter_key, previous_start))
        current_key = self._window_key(limiter_key, window_start)
        if record:
            attributes = self._increment_window(
                identifier=identifier,
                sort_key=current_key,
                expires_at=expires_at,
                route_key=route_key,
                limit=limit,
                window_seconds=window_seconds,
            )
            current_count = int(attributes.get("count", {}).get("N", "0"))
        else:
            # Evaluate as if this request had been counted.
            current_count = self._read_count(identifier=identifier, sort_key=current_key) + 1

        elapsed = now_ts - window_start
        overlap = max(0.0, (window_seconds - elapsed) / window_seconds)
        count = current_count + int(previous_count * overlap)
        allowed = count <= limit
        remaining = max(0, limit - count)

        retry_after = 0
        if not allowed:
            if current_count > limit or previous_count <= 0:
                retry_after = max(1, math.ceil(window_start + window_seconds - now_ts))
            else:
                # Wait until enough of the previous window has slid out.
                needed_elapsed = window_seconds * (1 - (limit - current_count) / previous_count)
                retry_after = max(1, math.ceil(window_start + needed_elapsed - now_ts))

        return RateLimitResult(
            allowed=allowed,
            retry_after_seconds=retry_after,
            limit=limit,
            remaining=remaining,
            count=count,
            window_reset_epoch=window_start + window_seconds,
            limiter_key=limiter_key,
            window_seconds=window_seconds,
        )

    @staticmethod
    def _window_key(limiter_key: str, window_start: int) -> str:
        return f"{limiter_key}:start:{window_start}"

    def _read_count(self, *, identifier: str, sort_key: str) -> int:
        response = self.client.get_item(
            TableName=self.table_name,
            Key={"pk": {"S": identifier}, "sk": {"S": sort_key}},
            ConsistentRead=True,
            ProjectionExpression="#count",
            ExpressionAttributeNames={"#count": "count"},
        )
        item = response.get("Item") or {}
        return int(item.get("count", {}).get("N", "0"))

    def _increment_window(
        self,
        *,
        identifier: str,
        sort_key: str,
        expires_at: int,
        route_key: str,
        limit: int,
        window_seconds: int,
    ) -> dict[str, Any]:
        response = self.client.update_item(
            TableName=self.table_name,
            Key={"pk": {"S": identifier}, "sk": {"S": sort_key}},
            UpdateExpression=(
                "SET expires_at = :expires_at, #window_seconds = :window_seconds, "
                "#request_limit = :request_limit, #route_key = :route_key, #item_type = :item_type "
                "ADD #count :inc"
            ),
            ExpressionAttributeNames={
                "#count": "count",
                "#window_seconds": "window_seconds",
                "#request_limit": "request_limit",
                "#route_key": "route_key",
                "#item_type": "item_type",
            },
            ExpressionAttributeValues={
                ":inc": {"N": "1"},
                ":expires_at": {"N": str(expires_at)},
                ":window_seconds": {"N": str(window_seconds)},
                ":request_limit": {"N": str(limit)},
                ":route_key": {"S": route_key},
                ":item_type": {"S": "counter"},
            },
            ReturnValues="UPDATED_NEW",
        )
        return response.get("Attributes", {})
