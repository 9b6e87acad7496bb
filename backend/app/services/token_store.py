from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from app.models.verification_token import InvalidationReason, VerificationToken


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_aware_utc(dt: datetime | None) -> datetime | None:
    # SQLite round-trips tz-aware datetimes as naive. Compare consistently.
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class TokenStore:
    """
    Persistence for verification token rows.

    Rows are only ever inserted or moved to a terminal state here; nothing is deleted.
    Every state change is a conditional UPDATE on ``is_valid = true`` so two writers can
    never both move the same row out of the valid state.
    """

    def __init__(self, db: Session):
        self.db = db

    def next_sequence(self, user_id: int, purpose: str) -> int:
        current = (
            self.db.query(func.max(VerificationToken.sequence))
            .filter(VerificationToken.user_id == user_id, VerificationToken.purpose == purpose)
            .scalar()
        )
        return int(current or 0) + 1

    def supersede_valid(self, user_id: int, purpose: str, *, now: datetime) -> int:
        result = self.db.execute(
            update(VerificationToken)
            .where(
                VerificationToken.user_id == user_id,
                VerificationToken.purpose == purpose,
                VerificationToken.is_valid.is_(True),
            )
            .values(
                is_valid=False,
                invalidated_at=now,
                invalidation_reason=InvalidationReason.SUPERSEDED.value,
            )
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    def insert(
        self,
        *,
        user_id: int,
        email: str,
        purpose: str,
        sequence: int,
        hashed_token: str,
        created_at: datetime,
        expires_at: datetime,
    ) -> VerificationToken:
        record = VerificationToken(
            user_id=user_id,
            email=email,
            purpose=purpose,
            sequence=sequence,
            hashed_token=hashed_token,
            is_valid=True,
            created_at=created_at,
            expires_at=expires_at,
        )
        self.db.add(record)
        # Flush inside the issuing transaction so constraint violations surface here.
        self.db.flush()
        return record

    def find_by_hash(self, hashed_token: str) -> VerificationToken | None:
        return (
            self.db.query(VerificationToken)
            .filter(VerificationToken.hashed_token == hashed_token)
            .first()
        )

    def current_valid(self, user_id: int, purpose: str) -> VerificationToken | None:
        return (
            self.db.query(VerificationToken)
            .filter(
                VerificationToken.user_id == user_id,
                VerificationToken.purpose == purpose,
                VerificationToken.is_valid.is_(True),
            )
            .first()
        )

    def consume(self, record: VerificationToken, *, now: datetime) -> bool:
        """
        Single conditional write that marks the token used. Returns False when another
        caller already moved the row out of the valid state.
        """
        return self._transition(record, is_valid=False, used_at=now)

    def expire(self, record: VerificationToken, *, now: datetime) -> bool:
        return self._transition(
            record,
            is_valid=False,
            invalidated_at=now,
            invalidation_reason=InvalidationReason.EXPIRED.value,
        )

    def _transition(self, record: VerificationToken, **values) -> bool:
        result = self.db.execute(
            update(VerificationToken)
            .where(VerificationToken.id == record.id, VerificationToken.is_valid.is_(True))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.expire(record)
        return int(result.rowcount or 0) == 1

    def stats_since(self, since: datetime) -> list[dict]:
        rows = (
            self.db.query(
                VerificationToken.purpose,
                VerificationToken.is_valid,
                func.count(VerificationToken.id),
            )
            .filter(VerificationToken.created_at >= since)
            .group_by(VerificationToken.purpose, VerificationToken.is_valid)
            .order_by(VerificationToken.purpose, VerificationToken.is_valid)
            .all()
        )
        return [
            {"purpose": purpose, "is_valid": bool(is_valid), "count": int(count)}
            for purpose, is_valid, count in rows
        ]
