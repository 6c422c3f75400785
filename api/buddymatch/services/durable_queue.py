from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import MATCH_TIMEOUT_SECONDS, START_TIME_WINDOW_SECONDS
from ..database import SessionLocal
from ..models import MatchingQueueEntry
from .matching import (
    REASON_NO_MATCH,
    Clock,
    MatchOutcome,
    MatchRequest,
    find_candidates,
    matched_outcome,
    require_user_id,
    select_partner,
    unknown_user_outcome,
    utc_now,
    validate_request,
    wait_reason,
)

logger = logging.getLogger(__name__)

_MAX_POOL_ATTEMPTS = 3


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _row_values(request: MatchRequest) -> dict[str, Any]:
    return {
        "user_id": request.user_id,
        "session_id": request.session_id,
        "duration": request.duration,
        "start_time": _to_utc(request.start_time),
        "requested_at": _to_utc(request.requested_at),
        "timezone": request.timezone,
        "preferred_partner_ids": sorted(request.preferred_partner_ids) or None,
    }


def _to_request(row: MatchingQueueEntry) -> MatchRequest:
    return MatchRequest(
        user_id=row.user_id,
        session_id=row.session_id,
        duration=int(row.duration),
        start_time=_to_utc(row.start_time),
        requested_at=_to_utc(row.requested_at),
        timezone=row.timezone,
        preferred_partner_ids=frozenset(row.preferred_partner_ids or ()),
    )


class DurableMatchQueue:
    """Matchmaking queue backed by the ``matching_queue`` table.

    Filtering, scoring and tie-breaks are the shared functions from
    ``services.matching``. Each pairing runs in its own transaction: the
    requester and its prefiltered candidates are locked together in ``seq``
    order, and the pair is only committed when the conditional delete
    removed both rows.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Clock = utc_now,
        timeout_seconds: float = MATCH_TIMEOUT_SECONDS,
        window_seconds: float = START_TIME_WINDOW_SECONDS,
        scoring_config: dict[str, Any] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._timeout_seconds = timeout_seconds
        self._window_seconds = window_seconds
        self._scoring_config = scoring_config

    def enqueue(self, request: MatchRequest) -> None:
        validate_request(request)
        values = _row_values(request)
        with self._session_factory() as db:
            row = db.execute(
                select(MatchingQueueEntry).where(MatchingQueueEntry.user_id == request.user_id).with_for_update()
            ).scalar_one_or_none()
            if row is None:
                db.add(MatchingQueueEntry(**values))
            else:
                for key, value in values.items():
                    setattr(row, key, value)
            try:
                db.commit()
            except IntegrityError:
                # Lost an insert race for the same user; keep the winner's seq.
                db.rollback()
                db.execute(
                    update(MatchingQueueEntry)
                    .where(MatchingQueueEntry.user_id == request.user_id)
                    .values(**values)
                )
                db.commit()

    def withdraw(self, user_id: str) -> None:
        with self._session_factory() as db:
            db.execute(delete(MatchingQueueEntry).where(MatchingQueueEntry.user_id == user_id))
            db.commit()

    def contains(self, user_id: str) -> bool:
        with self._session_factory() as db:
            found = db.execute(
                select(MatchingQueueEntry.seq).where(MatchingQueueEntry.user_id == user_id)
            ).first()
        return found is not None

    def size(self) -> int:
        with self._session_factory() as db:
            return int(db.execute(select(func.count()).select_from(MatchingQueueEntry)).scalar_one())

    def clear(self) -> None:
        with self._session_factory() as db:
            db.execute(delete(MatchingQueueEntry))
            db.commit()

    def find_match(self, user_id: str) -> MatchOutcome:
        require_user_id(user_id)
        outcome = self._match_one(user_id, self._clock())
        return outcome if outcome is not None else unknown_user_outcome()

    def process_queue(self) -> list[MatchOutcome]:
        now = self._clock()
        with self._session_factory() as db:
            user_ids = list(db.execute(select(MatchingQueueEntry.user_id).order_by(MatchingQueueEntry.seq)).scalars())

        outcomes: list[MatchOutcome] = []
        consumed: set[str] = set()
        for user_id in user_ids:
            if user_id in consumed:
                continue
            outcome = self._match_one(user_id, now)
            if outcome is None:
                # withdrawn or consumed by a concurrent caller since the snapshot
                continue
            if outcome.matched and outcome.participants:
                consumed.update(outcome.participants)
            outcomes.append(outcome)
        logger.info(
            "[match] durable batch pass evaluated=%s matched=%s",
            len(outcomes),
            sum(1 for o in outcomes if o.matched),
        )
        return outcomes

    def timed_out_user_ids(self) -> list[str]:
        cutoff = _to_utc(self._clock()) - timedelta(seconds=self._timeout_seconds)
        with self._session_factory() as db:
            rows = db.execute(
                select(MatchingQueueEntry.user_id)
                .where(MatchingQueueEntry.requested_at <= cutoff)
                .order_by(MatchingQueueEntry.seq)
            ).scalars()
            return list(rows)

    def evict_timed_out(self) -> list[str]:
        """Delete every timed-out row in one transaction and return the user ids.

        The delete repeats the cutoff, so a row refreshed by a concurrent
        ``enqueue`` after the select is left in place.
        """
        cutoff = _to_utc(self._clock()) - timedelta(seconds=self._timeout_seconds)
        with self._session_factory() as db:
            stale = list(
                db.execute(
                    select(MatchingQueueEntry.user_id)
                    .where(MatchingQueueEntry.requested_at <= cutoff)
                    .order_by(MatchingQueueEntry.seq)
                    .with_for_update()
                ).scalars()
            )
            if not stale:
                db.rollback()
                return []
            db.execute(
                delete(MatchingQueueEntry)
                .where(
                    MatchingQueueEntry.user_id.in_(stale),
                    MatchingQueueEntry.requested_at <= cutoff,
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
        logger.info("[match] evicted timed out user_ids=%s", stale)
        return stale

    def _pool_query(self, requester: MatchRequest):
        """Requester row plus SQL-prefiltered candidates, locked in ``seq`` order.

        Every caller takes its locks in the same order, and no locked row is
        skipped, so concurrent callers wait for each other instead of seeing
        a partial candidate set.
        """
        window = timedelta(seconds=self._window_seconds)
        return (
            select(MatchingQueueEntry)
            .where(
                or_(
                    MatchingQueueEntry.user_id == requester.user_id,
                    and_(
                        MatchingQueueEntry.duration == requester.duration,
                        MatchingQueueEntry.start_time >= _to_utc(requester.start_time) - window,
                        MatchingQueueEntry.start_time <= _to_utc(requester.start_time) + window,
                    ),
                )
            )
            .order_by(MatchingQueueEntry.seq)
            .with_for_update()
            .execution_options(populate_existing=True)
        )

    def _lock_pool(self, db: Session, user_id: str) -> tuple[MatchRequest, list[MatchRequest]] | None:
        for _ in range(_MAX_POOL_ATTEMPTS):
            row = db.execute(
                select(MatchingQueueEntry).where(MatchingQueueEntry.user_id == user_id)
            ).scalar_one_or_none()
            if row is None:
                return None
            unlocked = _to_request(row)

            pool = [_to_request(r) for r in db.execute(self._pool_query(unlocked)).scalars().all()]
            requester = next((r for r in pool if r.user_id == user_id), None)
            if requester is None:
                return None
            if (requester.duration, requester.start_time) == (unlocked.duration, unlocked.start_time):
                return requester, pool
            # replaced by a concurrent enqueue between the read and the lock
            db.rollback()
        raise RuntimeError(f"queue entry for user_id={user_id} kept changing while locking")

    def _match_one(self, user_id: str, now: datetime) -> MatchOutcome | None:
        with self._session_factory() as db:
            locked = self._lock_pool(db, user_id)
            if locked is None:
                db.rollback()
                return None
            requester, pool = locked

            candidates = find_candidates(requester, pool, self._window_seconds)
            partner = select_partner(requester, candidates, now, self._scoring_config)
            if partner is None:
                db.rollback()
                return MatchOutcome(
                    matched=False,
                    session_id=requester.session_id,
                    reason=wait_reason(requester, now, self._timeout_seconds),
                )

            deleted = db.execute(
                delete(MatchingQueueEntry)
                .where(MatchingQueueEntry.user_id.in_([requester.user_id, partner.user_id]))
                .execution_options(synchronize_session=False)
            ).rowcount
            if deleted != 2:
                db.rollback()
                logger.warning(
                    "[match] conditional delete removed %s rows for user_id=%s partner_id=%s; pair abandoned",
                    deleted,
                    requester.user_id,
                    partner.user_id,
                )
                return MatchOutcome(matched=False, session_id=requester.session_id, reason=REASON_NO_MATCH)
            db.commit()

        logger.info(
            "[match] paired user_id=%s partner_id=%s session_id=%s candidates=%s",
            requester.user_id,
            partner.user_id,
            requester.session_id,
            len(candidates),
        )
        return matched_outcome(requester, partner, now)
