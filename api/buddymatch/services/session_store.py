import logging
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..database import SessionLocal
from ..models import SessionParticipant, StudySession
from .events import log_match_event
from .matching import REASON_MATCHED, MatchOutcome

logger = logging.getLogger(__name__)


def _seen_by(user_id: str, session_id: str, participants, matched_at: datetime | None) -> MatchOutcome:
    partner_id = next(p for p in participants if p != user_id)
    return MatchOutcome(
        matched=True,
        session_id=session_id,
        reason=REASON_MATCHED,
        participants=(user_id, partner_id),
        matched_at=matched_at,
    )


class InMemorySessionStore:
    """Records activations without a database; used by the memory backend and tests."""

    def __init__(self) -> None:
        self.participants: dict[str, set[str]] = {}
        self.active_sessions: set[str] = set()
        self.activations: list[MatchOutcome] = []
        self._latest_by_user: dict[str, MatchOutcome] = {}

    def activate_match(self, outcome: MatchOutcome, now: datetime) -> bool:
        if not outcome.matched or not outcome.participants:
            return False
        self.participants.setdefault(outcome.session_id, set()).update(outcome.participants)
        self.active_sessions.add(outcome.session_id)
        self.activations.append(outcome)
        for user_id in outcome.participants:
            self._latest_by_user[user_id] = outcome
        return True

    def latest_match_for(self, user_id: str) -> MatchOutcome | None:
        outcome = self._latest_by_user.get(user_id)
        if outcome is None:
            return None
        return _seen_by(user_id, outcome.session_id, outcome.participants, outcome.matched_at)


class SqlSessionStore:
    """Attaches both participants of a matched outcome to the requester's session and activates it."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self._session_factory = session_factory

    def activate_match(self, outcome: MatchOutcome, now: datetime) -> bool:
        if not outcome.matched or not outcome.participants:
            return False

        with self._session_factory() as db:
            session_row = db.get(StudySession, outcome.session_id)
            if session_row is None:
                logger.warning("[session] session_id=%s not found; match not attached", outcome.session_id)
                return False

            existing = {
                p.user_id: p
                for p in db.execute(
                    select(SessionParticipant).where(SessionParticipant.session_id == outcome.session_id)
                ).scalars()
            }
            for user_id in outcome.participants:
                participant = existing.get(user_id)
                if participant is None:
                    db.add(SessionParticipant(session_id=outcome.session_id, user_id=user_id, joined_at=now))
                else:
                    participant.joined_at = now

            db.execute(
                update(StudySession)
                .where(StudySession.id == outcome.session_id)
                .values(status="active")
            )

            first, second = outcome.participants
            for user_id, partner_id in ((first, second), (second, first)):
                log_match_event(
                    db,
                    user_id=user_id,
                    event_type="matched",
                    session_id=outcome.session_id,
                    payload={"partner_id": partner_id, "matched_at": outcome.matched_at.isoformat() if outcome.matched_at else None},
                )
            db.commit()

        logger.info("[session] activated session_id=%s participants=%s", outcome.session_id, list(outcome.participants))
        return True

    def latest_match_for(self, user_id: str) -> MatchOutcome | None:
        """Most recent active session ``user_id`` was matched into, from the caller's side."""
        with self._session_factory() as db:
            mine = db.execute(
                select(SessionParticipant)
                .join(StudySession, StudySession.id == SessionParticipant.session_id)
                .where(
                    SessionParticipant.user_id == user_id,
                    SessionParticipant.joined_at.is_not(None),
                    StudySession.status == "active",
                )
                .order_by(SessionParticipant.joined_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            if mine is None:
                return None
            partner_id = db.execute(
                select(SessionParticipant.user_id)
                .where(SessionParticipant.session_id == mine.session_id, SessionParticipant.user_id != user_id)
                .order_by(SessionParticipant.joined_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            if partner_id is None:
                return None
            matched_at = mine.joined_at
            if matched_at.tzinfo is None:
                matched_at = matched_at.replace(tzinfo=timezone.utc)
            return _seen_by(user_id, mine.session_id, (user_id, partner_id), matched_at)
