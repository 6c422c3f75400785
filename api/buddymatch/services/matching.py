from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable

from ..config import DEFAULT_SCORING_CONFIG, MATCH_TIMEOUT_SECONDS, START_TIME_WINDOW_SECONDS

logger = logging.getLogger(__name__)

REASON_MATCHED = "matched"
REASON_NO_MATCH = "no_match"
REASON_TIMEOUT = "timeout"
# Reserved for a solo-session fallback handled outside the engine.
REASON_SOLO_MODE = "solo_mode"

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MatchRequestError(ValueError):
    """Raised for structurally invalid input. The queue is never mutated when this is raised."""


@dataclass(frozen=True)
class MatchRequest:
    user_id: str
    session_id: str
    duration: int
    start_time: datetime
    requested_at: datetime
    timezone: str | None = None
    preferred_partner_ids: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        object.__setattr__(self, "preferred_partner_ids", frozenset(self.preferred_partner_ids or ()))


@dataclass
class MatchOutcome:
    matched: bool
    session_id: str
    reason: str
    participants: tuple[str, str] | None = None
    matched_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "matched": self.matched,
            "sessionId": self.session_id,
            "participants": list(self.participants) if self.participants else None,
            "matchedAt": self.matched_at.isoformat() if self.matched_at else None,
            "reason": self.reason,
        }


def _is_aware(value: Any) -> bool:
    return isinstance(value, datetime) and value.tzinfo is not None and value.utcoffset() is not None


def require_user_id(user_id: Any) -> str:
    if not isinstance(user_id, str):
        raise MatchRequestError(f"user_id must be a string, got {type(user_id).__name__}")
    return user_id


def validate_request(request: Any) -> MatchRequest:
    if not isinstance(request, MatchRequest):
        raise MatchRequestError(f"expected MatchRequest, got {type(request).__name__}")
    if not isinstance(request.user_id, str) or not request.user_id.strip():
        raise MatchRequestError("user_id must be a non-empty string")
    if not isinstance(request.session_id, str) or not request.session_id.strip():
        raise MatchRequestError("session_id must be a non-empty string")
    if isinstance(request.duration, bool) or not isinstance(request.duration, int):
        raise MatchRequestError("duration must be an integer number of minutes")
    if not _is_aware(request.start_time) or not _is_aware(request.requested_at):
        raise MatchRequestError("start_time and requested_at must be timezone-aware datetimes")
    if request.timezone is not None and not isinstance(request.timezone, str):
        raise MatchRequestError("timezone must be a string when set")
    return request


def start_time_delta_seconds(a: MatchRequest, b: MatchRequest) -> float:
    return abs((a.start_time - b.start_time).total_seconds())


def is_compatible(
    requester: MatchRequest,
    candidate: MatchRequest,
    window_seconds: float = START_TIME_WINDOW_SECONDS,
) -> bool:
    if candidate.user_id == requester.user_id:
        return False
    if candidate.duration != requester.duration:
        return False
    return start_time_delta_seconds(requester, candidate) <= window_seconds


def find_candidates(
    requester: MatchRequest,
    entries: Iterable[MatchRequest],
    window_seconds: float = START_TIME_WINDOW_SECONDS,
) -> list[MatchRequest]:
    return [c for c in entries if is_compatible(requester, c, window_seconds)]


def score_candidate(
    requester: MatchRequest,
    candidate: MatchRequest,
    now: datetime,
    cfg: dict[str, Any] | None = None,
) -> float:
    """Comparative score for pairing ``requester`` with ``candidate``; larger is better.

    Preference bonuses are independent, so a mutual preference earns both. The
    start-time penalty is linear and uncapped, while the fairness bonus only
    depends on how long the candidate has waited and is capped.
    """
    cfg = cfg or DEFAULT_SCORING_CONFIG
    score = float(cfg.get("BASE_SCORE", 100.0))

    bonus = float(cfg.get("PREFERRED_PARTNER_BONUS", 50.0))
    if candidate.user_id in requester.preferred_partner_ids:
        score += bonus
    if requester.user_id in candidate.preferred_partner_ids:
        score += bonus

    seconds_per_point = float(cfg.get("SECONDS_PER_POINT", 1.0)) or 1.0
    score -= start_time_delta_seconds(requester, candidate) / seconds_per_point

    if requester.timezone and candidate.timezone and requester.timezone == candidate.timezone:
        score += float(cfg.get("TIMEZONE_BONUS", 20.0))

    waited = (now - candidate.requested_at).total_seconds()
    score += min(float(cfg.get("FAIRNESS_CAP", 30.0)), waited)
    return score


def select_partner(
    requester: MatchRequest,
    candidates: list[MatchRequest],
    now: datetime,
    cfg: dict[str, Any] | None = None,
) -> MatchRequest | None:
    if not candidates:
        return None
    # sorted() is stable, so queue order breaks any tie left after requested_at.
    ranked = sorted(
        candidates,
        key=lambda c: (-score_candidate(requester, c, now, cfg), c.requested_at),
    )
    return ranked[0]


def wait_reason(requester: MatchRequest, now: datetime, timeout_seconds: float = MATCH_TIMEOUT_SECONDS) -> str:
    if now - requester.requested_at >= timedelta(seconds=timeout_seconds):
        return REASON_TIMEOUT
    return REASON_NO_MATCH


def unknown_user_outcome() -> MatchOutcome:
    return MatchOutcome(matched=False, session_id="", reason=REASON_NO_MATCH)


def matched_outcome(requester: MatchRequest, partner: MatchRequest, now: datetime) -> MatchOutcome:
    return MatchOutcome(
        matched=True,
        session_id=requester.session_id,
        reason=REASON_MATCHED,
        participants=(requester.user_id, partner.user_id),
        matched_at=now,
    )


class MatchingEngine:
    """In-memory matchmaking queue.

    Entries are kept in insertion order, which is the iteration order of a
    batch pass. Every matching attempt runs its read, filter, score, select
    and two-entry removal under one lock, so a candidate can only ever be
    consumed by a single pair.
    """

    def __init__(
        self,
        clock: Clock = utc_now,
        timeout_seconds: float = MATCH_TIMEOUT_SECONDS,
        window_seconds: float = START_TIME_WINDOW_SECONDS,
        scoring_config: dict[str, Any] | None = None,
    ) -> None:
        self._queue: dict[str, MatchRequest] = {}
        self._lock = threading.RLock()
        self._clock = clock
        self._timeout_seconds = timeout_seconds
        self._window_seconds = window_seconds
        self._scoring_config = scoring_config

    def enqueue(self, request: MatchRequest) -> None:
        validate_request(request)
        with self._lock:
            replaced = request.user_id in self._queue
            self._queue[request.user_id] = request
        logger.debug("[match] enqueued user_id=%s duration=%s replaced=%s", request.user_id, request.duration, replaced)

    def withdraw(self, user_id: str) -> None:
        with self._lock:
            removed = self._queue.pop(user_id, None)
        if removed is not None:
            logger.debug("[match] withdrew user_id=%s", user_id)

    def contains(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._queue

    def size(self) -> int:
        with self._lock:
            return len(self._queue)

    def clear(self) -> None:
        with self._lock:
            self._queue.clear()

    def find_match(self, user_id: str) -> MatchOutcome:
        require_user_id(user_id)
        with self._lock:
            return self._find_match_locked(user_id, self._clock())

    def process_queue(self) -> list[MatchOutcome]:
        outcomes: list[MatchOutcome] = []
        consumed: set[str] = set()
        with self._lock:
            now = self._clock()
            for user_id in list(self._queue):
                if user_id in consumed:
                    continue
                outcome = self._find_match_locked(user_id, now)
                if outcome.matched and outcome.participants:
                    consumed.update(outcome.participants)
                outcomes.append(outcome)
        matched = sum(1 for o in outcomes if o.matched)
        logger.info("[match] batch pass evaluated=%s matched=%s", len(outcomes), matched)
        return outcomes

    def timed_out_user_ids(self) -> list[str]:
        with self._lock:
            now = self._clock()
            return [uid for uid, req in self._queue.items() if wait_reason(req, now, self._timeout_seconds) == REASON_TIMEOUT]

    def evict_timed_out(self) -> list[str]:
        """Withdraw every entry whose own request has timed out, in queue order.

        The check and the removal share one critical section, so a request
        replaced by a fresh ``enqueue`` is never evicted on the strength of
        its stale predecessor.
        """
        with self._lock:
            evicted = self.timed_out_user_ids()
            for user_id in evicted:
                del self._queue[user_id]
        if evicted:
            logger.info("[match] evicted timed out user_ids=%s", evicted)
        return evicted

    def _find_match_locked(self, user_id: str, now: datetime) -> MatchOutcome:
        requester = self._queue.get(user_id)
        if requester is None:
            return unknown_user_outcome()

        candidates = find_candidates(requester, self._queue.values(), self._window_seconds)
        partner = select_partner(requester, candidates, now, self._scoring_config)
        if partner is None:
            return MatchOutcome(
                matched=False,
                session_id=requester.session_id,
                reason=wait_reason(requester, now, self._timeout_seconds),
            )

        del self._queue[requester.user_id]
        del self._queue[partner.user_id]
        logger.info(
            "[match] paired user_id=%s partner_id=%s session_id=%s candidates=%s",
            requester.user_id,
            partner.user_id,
            requester.session_id,
            len(candidates),
        )
        return matched_outcome(requester, partner, now)
