import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from ..config import RL_MATCH_POLL_LIMIT, RL_MATCH_REQUEST_LIMIT, RL_WINDOW_SECONDS
from ..deps import current_user_id, get_clock, get_matching_engine, get_session_store, require_admin
from ..schemas import MatchOutcomeResponse, MatchRequestBody, QueueStatusResponse, SweepResponse
from ..services.matching import (
    REASON_MATCHED,
    REASON_NO_MATCH,
    REASON_SOLO_MODE,
    REASON_TIMEOUT,
    MatchOutcome,
    MatchRequest,
    MatchRequestError,
)
from ..services.rate_limit import rate_limit_dependency
from ..services.sessions import booking_window_error

logger = logging.getLogger(__name__)

router = APIRouter()
scaffold_router = APIRouter()

RL_MATCH_REQUEST = rate_limit_dependency("match_request", RL_MATCH_REQUEST_LIMIT, RL_WINDOW_SECONDS)
RL_MATCH_POLL = rate_limit_dependency("match_poll", RL_MATCH_POLL_LIMIT, RL_WINDOW_SECONDS)

REASON_MESSAGES = {
    REASON_MATCHED: "Partner found. Your session is ready.",
    REASON_NO_MATCH: "Waiting for a match...",
    REASON_TIMEOUT: "No partner is available right now. You can start a solo session or keep waiting.",
    REASON_SOLO_MODE: "Starting a solo session.",
}
NOT_QUEUED_MESSAGE = "You are not in the matching queue. Request a match to join it."


def _outcome_payload(outcome: MatchOutcome) -> dict[str, Any]:
    payload = outcome.to_dict()
    payload["message"] = REASON_MESSAGES.get(outcome.reason, "")
    return payload


def _attach_session(store, outcome: MatchOutcome, now) -> None:
    if outcome.matched and not store.activate_match(outcome, now):
        logger.warning("[match] session_id=%s could not be activated for %s", outcome.session_id, outcome.participants)


@scaffold_router.get("/health")
def match_scaffold_health() -> dict[str, str]:
    return {"status": "ok", "module": "match"}


@router.post("/match", response_model=MatchOutcomeResponse)
def request_match(
    body: MatchRequestBody,
    user_id: str = Depends(current_user_id),
    engine=Depends(get_matching_engine),
    store=Depends(get_session_store),
    clock=Depends(get_clock),
    _: None = RL_MATCH_REQUEST,
) -> dict[str, Any]:
    now = clock()
    window_error = booking_window_error(body.start_time, now)
    if window_error:
        raise HTTPException(status_code=422, detail=window_error)

    request = MatchRequest(
        user_id=user_id,
        session_id=body.session_id,
        duration=body.duration,
        start_time=body.start_time,
        requested_at=now,
        timezone=body.timezone or None,
        preferred_partner_ids=frozenset(p for p in body.preferred_partner_ids if p and p != user_id),
    )
    try:
        engine.enqueue(request)
        outcome = engine.find_match(user_id)
    except MatchRequestError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    _attach_session(store, outcome, now)
    logger.info("[match] request user_id=%s session_id=%s reason=%s", user_id, body.session_id, outcome.reason)
    return _outcome_payload(outcome)


@router.post("/match/poll", response_model=MatchOutcomeResponse)
def poll_match(
    user_id: str = Depends(current_user_id),
    engine=Depends(get_matching_engine),
    store=Depends(get_session_store),
    clock=Depends(get_clock),
    _: None = RL_MATCH_POLL,
) -> dict[str, Any]:
    outcome = engine.find_match(user_id)
    if not outcome.matched and not outcome.session_id:
        # consumed as someone else's partner, or never queued
        previous = store.latest_match_for(user_id)
        if previous is not None:
            return _outcome_payload(previous)
        payload = _outcome_payload(outcome)
        payload["message"] = NOT_QUEUED_MESSAGE
        return payload

    _attach_session(store, outcome, clock())
    return _outcome_payload(outcome)


@router.delete("/match")
def withdraw_match(user_id: str = Depends(current_user_id), engine=Depends(get_matching_engine)) -> dict[str, Any]:
    engine.withdraw(user_id)
    return {"withdrawn": True}


@router.get("/match/queue", response_model=QueueStatusResponse)
def get_queue_status(user_id: str = Depends(current_user_id), engine=Depends(get_matching_engine)) -> dict[str, Any]:
    return {"size": engine.size(), "queued": engine.contains(user_id)}


@router.post("/admin/match/sweep", response_model=SweepResponse, dependencies=[Depends(require_admin)])
def sweep_queue(
    evict_timeouts: bool = False,
    engine=Depends(get_matching_engine),
    store=Depends(get_session_store),
    clock=Depends(get_clock),
) -> dict[str, Any]:
    outcomes = engine.process_queue()
    now = clock()
    for outcome in outcomes:
        _attach_session(store, outcome, now)

    evicted = engine.evict_timed_out() if evict_timeouts else []

    matched = sum(1 for o in outcomes if o.matched)
    logger.info("[sweep] evaluated=%s matched=%s evicted=%s", len(outcomes), matched, len(evicted))
    return {
        "evaluated": len(outcomes),
        "matched": matched,
        "evicted": evicted,
        "outcomes": [o.to_dict() for o in outcomes],
    }
