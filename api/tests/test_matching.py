from datetime import timedelta

import pytest

from buddymatch.services.matching import (
    REASON_MATCHED,
    REASON_NO_MATCH,
    REASON_TIMEOUT,
    MatchingEngine,
    MatchRequestError,
)
from conftest import NOW, SLOT, make_request


def test_enqueue_withdraw_and_size(engine):
    engine.enqueue(make_request("user-1"))
    assert engine.contains("user-1") is True
    assert engine.size() == 1

    engine.withdraw("user-1")
    engine.withdraw("user-1")
    assert engine.contains("user-1") is False
    assert engine.size() == 0


def test_clear_empties_queue(engine):
    engine.enqueue(make_request("user-1"))
    engine.enqueue(make_request("user-2", duration=25))
    engine.clear()
    assert engine.size() == 0


def test_second_enqueue_replaces_entry(engine):
    engine.enqueue(make_request("user-1", duration=25))
    engine.enqueue(make_request("user-1", duration=50))
    engine.enqueue(make_request("user-2", duration=50))
    assert engine.size() == 2

    result = engine.find_match("user-2")
    assert result.matched is True
    assert set(result.participants) == {"user-1", "user-2"}


def test_matches_same_duration_and_start_time(engine):
    engine.enqueue(make_request("user-1"))
    engine.enqueue(make_request("user-2"))

    result = engine.find_match("user-1")

    assert result.matched is True
    assert result.reason == REASON_MATCHED
    assert result.session_id == "session-user-1"
    assert set(result.participants) == {"user-1", "user-2"}
    assert result.matched_at == NOW
    assert engine.size() == 0
    assert engine.contains("user-1") is False
    assert engine.contains("user-2") is False


def test_match_found_from_either_side(engine):
    engine.enqueue(make_request("user-1"))
    engine.enqueue(make_request("user-2", start_time=SLOT + timedelta(minutes=3)))

    result = engine.find_match("user-2")
    assert result.matched is True
    assert result.session_id == "session-user-2"


def test_different_durations_never_match(engine):
    engine.enqueue(make_request("user-1", duration=50))
    engine.enqueue(make_request("user-2", duration=25))

    result = engine.find_match("user-1")

    assert result.matched is False
    assert result.reason == REASON_NO_MATCH
    assert result.participants is None
    assert result.matched_at is None
    assert engine.size() == 2


@pytest.mark.parametrize(
    "offset,expected",
    [
        (timedelta(minutes=4), True),
        (timedelta(minutes=5), True),
        (timedelta(minutes=5, seconds=1), False),
        (timedelta(minutes=10), False),
        (-timedelta(minutes=10), False),
    ],
)
def test_start_time_window(engine, offset, expected):
    engine.enqueue(make_request("user-1"))
    engine.enqueue(make_request("user-2", start_time=SLOT + offset))

    assert engine.find_match("user-1").matched is expected


def test_alone_in_queue_is_no_match_then_timeout(engine, clock):
    engine.enqueue(make_request("user-1"))

    first = engine.find_match("user-1")
    assert first.matched is False
    assert first.reason == REASON_NO_MATCH
    assert first.session_id == "session-user-1"

    clock.advance(59)
    assert engine.find_match("user-1").reason == REASON_NO_MATCH

    clock.advance(1)
    second = engine.find_match("user-1")
    assert second.matched is False
    assert second.reason == REASON_TIMEOUT
    # timeout is a signal only; the entry keeps its place
    assert engine.contains("user-1") is True


def test_request_waiting_two_minutes_times_out(engine):
    engine.enqueue(make_request("user-1", requested_at=NOW - timedelta(seconds=120)))

    result = engine.find_match("user-1")

    assert result.matched is False
    assert result.reason == REASON_TIMEOUT


def test_unknown_user_is_no_match(engine):
    result = engine.find_match("non-existent")
    assert result.matched is False
    assert result.reason == REASON_NO_MATCH
    assert result.session_id == ""


def test_prefers_requested_partner(engine):
    engine.enqueue(make_request("user-1", preferred=("user-3",)))
    engine.enqueue(make_request("user-2"))
    engine.enqueue(make_request("user-3"))

    result = engine.find_match("user-1")

    assert result.matched is True
    assert "user-3" in result.participants
    assert engine.contains("user-2") is True


def test_candidate_preferring_requester_wins(engine):
    engine.enqueue(make_request("user-1"))
    engine.enqueue(make_request("user-2"))
    engine.enqueue(make_request("user-3", preferred=("user-1",)))

    result = engine.find_match("user-1")
    assert set(result.participants) == {"user-1", "user-3"}


def test_mutual_preference_beats_one_sided(engine):
    engine.enqueue(make_request("user-1", preferred=("user-2", "user-3")))
    engine.enqueue(make_request("user-2"))
    engine.enqueue(make_request("user-3", preferred=("user-1",)))

    result = engine.find_match("user-1")
    assert set(result.participants) == {"user-1", "user-3"}


def test_prefers_same_timezone(engine):
    engine.enqueue(make_request("user-1", timezone_name="America/New_York"))
    engine.enqueue(make_request("user-2", timezone_name="Europe/London"))
    engine.enqueue(make_request("user-3", timezone_name="America/New_York"))

    result = engine.find_match("user-1")
    assert "user-3" in result.participants


def test_closest_start_time_wins_without_preferences(engine):
    engine.enqueue(make_request("user-1"))
    engine.enqueue(make_request("user-2", start_time=SLOT + timedelta(minutes=3)))
    engine.enqueue(make_request("user-3", start_time=SLOT - timedelta(seconds=30)))

    result = engine.find_match("user-1")
    assert "user-3" in result.participants


def test_longer_wait_wins_among_equal_candidates(engine):
    engine.enqueue(make_request("user-1"))
    engine.enqueue(make_request("user-2", requested_at=NOW - timedelta(seconds=5)))
    engine.enqueue(make_request("user-3", requested_at=NOW - timedelta(seconds=20)))

    result = engine.find_match("user-1")
    assert "user-3" in result.participants


def test_tie_goes_to_oldest_request_then_queue_order(engine):
    engine.enqueue(make_request("user-1"))
    # both fairness bonuses are capped, so scores tie
    engine.enqueue(make_request("user-2", requested_at=NOW - timedelta(seconds=40)))
    engine.enqueue(make_request("user-3", requested_at=NOW - timedelta(seconds=50)))
    engine.enqueue(make_request("user-4", requested_at=NOW - timedelta(seconds=50)))

    result = engine.find_match("user-1")
    assert set(result.participants) == {"user-1", "user-3"}


def test_process_queue_pairs_even_group():
    engine = MatchingEngine(clock=lambda: NOW)
    for i in range(1, 5):
        engine.enqueue(make_request(f"user-{i}"))

    results = engine.process_queue()

    matches = [r for r in results if r.matched]
    assert len(results) == 2
    assert len(matches) == 2
    assert engine.size() == 0
    seen = [uid for r in matches for uid in r.participants]
    assert sorted(seen) == ["user-1", "user-2", "user-3", "user-4"]


def test_process_queue_odd_group_leaves_one(engine):
    for i in range(1, 4):
        engine.enqueue(make_request(f"user-{i}"))

    results = engine.process_queue()

    matches = [r for r in results if r.matched]
    unmatched = [r for r in results if not r.matched]
    assert len(matches) == 1
    assert len(unmatched) == 1
    assert unmatched[0].reason == REASON_NO_MATCH
    assert results[0].participants == ("user-1", "user-2")
    assert results[1].session_id == "session-user-3"
    assert engine.size() == 1
    assert engine.contains("user-3") is True


def test_process_queue_timed_out_leftover_stays_queued(engine, clock):
    for i in range(1, 4):
        engine.enqueue(make_request(f"user-{i}"))
    clock.advance(90)

    results = engine.process_queue()

    assert [r.reason for r in results] == [REASON_MATCHED, REASON_TIMEOUT]
    assert engine.contains("user-3") is True
    assert engine.timed_out_user_ids() == ["user-3"]


def test_process_queue_keeps_incompatible_groups_apart(engine):
    engine.enqueue(make_request("a-25", duration=25))
    engine.enqueue(make_request("b-50", duration=50))
    engine.enqueue(make_request("c-25", duration=25))
    engine.enqueue(make_request("d-75", duration=75))
    engine.enqueue(make_request("e-50", duration=50))

    results = engine.process_queue()

    pairs = {frozenset(r.participants) for r in results if r.matched}
    assert pairs == {frozenset(("a-25", "c-25")), frozenset(("b-50", "e-50"))}
    assert [r.session_id for r in results if not r.matched] == ["session-d-75"]
    assert engine.size() == 1


def test_process_queue_is_stateless_between_calls(engine):
    engine.enqueue(make_request("user-1"))
    assert len(engine.process_queue()) == 1

    engine.enqueue(make_request("user-2"))
    results = engine.process_queue()
    assert len(results) == 1
    assert results[0].matched is True


def test_find_match_rejects_non_string_id(engine):
    engine.enqueue(make_request("user-1"))
    engine.enqueue(make_request("user-2"))

    with pytest.raises(MatchRequestError):
        engine.find_match(123)
    assert engine.size() == 2


def test_enqueue_rejects_malformed_requests(engine):
    with pytest.raises(MatchRequestError):
        engine.enqueue({"user_id": "user-1"})
    with pytest.raises(MatchRequestError):
        engine.enqueue(make_request("user-1", start_time=SLOT.replace(tzinfo=None)))
    with pytest.raises(MatchRequestError):
        engine.enqueue(make_request(""))
    assert engine.size() == 0


def test_outcome_wire_format(engine):
    engine.enqueue(make_request("user-1"))
    engine.enqueue(make_request("user-2"))

    payload = engine.find_match("user-1").to_dict()

    assert payload == {
        "matched": True,
        "sessionId": "session-user-1",
        "participants": ["user-1", "user-2"],
        "matchedAt": "2026-01-20T09:58:00+00:00",
        "reason": "matched",
    }


def test_evict_timed_out_removes_only_stale_requests(engine, clock):
    engine.enqueue(make_request("user-1"))
    engine.enqueue(make_request("user-2", duration=25))
    clock.advance(120)
    # user-1 asks again, which restarts its wait
    engine.enqueue(make_request("user-1", requested_at=clock()))

    assert engine.evict_timed_out() == ["user-2"]
    assert engine.contains("user-1") is True
    assert engine.contains("user-2") is False
    assert engine.evict_timed_out() == []
