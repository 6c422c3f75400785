import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("MATCH_QUEUE_BACKEND", "memory")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from buddymatch import models  # noqa: F401
from buddymatch.database import Base
from buddymatch.services.matching import MatchingEngine, MatchRequest

NOW = datetime(2026, 1, 20, 9, 58, 0, tzinfo=timezone.utc)
SLOT = datetime(2026, 1, 20, 10, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def make_request(
    user_id: str,
    *,
    duration: int = 50,
    start_time: datetime = SLOT,
    requested_at: datetime = NOW,
    timezone_name: str | None = None,
    preferred: tuple[str, ...] = (),
    session_id: str | None = None,
) -> MatchRequest:
    return MatchRequest(
        user_id=user_id,
        session_id=session_id or f"session-{user_id}",
        duration=duration,
        start_time=start_time,
        requested_at=requested_at,
        timezone=timezone_name,
        preferred_partner_ids=frozenset(preferred),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(clock):
    return MatchingEngine(clock=clock)


@pytest.fixture
def session_factory():
    db_engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=db_engine)
    factory = sessionmaker(bind=db_engine, autoflush=False, autocommit=False, future=True)
    yield factory
    db_engine.dispose()
