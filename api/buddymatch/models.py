import uuid
from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from .database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _uuid_str() -> str:
    return str(uuid.uuid4())


class MatchingQueueEntry(Base):
    __tablename__ = "matching_queue"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, unique=True)
    session_id = Column(String, nullable=False)
    duration = Column(Integer, nullable=False)
    start_time = Column(DateTime(timezone=True), nullable=False)
    requested_at = Column(DateTime(timezone=True), nullable=False)
    timezone = Column(String, nullable=True)
    preferred_partner_ids = Column(JSONType, nullable=True)

    __table_args__ = (
        Index("idx_matching_queue_duration_start", "duration", "start_time"),
    )


class StudySession(Base):
    __tablename__ = "sessions"

    id = Column(String, primary_key=True, default=_uuid_str)
    start_time = Column(DateTime(timezone=True), nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="scheduled")
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class SessionParticipant(Base):
    __tablename__ = "session_participants"

    id = Column(String, primary_key=True, default=_uuid_str)
    session_id = Column(String, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String, nullable=False)
    goal = Column(Text, nullable=True)
    goal_completed = Column(Boolean, nullable=True)
    joined_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("session_id", "user_id", name="uq_session_participant"),
        Index("idx_session_participants_user_id", "user_id"),
    )


class MatchEvent(Base):
    __tablename__ = "match_event"

    id = Column(String, primary_key=True, default=_uuid_str)
    user_id = Column(String, nullable=False, index=True)
    session_id = Column(String, nullable=True)
    event_type = Column(String, nullable=False)
    payload = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
