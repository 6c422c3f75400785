import json
import uuid
from typing import Any

from sqlalchemy import text


def log_match_event(
    db,
    user_id: str,
    event_type: str,
    session_id: str | None = None,
    payload: dict[str, Any] | None = None,
) -> None:
    payload = payload or {}
    db.execute(
        text(
            """
            INSERT INTO match_event (id, user_id, session_id, event_type, payload, created_at)
            VALUES (:id, :user_id, NULLIF(:session_id, ''), :event_type, :payload, CURRENT_TIMESTAMP)
            """
        ),
        {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "session_id": session_id or "",
            "event_type": event_type,
            "payload": json.dumps(payload),
        },
    )
