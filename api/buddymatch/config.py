import json
import os
from typing import Any

SESSION_DURATIONS = (25, 50, 75)

MATCH_TIMEOUT_SECONDS = int(os.getenv("MATCH_TIMEOUT_SECONDS", "60"))
START_TIME_WINDOW_SECONDS = int(os.getenv("START_TIME_WINDOW_SECONDS", "300"))
MAX_ADVANCE_BOOKING_DAYS = int(os.getenv("MAX_ADVANCE_BOOKING_DAYS", "7"))

MATCH_QUEUE_BACKEND = os.getenv("MATCH_QUEUE_BACKEND", "memory").strip().lower()
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

DEFAULT_SCORING_CONFIG: dict[str, Any] = {
    "BASE_SCORE": float(os.getenv("BASE_SCORE", "100")),
    "PREFERRED_PARTNER_BONUS": float(os.getenv("PREFERRED_PARTNER_BONUS", "50")),
    "TIMEZONE_BONUS": float(os.getenv("TIMEZONE_BONUS", "20")),
    "FAIRNESS_CAP": float(os.getenv("FAIRNESS_CAP", "30")),
    "SECONDS_PER_POINT": float(os.getenv("SECONDS_PER_POINT", "1")),
}

if os.getenv("SCORING_CONFIG_JSON"):
    try:
        DEFAULT_SCORING_CONFIG.update(json.loads(os.getenv("SCORING_CONFIG_JSON", "{}")))
    except json.JSONDecodeError:
        pass

RL_MATCH_REQUEST_LIMIT = int(os.getenv("RL_MATCH_REQUEST_LIMIT", "30"))
RL_MATCH_POLL_LIMIT = int(os.getenv("RL_MATCH_POLL_LIMIT", "120"))
RL_WINDOW_SECONDS = int(os.getenv("RL_WINDOW_SECONDS", "60"))
