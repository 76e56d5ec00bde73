from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
load_dotenv(Path(__file__).resolve().parent.parent.parent / ".env")


@dataclass(frozen=True)
class DecisionConfig:
    default_deadline_hours: int = int(os.getenv("DECISION_DEADLINE_HOURS", "24"))
    min_deadline_hours: int = 1
    max_deadline_hours: int = 336  # two weeks
    visibility_window_hours: float = float(os.getenv("DECISION_VISIBILITY_HOURS", "24"))
    max_rankings: int = 3
    history_limit: int = 100
    stream_heartbeat_seconds: float = float(os.getenv("DECISION_STREAM_HEARTBEAT", "30"))
    poll_interval_seconds: float = float(os.getenv("DECISION_POLL_INTERVAL", "5"))
    reconnect_delay_seconds: float = 15.0
    complete_retries: int = 3


DEFAULT_DECISION_CONFIG = DecisionConfig()
