"""
tally.constants — Shared constants
===================================
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Collections in the document store
# ---------------------------------------------------------------------------
EVENTS = "events"
PARTICIPANTS = "participants"
CONTESTS = "contests"


def comments_collection(event_id: str) -> str:
    """Path of the nested comments collection under one event."""
    return f"{EVENTS}/{event_id}/comments"


# ---------------------------------------------------------------------------
# Leaderboard markers
# ---------------------------------------------------------------------------
RANK_MARKERS: dict[int, str] = {
    1: "🥇",
    2: "🥈",
    3: "🥉",
}

# ---------------------------------------------------------------------------
# Defaults (overridable through config.yaml)
# ---------------------------------------------------------------------------
DEFAULT_REACTION = "👍"
COMMENT_MAX_LENGTH = 256
DEFAULT_FLAG_THRESHOLD = 3

# Upper bound on writes per committed batch (bulk migrations)
MAX_BATCH_SIZE = 500

# Event fields an owner may edit after posting
EDITABLE_EVENT_FIELDS = frozenset({"count", "description", "image"})

# Participant fields a profile edit may touch
EDITABLE_PARTICIPANT_FIELDS = frozenset({"displayName"})
