"""
Tally — Live Contest Feed, Journal & Leaderboard Sync
=====================================================
Participants log consumption events during a timed contest.  Tally keeps
the feed, the per-participant running totals and the reaction/flag sets in
step with a shared document store that many clients write to at once, and
turns the totals into a tie-aware leaderboard.

Package layout::

    tally/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Collection names, rank markers, defaults
    ├── errors.py          # Error taxonomy + structured error logging
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # The ``documents`` table
    ├── store/
    │   ├── base.py        # Document store contract, field ops, queries
    │   ├── sql_store.py   # SQLAlchemy implementation of the contract
    │   └── change_feed.py # PG LISTEN/NOTIFY cross-process snapshots
    ├── engine/
    │   ├── entities.py    # Participant / Event / Comment / Contest mappers
    │   ├── ranking.py     # Tie-aware standings (pure)
    │   └── contest.py     # Contest phase rules (pure)
    ├── services/
    │   ├── event_service.py          # Event create/edit, feed paging, journal
    │   ├── sync_service.py           # Live mirrors + async service facade
    │   ├── reconciliation_service.py # Aggregate drift correction
    │   ├── ledger_service.py         # Reactions, flags, legacy migration
    │   ├── soft_delete_service.py    # Delete / restore with compensation
    │   ├── comment_service.py        # Per-event comments
    │   ├── participant_service.py    # First login, profile, hide/unhide
    │   └── contest_service.py        # Contest CRUD + active contest
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # JWT → Actor, shared store/service
        ├── serializers.py # Entity → JSON dicts
        └── routes/        # Public + admin REST endpoints
"""

__version__ = "0.1.0"
