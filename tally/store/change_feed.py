"""
tally.store.change_feed — Cross-Process Snapshots via PG LISTEN/NOTIFY
=======================================================================

A :class:`~tally.store.sql_store.SqlDocumentStore` republishes snapshots for
its own commits.  Writes from *other* processes (another API worker, an
admin script) reach it through PostgreSQL NOTIFY: every commit emits
``pg_notify('store_changed', '{"collection": …, "origin": …}')`` and this
listener asks the local store to republish the named collection.
Notifications carrying the local store's own origin are skipped.
"""

from __future__ import annotations

import json
import logging
import random
import select as _select
import threading
from typing import TYPE_CHECKING

from tally.store.sql_store import NOTIFY_CHANNEL

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from tally.store.sql_store import SqlDocumentStore

logger = logging.getLogger(__name__)


class ChangeFeed:
    """Background LISTEN thread feeding remote changes into a local store.

    Usage::

        feed = ChangeFeed(store, engine)
        feed.start()
        ...
        feed.stop()
    """

    max_backoff = 60.0
    base_backoff = 1.0
    max_reconnect_attempts = 10

    def __init__(self, store: SqlDocumentStore, engine: Engine) -> None:
        self._store = store
        self._engine = engine
        self._healthy = False
        self._failed = False
        self._thread: threading.Thread | None = None
        self._shutdown_event = threading.Event()

    # -------------------------------------------------------------------
    # Payload routing
    # -------------------------------------------------------------------
    def handle_notify(self, raw_payload: str) -> None:
        """Republish the collection named in one NOTIFY payload."""
        try:
            data = json.loads(raw_payload)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Invalid change payload (not JSON): %s", raw_payload)
            return

        collection = data.get("collection")
        if not collection:
            logger.warning("Change payload missing 'collection': %s", raw_payload)
            return
        if data.get("origin") == self._store.origin:
            return

        logger.debug("Remote change on %s — republishing", collection)
        self._store.publish({collection})

    # -------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------
    @property
    def healthy(self) -> bool:
        """True if the LISTEN thread is connected."""
        return self._healthy and not self._failed

    @property
    def failed(self) -> bool:
        """True once the listener exhausted its reconnect attempts."""
        return self._failed

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------
    def stop(self) -> None:
        """Signal the listener thread to stop and wait for it to exit."""
        self._shutdown_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=5)
            logger.info("Change feed listener stopped")

    def start(self) -> None:
        """Start the LISTEN thread (PostgreSQL only; no-op elsewhere).

        Reconnects with exponential backoff + jitter and gives up after
        ``max_reconnect_attempts`` consecutive failures.
        """
        if self._engine.dialect.name != "postgresql":
            logger.info("Change feed disabled for dialect %s", self._engine.dialect.name)
            return

        import psycopg2

        def _listen_thread() -> None:
            raw_url = self._engine.url.render_as_string(hide_password=False)
            dsn = raw_url.replace("postgresql+psycopg2://", "postgresql://")
            attempt = 0

            while not self._shutdown_event.is_set():
                conn = None
                try:
                    conn = psycopg2.connect(dsn)
                    conn.set_isolation_level(0)  # autocommit
                    cur = conn.cursor()
                    cur.execute(f"LISTEN {NOTIFY_CHANNEL};")
                    logger.info("PG LISTEN started on '%s'", NOTIFY_CHANNEL)

                    attempt = 0
                    self._healthy = True

                    while not self._shutdown_event.is_set():
                        if _select.select([conn], [], [], 5.0) == ([], [], []):
                            continue
                        conn.poll()
                        while conn.notifies:
                            notify = conn.notifies.pop(0)
                            try:
                                self.handle_notify(notify.payload or "")
                            except Exception:
                                logger.exception(
                                    "Error handling change payload: %s", notify.payload,
                                )

                except Exception:
                    self._healthy = False
                    attempt += 1

                    if attempt >= self.max_reconnect_attempts:
                        logger.critical(
                            "PG LISTEN exhausted %d retries. "
                            "Remote changes will not be pushed.",
                            self.max_reconnect_attempts,
                        )
                        self._failed = True
                        break

                    backoff = min(self.base_backoff * (2 ** (attempt - 1)), self.max_backoff)
                    wait = backoff + random.uniform(0, backoff * 0.5)
                    logger.exception(
                        "PG LISTEN connection lost (attempt %d/%d). "
                        "Reconnecting in %.1fs…",
                        attempt, self.max_reconnect_attempts, wait,
                    )
                    if self._shutdown_event.wait(timeout=wait):
                        break
                finally:
                    if conn is not None:
                        try:
                            conn.close()
                        except Exception:
                            logger.debug("Ignoring error while closing LISTEN connection")

        thread = threading.Thread(target=_listen_thread, daemon=True, name="store-change-feed")
        self._thread = thread
        thread.start()
        logger.info("Change feed listener thread started")
