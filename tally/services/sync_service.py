"""
tally.services.sync_service — Live Mirrors & Async Service Facade
==================================================================

The consumer side of the store: an ``asyncio`` service that keeps local
*mirrors* of store queries current through push subscriptions and exposes
every write as an awaitable.

Threading model:
    1. Store calls are synchronous; they run on worker threads via
       :func:`~tally.database.engine.run_db`.
    2. Snapshot callbacks fire on whichever thread committed the write.
       :class:`Mirror` never touches its state there.  It re-posts the
       snapshot onto the owning loop with ``call_soon_threadsafe``.
    3. Every posted callback carries the mirror's *generation* from the
       moment it subscribed.  ``close()`` bumps the generation, so late
       deliveries from a cancelled subscription are dropped on arrival.

Writes never merge into a mirror optimistically.  The subscription delivers
the post-write snapshot and the mirror is replaced wholesale.  For the event
feed that also discards pages appended by :meth:`EventFeed.load_more`; the
cursor goes back to the end of the head page.

Failure policy:
    * ``ValidationError`` / ``TransportError`` → logged through
      :func:`~tally.errors.log_error`, recorded in ``last_error`` and
      answered with a falsy result.
    * ``NotFoundError`` → propagated to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from tally.config import TallyConfig
from tally.database.engine import run_db
from tally.engine.entities import (
    Actor,
    Comment,
    Contest,
    Event,
    Participant,
    comment_from_record,
    participant_from_record,
)
from tally.engine.ranking import LeaderInfo, Standing, compute_standings, leader_info
from tally.errors import TallyError, TransportError, ValidationError, log_error
from tally.services import (
    comment_service,
    contest_service,
    event_service,
    ledger_service,
    participant_service,
    reconciliation_service,
    soft_delete_service,
)
from tally.services.ledger_service import MigrationResult
from tally.services.reconciliation_service import SyncResult

if TYPE_CHECKING:
    from tally.store.base import Cursor, DocumentStore, Query, QuerySnapshot, Subscription

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Mirrors
# ---------------------------------------------------------------------------
class Mirror(Generic[T]):
    """Local copy of one store query, replaced on every pushed snapshot.

    Parameters
    ----------
    name:
        Label used in logs and error strings (``events``, ``participants`` …).
    store:
        The document store to subscribe to.
    query:
        The query to mirror.
    transform:
        Maps a raw :class:`QuerySnapshot` to the mirrored items.
    """

    def __init__(
        self,
        name: str,
        store: DocumentStore,
        query: Query,
        transform: Callable[[QuerySnapshot], list[T]],
    ) -> None:
        self.name = name
        self.query = query
        self._store = store
        self._transform = transform

        self.items: list[T] = []
        self.loading = False
        self.error: str | None = None

        self._generation = 0
        self._subscription: Subscription | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._ready: asyncio.Event | None = None
        self._opening: asyncio.Task | None = None

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def is_open(self) -> bool:
        return self._subscription is not None and self._subscription.active

    # -- lifecycle ----------------------------------------------------------
    async def open(self) -> None:
        """Subscribe and wait for the first snapshot (or failure).

        Concurrent callers on the same loop share one in-flight open.  A
        mirror opened on a different (e.g. finished) event loop is
        re-subscribed on the current one.
        """
        loop = asyncio.get_running_loop()
        opening = self._opening
        if opening is not None and self._loop is loop and not opening.done():
            await asyncio.shield(opening)
            return
        if self.is_open:
            if self._loop is loop:
                return
            self.close()
        self._loop = loop
        self._generation += 1
        self._ready = asyncio.Event()
        self.loading = True
        self.error = None
        self._opening = opening = loop.create_task(
            self._subscribe(self._generation, self._ready),
        )
        await asyncio.shield(opening)

    async def _subscribe(self, generation: int, ready: asyncio.Event) -> None:
        try:
            sub = await run_db(
                self._store.subscribe,
                self.query,
                lambda snapshot: self._post(generation, self._apply_snapshot, snapshot),
                lambda exc: self._post(generation, self._apply_error, exc),
            )
        except TallyError as exc:
            if generation == self._generation:
                self.items = []
                self.loading = False
                self.error = f"Failed to set up {self.name} listener"
            log_error(
                f"Failed to set up {self.name} listener", exc,
                context="sync", action=f"setup-{self.name}-listener",
            )
            return

        if generation != self._generation:
            # closed while the subscription was being set up
            sub.cancel()
            return
        self._subscription = sub
        await ready.wait()

    def close(self) -> None:
        """Cancel the subscription.  Updates already in flight are dropped."""
        self._generation += 1
        self._opening = None
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        self.loading = False
        if self._ready is not None:
            self._ready.set()

    # -- delivery -----------------------------------------------------------
    def _post(self, generation: int, handler: Callable[[Any], None], payload: Any) -> None:
        """Hand a store-thread callback over to the owning loop."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._dispatch, generation, handler, payload)
        except RuntimeError:
            logger.debug("%s mirror: loop closed, update dropped", self.name)

    def _dispatch(self, generation: int, handler: Callable[[Any], None], payload: Any) -> None:
        if generation != self._generation:
            logger.debug(
                "%s mirror: stale update dropped (generation %d, current %d)",
                self.name, generation, self._generation,
            )
            return
        handler(payload)

    def _apply_snapshot(self, snapshot: QuerySnapshot) -> None:
        self.items = self._transform(snapshot)
        self.loading = False
        self.error = None
        self._mark_ready()

    def _apply_error(self, exc: Exception) -> None:
        self.loading = False
        self.error = f"Failed to load {self.name}"
        log_error(
            f"Failed to load {self.name}", exc,
            context="sync", action=f"{self.name}-listener",
        )
        self._mark_ready()

    def _mark_ready(self) -> None:
        if self._ready is not None:
            self._ready.set()


class EventFeed(Mirror[Event]):
    """The paginated event feed.

    The subscription covers the head page only.  :meth:`load_more` appends
    older pages with one-off queries; the next pushed snapshot resets the
    feed to the head page again.
    """

    def __init__(self, store: DocumentStore, cfg: TallyConfig, group_id: str | None = None) -> None:
        super().__init__(
            "events",
            store,
            event_service.events_query(group_id, limit=cfg.raw_window),
            transform=lambda snapshot: [],
        )
        self.group_id = group_id
        self._cfg = cfg
        self.cursor: Cursor | None = None
        self.has_more = False
        self.loading_more = False
        self._head_version = 0

    def _page(self, snapshot: QuerySnapshot) -> event_service.Page:
        return event_service.page_events(
            snapshot, self._cfg.page_size, self._cfg.default_reaction,
        )

    def _apply_snapshot(self, snapshot: QuerySnapshot) -> None:
        page = self._page(snapshot)
        self._head_version += 1
        self.items = page.items
        self.cursor = page.cursor
        self.has_more = page.has_more
        self.loading = False
        self.error = None
        self._mark_ready()

    async def load_more(self) -> bool:
        """Append the next page.  Returns True if anything was fetched."""
        if not self.is_open or not self.has_more or self.loading_more or self.cursor is None:
            return False

        generation = self._generation
        head_version = self._head_version
        self.loading_more = True
        try:
            snapshot = await run_db(self._store.query, self.query.after(self.cursor))
        except TransportError as exc:
            if generation == self._generation:
                self.error = "Failed to load more events"
            log_error(
                "Failed to load more events", exc,
                context="sync", action="load-more-events",
            )
            return False
        finally:
            if generation == self._generation:
                self.loading_more = False

        if generation != self._generation or head_version != self._head_version:
            logger.debug("Discarding older page fetched against a replaced feed")
            return False

        page = self._page(snapshot)
        seen = {event.id for event in self.items}
        self.items = self.items + [e for e in page.items if e.id not in seen]
        self.cursor = page.cursor or self.cursor
        self.has_more = page.has_more
        return True


# ---------------------------------------------------------------------------
# Service facade
# ---------------------------------------------------------------------------
class SyncService:
    """Async facade over the store and the live mirrors.

    Usage::

        service = SyncService(store, cfg)
        await service.start()
        events = await service.get_events()
        await service.add_event({"count": 3}, actor)
        ...
        await service.close()
    """

    def __init__(self, store: DocumentStore, cfg: TallyConfig | None = None) -> None:
        self.store = store
        self.cfg = cfg or TallyConfig()
        self.last_error: str | None = None

        # group_id → feed, least recently used first
        self._feeds: OrderedDict[str | None, EventFeed] = OrderedDict()
        self._participants = Mirror(
            "participants",
            store,
            participant_service.participants_query(),
            transform=lambda snapshot: [participant_from_record(r) for r in snapshot],
        )
        self._comments: dict[str, Mirror[Comment]] = {}

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------
    async def start(self, group_id: str | None = None) -> None:
        """Open the participants mirror and the feed for *group_id*."""
        await self._participants.open()
        await self.feed(group_id)
        logger.info("Sync service started (group=%s)", group_id or "*")

    async def close(self) -> None:
        """Release every subscription."""
        for feed in self._feeds.values():
            feed.close()
        for mirror in self._comments.values():
            mirror.close()
        self._participants.close()
        self._feeds.clear()
        self._comments.clear()
        logger.info("Sync service closed")

    async def feed(self, group_id: str | None = None) -> EventFeed:
        """Return the (opened) feed mirror for *group_id*.

        At most ``cfg.max_live_feeds`` feeds stay subscribed; the least
        recently used one is closed when another group is opened.
        """
        feed = self._feeds.get(group_id)
        if feed is None:
            feed = self._feeds[group_id] = EventFeed(self.store, self.cfg, group_id)
            while len(self._feeds) > self.cfg.max_live_feeds:
                evicted_id, evicted = self._feeds.popitem(last=False)
                evicted.close()
                logger.debug("Closed idle feed for group %s", evicted_id or "*")
        else:
            self._feeds.move_to_end(group_id)
        await feed.open()
        return feed

    @property
    def participants(self) -> Mirror[Participant]:
        return self._participants

    # -------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------
    def _fail(self, action: str, exc: TallyError, participant_id: str | None = None) -> None:
        self.last_error = str(exc)
        level = logging.WARNING if isinstance(exc, ValidationError) else logging.ERROR
        log_error(
            f"{action} failed", exc,
            context="sync", action=action, participant_id=participant_id, level=level,
        )

    async def _call(
        self,
        action: str,
        func: Callable[..., Any],
        *args: Any,
        participant_id: str | None = None,
        **kwargs: Any,
    ) -> tuple[bool, Any]:
        """Run a sync service function off-loop; return ``(ok, result)``."""
        try:
            result = await run_db(func, *args, **kwargs)
        except (ValidationError, TransportError) as exc:
            self._fail(action, exc, participant_id)
            return False, None
        self.last_error = None
        return True, result

    # -------------------------------------------------------------------
    # Event feed
    # -------------------------------------------------------------------
    async def get_events(self, group_id: str | None = None) -> list[Event]:
        """Mirrored, non-deleted events, newest first."""
        feed = await self.feed(group_id)
        return list(feed.items)

    async def load_more(self, group_id: str | None = None) -> bool:
        feed = await self.feed(group_id)
        return await feed.load_more()

    async def get_journal(self, participant_id: str) -> list[Event]:
        ok, events = await self._call(
            "get-journal", event_service.journal,
            self.store, participant_id, self.cfg.default_reaction,
            participant_id=participant_id,
        )
        return events if ok else []

    async def add_event(self, data: dict[str, Any], actor: Actor) -> Event | None:
        _, event = await self._call(
            "add-event", event_service.create_event, self.store, data, actor, self.cfg,
            participant_id=actor.id,
        )
        return event

    async def update_event(self, event_id: str, patch: dict[str, Any], actor: Actor) -> bool:
        ok, _ = await self._call(
            "update-event", event_service.update_event, self.store, event_id, patch, actor,
            participant_id=actor.id,
        )
        return ok

    async def delete_event(self, event_id: str, actor: Actor) -> bool:
        ok, _ = await self._call(
            "delete-event", soft_delete_service.delete_event, self.store, event_id, actor,
            participant_id=actor.id,
        )
        return ok

    async def restore_event(self, event_id: str, actor: Actor) -> bool:
        ok, _ = await self._call(
            "restore-event", soft_delete_service.restore_event, self.store, event_id, actor,
            participant_id=actor.id,
        )
        return ok

    async def get_deleted_events(self) -> list[Event]:
        ok, events = await self._call(
            "get-deleted-events", soft_delete_service.get_deleted_events, self.store,
        )
        return events if ok else []

    # -------------------------------------------------------------------
    # Participants & standings
    # -------------------------------------------------------------------
    async def get_participants(self, include_hidden: bool = False) -> list[Participant]:
        """Mirrored participants ordered by total, highest first."""
        await self._participants.open()
        people = list(self._participants.items)
        if include_hidden:
            return people
        return [p for p in people if not p.is_hidden]

    async def get_standings(self) -> list[Standing]:
        people = await self.get_participants()
        return compute_standings((p.id, p.total_score) for p in people)

    async def get_leader(self) -> LeaderInfo:
        people = await self.get_participants()
        return leader_info((p.id, p.total_score) for p in people)

    async def ensure_participant(self, actor: Actor) -> Participant | None:
        _, participant = await self._call(
            "ensure-participant", participant_service.ensure_participant, self.store, actor,
            participant_id=actor.id,
        )
        return participant

    async def update_participant(
        self, participant_id: str, patch: dict[str, Any], actor: Actor,
    ) -> bool:
        ok, _ = await self._call(
            "update-participant", participant_service.update_participant,
            self.store, participant_id, patch, actor,
            participant_id=participant_id,
        )
        return ok

    async def hide_participant(self, participant_id: str, actor: Actor) -> bool:
        ok, _ = await self._call(
            "hide-participant", participant_service.hide_participant,
            self.store, participant_id, actor,
            participant_id=participant_id,
        )
        return ok

    async def unhide_participant(self, participant_id: str, actor: Actor) -> bool:
        ok, _ = await self._call(
            "unhide-participant", participant_service.unhide_participant,
            self.store, participant_id, actor,
            participant_id=participant_id,
        )
        return ok

    async def get_hidden_participants(self) -> list[Participant]:
        ok, people = await self._call(
            "get-hidden-participants", participant_service.get_hidden_participants, self.store,
        )
        return people if ok else []

    # -------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------
    async def sync_aggregates(self) -> SyncResult:
        try:
            result = await run_db(reconciliation_service.sync_aggregates, self.store)
        except TransportError as exc:
            self._fail("sync-aggregates", exc)
            return SyncResult(updated_count=0, errors=[f"Failed to read aggregates: {exc}"])
        self.last_error = result.errors[0] if result.errors else None
        return result

    # -------------------------------------------------------------------
    # Reactions & flags
    # -------------------------------------------------------------------
    async def toggle_reaction(
        self, event_id: str, participant_id: str, symbol: str,
    ) -> bool | None:
        """Returns the new membership, or None if the toggle was rejected."""
        ok, member = await self._call(
            "toggle-reaction", ledger_service.toggle_reaction,
            self.store, event_id, participant_id, symbol,
            default_symbol=self.cfg.default_reaction,
            participant_id=participant_id,
        )
        return bool(member) if ok else None

    async def toggle_upvote(self, event_id: str, participant_id: str) -> bool | None:
        """Deprecated: toggles the default reaction symbol."""
        logger.debug("toggle_upvote is deprecated; use toggle_reaction")
        return await self.toggle_reaction(event_id, participant_id, self.cfg.default_reaction)

    async def toggle_flag(self, event_id: str, participant_id: str) -> bool | None:
        """Returns True if the event is now flagged, or None if rejected."""
        ok, member = await self._call(
            "toggle-flag", ledger_service.toggle_flag, self.store, event_id, participant_id,
            participant_id=participant_id,
        )
        return bool(member) if ok else None

    async def clear_flags(self, event_id: str) -> bool:
        ok, _ = await self._call("clear-flags", ledger_service.clear_flags, self.store, event_id)
        return ok

    async def list_flagged(self, threshold: int | None = None) -> list[Event]:
        if threshold is None:
            threshold = self.cfg.flag_threshold
        ok, events = await self._call(
            "list-flagged", ledger_service.list_flagged, self.store, threshold,
        )
        return events if ok else []

    async def migrate_legacy_reactions(self) -> MigrationResult | None:
        _, result = await self._call(
            "migrate-reactions", ledger_service.migrate_legacy_reactions,
            self.store, self.cfg.default_reaction,
        )
        return result

    # -------------------------------------------------------------------
    # Comments
    # -------------------------------------------------------------------
    async def watch_comments(self, event_id: str) -> Mirror[Comment]:
        """Open (or reuse) a live comment mirror for *event_id*."""
        mirror = self._comments.get(event_id)
        if mirror is None:
            mirror = self._comments[event_id] = Mirror(
                "comments",
                self.store,
                comment_service.comments_query(event_id),
                transform=lambda snapshot: [comment_from_record(r, event_id) for r in snapshot],
            )
        await mirror.open()
        return mirror

    def unwatch_comments(self, event_id: str) -> None:
        mirror = self._comments.pop(event_id, None)
        if mirror is not None:
            mirror.close()

    async def list_comments(self, event_id: str) -> list[Comment]:
        ok, comments = await self._call(
            "list-comments", comment_service.list_comments, self.store, event_id,
        )
        return comments if ok else []

    async def add_comment(self, event_id: str, text: str, actor: Actor) -> Comment | None:
        try:
            # reject bad text before any store round-trip
            comment_service.validate_comment_text(text, self.cfg.comment_max_length)
        except ValidationError as exc:
            self._fail("add-comment", exc, actor.id)
            return None
        _, comment = await self._call(
            "add-comment", comment_service.add_comment, self.store, event_id, text, actor,
            max_length=self.cfg.comment_max_length,
            participant_id=actor.id,
        )
        return comment

    async def delete_comment(self, event_id: str, comment_id: str, actor: Actor) -> bool:
        ok, _ = await self._call(
            "delete-comment", comment_service.delete_comment,
            self.store, event_id, comment_id, actor,
            participant_id=actor.id,
        )
        return ok

    # -------------------------------------------------------------------
    # Contests
    # -------------------------------------------------------------------
    async def list_contests(self) -> list[Contest]:
        ok, contests = await self._call("list-contests", contest_service.list_contests, self.store)
        return contests if ok else []

    async def get_active_contest(self) -> Contest | None:
        _, contest = await self._call(
            "get-active-contest", contest_service.get_active_contest, self.store,
        )
        return contest

    async def add_contest(
        self, data: dict[str, Any], actor: Actor, contest_id: str | None = None,
    ) -> Contest | None:
        _, contest = await self._call(
            "add-contest", contest_service.add_contest, self.store, data, actor, contest_id,
            participant_id=actor.id,
        )
        return contest

    async def update_contest(
        self, contest_id: str, patch: dict[str, Any], actor: Actor,
    ) -> Contest | None:
        _, contest = await self._call(
            "update-contest", contest_service.update_contest, self.store, contest_id, patch, actor,
            participant_id=actor.id,
        )
        return contest

    async def delete_contest(self, contest_id: str, actor: Actor) -> bool:
        ok, _ = await self._call(
            "delete-contest", contest_service.delete_contest, self.store, contest_id, actor,
            participant_id=actor.id,
        )
        return ok
