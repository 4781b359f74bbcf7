"""
Realtime change feed.

The Supabase SDK only exposes realtime channels on its async client, so
the feed runs that client on a private event loop in a daemon thread.
Channel callbacks turn payloads into `ChangeEvent`s on a thread-safe
queue which the page drains and reduces on its own schedule.
"""
import asyncio
import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from supabase import AsyncClientOptions, acreate_client

from messenger.config import SUPABASE_ANON_KEY, SUPABASE_URL

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10


@dataclass
class ChangeEvent:
    type: str                      # "INSERT", "UPDATE" or "DELETE"
    table: str
    record: dict = field(default_factory=dict)
    old_record: dict = field(default_factory=dict)


def parse_change(payload: dict) -> Optional[ChangeEvent]:
    """
    Normalise a postgres_changes payload. Accepts the nested
    `{"data": {...}}` shape of the Python SDK and the flat
    `eventType/new/old` shape.
    """
    if not isinstance(payload, dict):
        return None
    data = payload.get("data", payload)
    if not isinstance(data, dict):
        return None

    event_type = data.get("type") or data.get("eventType")
    if not event_type:
        return None
    record = data.get("record") or data.get("new") or {}
    old_record = data.get("old_record") or data.get("old") or {}
    return ChangeEvent(
        type=str(event_type).upper(),
        table=data.get("table", ""),
        record=record,
        old_record=old_record,
    )


class RealtimeFeed:
    """
    Owns the async client and its channels for one page lifetime.
    Call `close()` when the page goes away.

    The async client never refreshes tokens itself: refresh tokens are
    single use and belong to the browser's client. `token_source`
    returns that client's current access token, and `drain()` pushes
    it to the realtime socket whenever it changes.
    """

    def __init__(self, access_token: str,
                 url: str = SUPABASE_URL, key: str = SUPABASE_ANON_KEY,
                 client_factory: Callable = acreate_client,
                 token_source: Optional[Callable[[], Optional[str]]] = None):
        self._events: "queue.Queue[ChangeEvent]" = queue.Queue()
        self._channels: dict[str, Any] = {}
        self._closed = False
        self._token = access_token
        self._token_source = token_source

        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._loop.run_forever, name="realtime-feed", daemon=True
        )
        self._thread.start()

        try:
            self._client = self._run(
                self._connect(client_factory, url, key, access_token)
            )
        except Exception:
            self._stop_loop()
            raise

    @classmethod
    def for_session(cls, client, **kwargs) -> "RealtimeFeed":
        """Build a feed authenticated as the user signed in on `client`."""
        session = client.auth.get_session()
        if session is None:
            raise RuntimeError("Realtime feed needs an active session")
        return cls(session.access_token, token_source=lambda: _access_token(client), **kwargs)

    @staticmethod
    async def _connect(client_factory, url, key, access_token):
        client = await client_factory(
            url, key, options=AsyncClientOptions(auto_refresh_token=False)
        )
        await client.realtime.set_auth(access_token)
        return client

    @property
    def access_token(self) -> str:
        return self._token

    def refresh_auth(self):
        """Hand the socket the browser client's latest access token."""
        if self._token_source is None or self._closed:
            return
        try:
            token = self._token_source()
            if token and token != self._token:
                self._run(self._client.realtime.set_auth(token))
                self._token = token
                logger.info("Realtime access token rotated")
        except Exception:
            logger.exception("Could not refresh realtime auth")

    def _run(self, coro, timeout: float = CONNECT_TIMEOUT):
        return asyncio.run_coroutine_threadsafe(coro, self._loop).result(timeout)

    def _stop_loop(self):
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=CONNECT_TIMEOUT)
        if not self._thread.is_alive():
            self._loop.close()

    @property
    def closed(self) -> bool:
        return self._closed

    # -----------------------------
    # Subscriptions
    # -----------------------------
    def subscribe(self, name: str, table: str, event: str = "INSERT",
                  filter: Optional[str] = None):
        """Register a postgres_changes channel. Re-subscribing a name is a no-op."""
        if self._closed:
            raise RuntimeError("Realtime feed is closed")
        if name in self._channels:
            return self._channels[name]

        channel = self._run(self._subscribe(name, table, event, filter))
        self._channels[name] = channel
        logger.info("Subscribed %s (%s %s %s)", name, event, table, filter or "*")
        return channel

    async def _subscribe(self, name, table, event, filter):
        channel = self._client.channel(name)
        channel.on_postgres_changes(
            event,
            callback=self._on_change,
            table=table,
            schema="public",
            filter=filter,
        )
        await channel.subscribe()
        return channel

    def _on_change(self, payload):
        if self._closed:
            return
        event = parse_change(payload)
        if event is None:
            logger.warning("Ignoring unexpected realtime payload: %r", payload)
            return
        self._events.put(event)

    def drain(self) -> list[ChangeEvent]:
        """Return every event received since the last drain."""
        self.refresh_auth()
        events = []
        while True:
            try:
                events.append(self._events.get_nowait())
            except queue.Empty:
                return events

    # -----------------------------
    # Teardown
    # -----------------------------
    def close(self):
        if self._closed:
            return
        self._closed = True
        try:
            self._run(self._teardown())
        except Exception:
            logger.exception("Realtime teardown failed")
        finally:
            self._stop_loop()
            self._channels.clear()

    async def _teardown(self):
        for name, channel in list(self._channels.items()):
            try:
                await self._client.remove_channel(channel)
            except Exception:
                logger.warning("Could not remove channel %s", name, exc_info=True)

        current = asyncio.current_task()
        pending = [t for t in asyncio.all_tasks() if t is not current]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)


def _access_token(client) -> Optional[str]:
    session = client.auth.get_session()
    return session.access_token if session else None


class FeedRegistry:
    """
    Live feeds keyed by browser session id. Feeds whose session has
    gone away (tab closed without leaving the page) are closed by `reap`.
    """

    def __init__(self):
        self._feeds: dict[str, RealtimeFeed] = {}
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._feeds)

    def get(self, session_id: str) -> Optional[RealtimeFeed]:
        return self._feeds.get(session_id)

    def register(self, session_id: str, feed: RealtimeFeed):
        with self._lock:
            previous = self._feeds.get(session_id)
            self._feeds[session_id] = feed
        if previous is not None and previous is not feed:
            previous.close()

    def release(self, session_id: str):
        with self._lock:
            feed = self._feeds.pop(session_id, None)
        if feed is not None:
            feed.close()

    def reap(self, is_active: Callable[[str], bool]) -> int:
        """Close the feeds of inactive sessions; returns how many."""
        with self._lock:
            stale = [sid for sid in self._feeds if not is_active(sid)]
            feeds = [self._feeds.pop(sid) for sid in stale]
        for feed in feeds:
            feed.close()
        if feeds:
            logger.info("Closed %d realtime feed(s) of ended sessions", len(feeds))
        return len(feeds)
