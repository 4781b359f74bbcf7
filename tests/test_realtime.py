import pytest

from messenger.realtime import ChangeEvent, FeedRegistry, RealtimeFeed, parse_change


class FakeChannel:

    def __init__(self, name):
        self.name = name
        self.bindings = []
        self.subscribed = False

    def on_postgres_changes(self, event, callback, table="*", schema="public", filter=None):
        self.bindings.append({"event": event, "callback": callback, "table": table,
                              "schema": schema, "filter": filter})
        return self

    async def subscribe(self):
        self.subscribed = True
        return self


class FakeRealtime:

    def __init__(self):
        self.tokens = []

    async def set_auth(self, token):
        self.tokens.append(token)


class FakeAsyncClient:

    def __init__(self):
        self.realtime = FakeRealtime()
        self.channels = {}
        self.removed = []
        self.options = None

    def channel(self, name):
        self.channels[name] = FakeChannel(name)
        return self.channels[name]

    async def remove_channel(self, channel):
        self.removed.append(channel.name)


@pytest.fixture
def async_client():
    return FakeAsyncClient()


@pytest.fixture
def factory(async_client):
    async def _factory(url, key, options=None):
        async_client.options = options
        return async_client

    return _factory


@pytest.fixture
def token():
    return {"current": "access-1"}


@pytest.fixture
def feed(factory, token):
    feed = RealtimeFeed("access-1", url="http://supabase.test", key="anon",
                        client_factory=factory, token_source=lambda: token["current"])
    yield feed
    feed.close()


def _payload(event_type="INSERT", **record):
    return {"data": {"type": event_type, "table": "messages", "schema": "public",
                     "record": record, "old_record": {}}, "ids": [1]}


def test_parse_change_sdk_shape():
    event = parse_change(_payload("UPDATE", id="m1", read_by=["u1"]))
    assert event == ChangeEvent(type="UPDATE", table="messages",
                                record={"id": "m1", "read_by": ["u1"]}, old_record={})


def test_parse_change_flat_shape():
    event = parse_change({"eventType": "insert", "table": "messages", "new": {"id": "m2"}})
    assert event.type == "INSERT"
    assert event.record == {"id": "m2"}


@pytest.mark.parametrize("payload", [None, "text", {}, {"data": "x"}, {"data": {"table": "messages"}}])
def test_parse_change_rejects_garbage(payload):
    assert parse_change(payload) is None


def test_feed_uses_access_token_without_refreshing(feed, async_client):
    assert async_client.realtime.tokens == ["access-1"]
    assert async_client.options.auto_refresh_token is False


def test_drain_pushes_rotated_access_token(feed, async_client, token):
    feed.drain()
    assert async_client.realtime.tokens == ["access-1"]

    token["current"] = "access-2"
    feed.drain()
    feed.drain()

    assert async_client.realtime.tokens == ["access-1", "access-2"]
    assert feed.access_token == "access-2"


def test_token_source_failure_keeps_feed_running(feed, async_client, token):
    feed.subscribe("inbox-messages", table="messages")
    callback = async_client.channels["inbox-messages"].bindings[0]["callback"]
    callback(_payload(id="m1"))

    def broken():
        raise RuntimeError("session store down")

    feed._token_source = broken
    assert [e.record["id"] for e in feed.drain()] == ["m1"]
    assert feed.access_token == "access-1"


def test_feed_subscribes_once_per_name(feed, async_client):
    feed.subscribe("chat-c1-insert", table="messages", event="INSERT",
                   filter="conversation_id=eq.c1")
    feed.subscribe("chat-c1-insert", table="messages", event="INSERT",
                   filter="conversation_id=eq.c1")

    assert list(async_client.channels) == ["chat-c1-insert"]
    channel = async_client.channels["chat-c1-insert"]
    assert channel.subscribed
    assert channel.bindings[0]["filter"] == "conversation_id=eq.c1"
    assert channel.bindings[0]["event"] == "INSERT"


def test_feed_queues_events_until_drained(feed, async_client):
    feed.subscribe("inbox-messages", table="messages")
    callback = async_client.channels["inbox-messages"].bindings[0]["callback"]

    callback(_payload(id="m1"))
    callback({"unexpected": True})
    callback(_payload(id="m2"))

    assert [e.record["id"] for e in feed.drain()] == ["m1", "m2"]
    assert feed.drain() == []


def test_close_removes_channels_and_drops_late_events(feed, async_client):
    feed.subscribe("inbox-messages", table="messages")
    callback = async_client.channels["inbox-messages"].bindings[0]["callback"]

    feed.close()
    callback(_payload(id="late"))

    assert async_client.removed == ["inbox-messages"]
    assert feed.closed
    assert feed.drain() == []
    with pytest.raises(RuntimeError):
        feed.subscribe("again", table="messages")
    feed.close()


def test_connect_failure_propagates():
    async def factory(url, key, options=None):
        raise ConnectionError("refused")

    with pytest.raises(ConnectionError):
        RealtimeFeed("a", url="http://supabase.test", key="anon", client_factory=factory)


def test_for_session_requires_login(fake):
    with pytest.raises(RuntimeError):
        RealtimeFeed.for_session(fake)


def test_for_session_follows_browser_token(fake, make_user, factory, async_client):
    user = make_user("ada")
    fake.auth.sign_in_with_password({"email": user.email, "password": "secret123"})
    feed = RealtimeFeed.for_session(fake, client_factory=factory)
    try:
        fake.auth.session.access_token = "rotated"
        feed.drain()
        assert async_client.realtime.tokens == [f"access-{user.id}", "rotated"]
    finally:
        feed.close()


# -----------------------------
# Registry of live feeds
# -----------------------------
class StubFeed:

    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


def test_registry_reaps_feeds_of_ended_sessions():
    registry = FeedRegistry()
    live, gone = StubFeed(), StubFeed()
    registry.register("tab-live", live)
    registry.register("tab-gone", gone)

    assert registry.reap(lambda sid: sid == "tab-live") == 1

    assert gone.closed and not live.closed
    assert registry.get("tab-gone") is None
    assert registry.get("tab-live") is live
    assert registry.reap(lambda sid: True) == 0


def test_registry_replaces_and_releases():
    registry = FeedRegistry()
    first, second = StubFeed(), StubFeed()
    registry.register("tab", first)
    registry.register("tab", second)

    assert first.closed and not second.closed
    registry.release("tab")
    registry.release("tab")
    assert second.closed
    assert len(registry) == 0


def test_registry_closes_real_feed(factory, async_client):
    registry = FeedRegistry()
    feed = RealtimeFeed("t", url="http://supabase.test", key="anon", client_factory=factory)
    feed.subscribe("inbox-messages", table="messages")
    registry.register("tab", feed)

    registry.reap(lambda sid: False)

    assert feed.closed
    assert async_client.removed == ["inbox-messages"]
