"""
In-memory stand-in for the Supabase client.

Supports the subset of the fluent query API the messenger uses
(select/insert/update, eq/neq/in_/is_/or_, order, limit), nested
relation expansion for conversations and messages, password auth and
a storage bucket. Rows are stored flat, the way Postgres keeps them.
"""
import copy
import re
import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from messenger.auth import AppSession, get_profile


class FakeAuthError(Exception):
    pass


class FakeStorageError(Exception):
    pass


def _now():
    return datetime.now(timezone.utc)


def _parse_array(value):
    inner = value.strip()[1:-1]
    return [v for v in inner.split(",") if v]


def _equal(actual, expected):
    if isinstance(actual, list) and isinstance(expected, str) and expected.startswith("{"):
        return actual == _parse_array(expected)
    if isinstance(expected, bool) or isinstance(actual, bool):
        return actual == expected
    return actual == expected or str(actual) == str(expected)


def _ilike(actual, pattern):
    if actual is None:
        return False
    regex = "^" + ".*".join(re.escape(p) for p in pattern.split("%")) + "$"
    return re.match(regex, str(actual), re.IGNORECASE) is not None


def _condition(column, op, value):
    if op == "eq":
        return lambda row: _equal(row.get(column), value)
    if op == "neq":
        return lambda row: not _equal(row.get(column), value)
    if op == "is":
        return lambda row: row.get(column) is None if value == "null" else row.get(column) == value
    if op == "ilike":
        return lambda row: _ilike(row.get(column), value)
    raise NotImplementedError(op)


class FakeQuery:

    def __init__(self, db, table):
        self.db = db
        self.table = table
        self.op = "select"
        self.columns = "*"
        self.payload = None
        self.filters = []
        self.order_by = []
        self.row_limit = None

    def select(self, columns="*"):
        self.columns = columns
        return self

    def insert(self, payload):
        self.op, self.payload = "insert", payload
        return self

    def update(self, payload):
        self.op, self.payload = "update", payload
        return self

    def upsert(self, payload, on_conflict="id"):
        self.op, self.payload = "upsert", payload
        self.conflict_key = on_conflict
        return self

    def eq(self, column, value):
        self.filters.append(_condition(column, "eq", value))
        return self

    def neq(self, column, value):
        self.filters.append(_condition(column, "neq", value))
        return self

    def is_(self, column, value):
        self.filters.append(_condition(column, "is", value))
        return self

    def in_(self, column, values):
        values = list(values)
        self.filters.append(lambda row: row.get(column) in values)
        return self

    def or_(self, expression):
        conditions = []
        for part in expression.split(","):
            column, op, value = part.split(".", 2)
            conditions.append(_condition(column, op, value))
        self.filters.append(lambda row: any(c(row) for c in conditions))
        return self

    def order(self, column, desc=False):
        self.order_by.append((column, desc))
        return self

    def limit(self, n):
        self.row_limit = n
        return self

    def _matching(self):
        return [r for r in self.db.tables[self.table] if all(f(r) for f in self.filters)]

    def execute(self):
        self.db.calls.append((self.table, self.op, copy.deepcopy(self.payload)))
        failure = self.db.failures.get((self.table, self.op))
        if failure is not None:
            raise failure

        if self.op == "insert":
            rows = self.payload if isinstance(self.payload, list) else [self.payload]
            inserted = [self.db.add(self.table, r) for r in rows]
            return SimpleNamespace(data=copy.deepcopy(inserted))

        if self.op == "upsert":
            rows = self.payload if isinstance(self.payload, list) else [self.payload]
            stored = []
            for row in rows:
                key = self.conflict_key
                existing = [r for r in self.db.tables[self.table] if r.get(key) == row.get(key)]
                if existing:
                    existing[0].update(copy.deepcopy(row))
                    stored.append(existing[0])
                else:
                    stored.append(self.db.add(self.table, row))
            return SimpleNamespace(data=copy.deepcopy(stored))

        if self.op == "update":
            rows = self._matching()
            for row in rows:
                row.update(copy.deepcopy(self.payload))
            return SimpleNamespace(data=copy.deepcopy(rows))

        rows = self._matching()
        for column, desc in reversed(self.order_by):
            rows = sorted(
                rows,
                key=lambda r: (r.get(column) is None, r.get(column) or ""),
                reverse=desc,
            )
        if self.row_limit is not None:
            rows = rows[: self.row_limit]
        return SimpleNamespace(data=[self.db.expand(self.table, r, self.columns) for r in rows])


class FakeAuth:

    def __init__(self, db):
        self.db = db
        self.accounts = {}
        self.session = None
        self.confirm_email = False

    def sign_up(self, credentials):
        email = credentials["email"]
        if email in self.accounts:
            raise FakeAuthError("User already registered")
        user = SimpleNamespace(
            id=str(uuid.uuid4()),
            email=email,
            user_metadata=credentials.get("options", {}).get("data", {}),
        )
        self.accounts[email] = (credentials["password"], user)
        if self.confirm_email:
            return SimpleNamespace(user=user, session=None)
        self.session = self._session(user)
        return SimpleNamespace(user=user, session=self.session)

    def sign_in_with_password(self, credentials):
        password, user = self.accounts.get(credentials["email"], (None, None))
        if user is None or password != credentials["password"]:
            raise FakeAuthError("Invalid login credentials")
        self.session = self._session(user)
        return SimpleNamespace(user=user, session=self.session)

    def sign_out(self):
        self.session = None

    def get_user(self):
        if self.session is None:
            return None
        return SimpleNamespace(user=self.session.user)

    def get_session(self):
        return self.session

    @staticmethod
    def _session(user):
        return SimpleNamespace(
            user=user,
            access_token=f"access-{user.id}",
            refresh_token=f"refresh-{user.id}",
        )


class FakeBucket:

    def __init__(self, storage, name):
        self.storage = storage
        self.name = name

    def upload(self, path, data, file_options=None):
        if self.storage.fail:
            raise FakeStorageError("upload failed")
        self.storage.files[(self.name, path)] = (data, file_options)
        return SimpleNamespace(path=path)

    def get_public_url(self, path):
        return f"https://cdn.test/storage/v1/object/public/{self.name}/{path}"


class FakeStorage:

    def __init__(self):
        self.files = {}
        self.fail = False

    def from_(self, bucket):
        return FakeBucket(self, bucket)


class FakeSupabase:

    TABLES = ("profiles", "conversations", "conversation_participants", "messages", "chat_requests")

    def __init__(self):
        self.tables = {name: [] for name in self.TABLES}
        self.calls = []
        self.failures = {}
        self.auth = FakeAuth(self)
        self.storage = FakeStorage()
        self._clock = _now() - timedelta(hours=1)

    def table(self, name):
        return FakeQuery(self, name)

    def tick(self):
        """Strictly increasing timestamps for inserted rows."""
        self._clock += timedelta(seconds=1)
        return self._clock.isoformat()

    def add(self, table, row):
        row = copy.deepcopy(row)
        if table != "conversation_participants":
            row.setdefault("id", str(uuid.uuid4()))
        if table in ("conversations", "messages", "chat_requests"):
            row.setdefault("created_at", self.tick())
        if table == "messages" and row.get("read_by") is None:
            row["read_by"] = []
        self.tables[table].append(row)
        return row

    def rows(self, table, **match):
        return [r for r in self.tables[table] if all(r.get(k) == v for k, v in match.items())]

    def count(self, table, op):
        return sum(1 for t, o, _ in self.calls if t == table and o == op)

    def _profile(self, user_id):
        found = self.rows("profiles", id=user_id)
        return copy.deepcopy(found[0]) if found else None

    def expand(self, table, row, columns):
        row = copy.deepcopy(row)
        if table == "conversations":
            if "conversation_participants(" in columns:
                row["conversation_participants"] = [
                    {"user_id": p["user_id"], "profiles": self._profile(p["user_id"])}
                    for p in self.rows("conversation_participants", conversation_id=row["id"])
                ]
            if "messages(" in columns:
                row["messages"] = copy.deepcopy(self.rows("messages", conversation_id=row["id"]))
        if table == "messages" and "profiles(" in columns:
            row["profiles"] = self._profile(row["sender_id"])
        if table == "chat_requests" and "sender:profiles" in columns:
            row["sender"] = self._profile(row["sender_id"])
        return row


@pytest.fixture
def fake():
    return FakeSupabase()


@pytest.fixture
def make_user(fake):
    """Create an auth account plus profile row without signing in."""

    def _make(username, password="secret123", **profile):
        email = f"{username}@example.com"
        user = fake.auth.sign_up({"email": email, "password": password}).user
        fake.auth.sign_out()
        fake.add("profiles", {
            "id": user.id,
            "username": username,
            "display_name": profile.pop("display_name", username.title()),
            "status": profile.pop("status", "offline"),
            **profile,
        })
        return user

    return _make


@pytest.fixture
def login(fake):
    """Sign a user in on the fake client and return their AppSession."""

    def _login(user, password="secret123"):
        fake.auth.sign_in_with_password({"email": user.email, "password": password})
        return AppSession(client=fake, user=user, profile=get_profile(fake, user.id))

    return _login


@pytest.fixture
def conversation(fake):
    """Insert a conversation with members and optional messages."""

    def _create(members, is_group=False, name=None, messages=()):
        row = fake.add("conversations", {"is_group": is_group, "name": name})
        for user in members:
            fake.add("conversation_participants", {"conversation_id": row["id"], "user_id": user.id})
        last = None
        for sender, content, *read_by in messages:
            last = fake.add("messages", {
                "conversation_id": row["id"],
                "sender_id": sender.id,
                "content": content,
                "read_by": list(read_by[0]) if read_by else [],
            })
        row["last_message_at"] = last["created_at"] if last else row["created_at"]
        return row["id"]

    return _create
