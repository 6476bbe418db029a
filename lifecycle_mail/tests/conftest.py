"""Shared fixtures for Lifecycle Mail tests.

Provides:
- fake_db: patches supabase_client with an in-memory fake
- engine: WorkflowEngine wired to the fake DB, a fake transport and fake profiles
- client: sync TestClient for the FastAPI app around that engine
- data factories for subscriptions and sends
"""

import asyncio
import operator
import os
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

# Set env vars before any lifecycle_mail imports
os.environ.setdefault("SUPABASE_URL", "https://fake.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "fake-key")
os.environ.setdefault("WEBHOOK_SECRET", "test-secret-123")
os.environ.setdefault("UNSUBSCRIBE_SECRET", "test-unsub-secret")
os.environ.setdefault("RESEND_API_KEY", "")

from postgrest.exceptions import APIError  # noqa: E402

from lifecycle_mail.models import Recipient, TransportResult  # noqa: E402
from lifecycle_mail.timing import to_iso  # noqa: E402

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

AUTH = {"Authorization": "Bearer test-secret-123"}


def run(coro):
    """Run a coroutine to completion on a fresh event loop."""
    return asyncio.run(coro)


def api_error(code: str, message: str = "fake failure") -> APIError:
    return APIError({"code": code, "message": message, "details": "", "hint": ""})


# ---------------------------------------------------------------------------
# In-memory fake Supabase
# ---------------------------------------------------------------------------

class FakeQueryResult:
    def __init__(self, data=None, count=None):
        self.data = data or []
        self.count = count


# (table, columns, partial-index predicate) for the unique indexes in schema.sql
UNIQUE_INDEXES = [
    ("workflow_subscriptions", ("user_id", "workflow_id"), lambda r: r.get("status") == "active"),
    ("workflow_sends", ("idempotency_key",), lambda r: True),
    ("email_queue", ("idempotency_key",), lambda r: True),
]


_COMPARE = {
    "eq": operator.eq,
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
}


def _split_terms(expr):
    """Split a PostgREST logic tree on its top-level commas."""
    terms, depth, quoted, current = [], 0, False, ""
    for ch in expr:
        if ch == '"':
            quoted = not quoted
        elif not quoted and ch == "(":
            depth += 1
        elif not quoted and ch == ")":
            depth -= 1
        elif not quoted and ch == "," and depth == 0:
            terms.append(current)
            current = ""
            continue
        current += ch
    terms.append(current)
    return terms


def _parse_logic(mode, expr):
    """Turn ``col.op.value,and(...)`` into a row predicate (string compares)."""
    predicates = []
    for term in _split_terms(expr):
        if term.startswith(("and(", "or(")):
            inner_mode, inner = term.split("(", 1)
            predicates.append(_parse_logic(inner_mode, inner[:-1]))
            continue
        col, op, val = term.split(".", 2)
        compare = _COMPARE[op]
        val = val.strip('"')
        predicates.append(
            lambda row, col=col, compare=compare, val=val:
                row.get(col) is not None and compare(str(row.get(col)), val)
        )
    combine = all if mode == "and" else any
    return lambda row: combine(p(row) for p in predicates)


class FakeQueryBuilder:
    """Mimics the supabase-py query builder chain."""

    def __init__(self, db, table_name):
        self._db = db
        self._store = db.store
        self._table = table_name
        self._filters = []
        self._order = []
        self._limit_val = None
        self._columns = "*"
        self._upsert_data = None
        self._upsert_conflict = None
        self._update_data = None
        self._insert_data = None

    def select(self, columns="*", count=None):
        self._columns = columns
        return self

    def insert(self, data):
        self._insert_data = data
        return self

    def upsert(self, data, on_conflict=None):
        self._upsert_data = data
        self._upsert_conflict = on_conflict
        return self

    def update(self, data):
        self._update_data = data
        return self

    def eq(self, col, val):
        self._filters.append(("eq", col, val))
        return self

    def lte(self, col, val):
        self._filters.append(("lte", col, val))
        return self

    def gt(self, col, val):
        self._filters.append(("gt", col, val))
        return self

    def or_(self, filters):
        self._filters.append(("or", None, _parse_logic("or", filters)))
        return self

    def in_(self, col, values):
        self._filters.append(("in", col, list(values)))
        return self

    def order(self, col, desc=False):
        self._order.append((col, desc))
        return self

    def limit(self, n):
        self._limit_val = n
        return self

    def _match(self, row):
        for op, col, val in self._filters:
            row_val = row.get(col)
            if op == "eq" and row_val != val:
                return False
            if op == "lte" and (row_val is None or str(row_val) > str(val)):
                return False
            if op == "gt" and (row_val is None or str(row_val) <= str(val)):
                return False
            if op == "in" and row_val not in val:
                return False
            if op == "or" and not val(row):
                return False
        return True

    def _op(self):
        if self._insert_data is not None:
            return "insert"
        if self._upsert_data is not None:
            return "upsert"
        if self._update_data is not None:
            return "update"
        return "select"

    def _check_unique(self, row, table, ignore=None):
        for name, cols, predicate in UNIQUE_INDEXES:
            if name != self._table or not predicate(row):
                continue
            for existing in table:
                if existing is ignore or not predicate(existing):
                    continue
                if all(existing.get(c) == row.get(c) for c in cols):
                    raise api_error("23505", f"duplicate key value violates unique constraint on {cols}")

    def execute(self):
        failure = self._db.failures.get((self._table, self._op()))
        if failure is not None:
            raise failure

        table = self._store[self._table]

        if self._insert_data is not None:
            row = dict(self._insert_data)
            if "id" not in row:
                row["id"] = str(uuid.uuid4())
            self._check_unique(row, table)
            table.append(row)
            return FakeQueryResult(data=[row])

        if self._upsert_data is not None:
            rows = self._upsert_data if isinstance(self._upsert_data, list) else [self._upsert_data]
            out = []
            for data in rows:
                row = dict(data)
                existing = None
                if self._upsert_conflict:
                    conflict_cols = [c.strip() for c in self._upsert_conflict.split(",")]
                    for candidate in table:
                        if all(candidate.get(c) == row.get(c) for c in conflict_cols):
                            existing = candidate
                            break
                if existing is not None:
                    existing.update(row)
                    out.append(existing)
                    continue
                if "id" not in row:
                    row["id"] = str(uuid.uuid4())
                table.append(row)
                out.append(row)
            return FakeQueryResult(data=out)

        if self._update_data is not None:
            updated = []
            for row in table:
                if self._match(row):
                    candidate = {**row, **self._update_data}
                    self._check_unique(candidate, table, ignore=row)
                    row.update(self._update_data)
                    updated.append(row)
            return FakeQueryResult(data=updated)

        # SELECT
        rows = [r for r in table if self._match(r)]

        # Stable sorts applied last key first give a multi-column order
        for col, desc in reversed(self._order):
            rows.sort(key=lambda r: r.get(col) or "", reverse=desc)

        if self._limit_val is not None:
            rows = rows[:self._limit_val]

        return FakeQueryResult(data=rows)


class FakeDB:
    """In-memory store keyed by table name.

    ``fail(table, op)`` makes every later ``op`` on ``table`` raise an
    APIError, the way a PostgREST outage would.
    """

    def __init__(self):
        self.store = defaultdict(list)
        self.failures = {}

    def table(self, name):
        return FakeQueryBuilder(self, name)

    def fail(self, table, op, code="XX000", exc=None):
        self.failures[(table, op)] = exc if exc is not None else api_error(code)

    def clear(self):
        self.store.clear()
        self.failures.clear()


@pytest.fixture
def fake_db():
    """Provides a clean in-memory DB and patches supabase_client._table."""
    db = FakeDB()

    with patch("lifecycle_mail.supabase_client._table", side_effect=db.table):
        with patch("lifecycle_mail.supabase_client.get_client", return_value=MagicMock()):
            yield db


# ---------------------------------------------------------------------------
# Engine collaborators
# ---------------------------------------------------------------------------

class Clock:
    """Controllable clock. Call it for the current time."""

    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class FakeTransport:
    """Records every message; replays of a key come back as duplicates."""

    def __init__(self):
        self.sent = []
        self.calls = 0
        self.fail = False
        self._keys = {}

    async def send(self, message):
        self.calls += 1
        if self.fail:
            return TransportResult(success=False, error="smtp unavailable")
        if message.idempotency_key in self._keys:
            return TransportResult(success=True, duplicate=True,
                                   message_id=self._keys[message.idempotency_key])
        message_id = f"msg-{len(self.sent) + 1}"
        self._keys[message.idempotency_key] = message_id
        self.sent.append(message)
        return TransportResult(success=True, message_id=message_id)

    def sent_to(self, email):
        return [m for m in self.sent if m.recipient == email]


class FakeProfiles:
    """Profile accessor backed by plain dicts. Unknown users are all_users."""

    def __init__(self):
        self.segments = {}
        self.fields = defaultdict(dict)
        self.statuses = {}
        self.missing_recipients = set()
        self.segment_error = None

    def get_user_segments(self, user_id):
        if self.segment_error is not None:
            raise self.segment_error
        return set(self.segments.get(user_id, {"all_users"}))

    def get_profile_field(self, user_id, field):
        return self.fields[user_id].get(field)

    def get_subscription_status(self, user_id):
        return self.statuses.get(user_id)

    def get_recipient(self, user_id):
        if user_id in self.missing_recipients:
            return None
        return Recipient(email=f"{user_id}@example.com", full_name="Sam Rivera")


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def profiles():
    return FakeProfiles()


@pytest.fixture
def engine(fake_db, transport, profiles, clock):
    from lifecycle_mail.engine import WorkflowEngine
    from lifecycle_mail.services.rendering import TemplateRenderer
    from lifecycle_mail.services.store import SubscriptionStore
    from lifecycle_mail.workflows import CATALOG

    return WorkflowEngine(
        CATALOG,
        SubscriptionStore(),
        transport,
        profiles,
        TemplateRenderer(),
        clock=clock,
    )


@pytest.fixture
def client(engine):
    """Sync test client for the FastAPI app around the test engine."""
    from fastapi.testclient import TestClient

    from lifecycle_mail.app import create_app
    from lifecycle_mail.routers.webhooks import _rate_buckets

    _rate_buckets.clear()
    with TestClient(create_app(engine)) as c:
        yield c


# ---------------------------------------------------------------------------
# Data factories
# ---------------------------------------------------------------------------

def make_subscription(**overrides):
    defaults = {
        "id": str(uuid.uuid4()),
        "user_id": "user-1",
        "workflow_id": "welcome-sequence",
        "triggered_by": "signup",
        "status": "active",
        "current_step": 0,
        "next_due_at": to_iso(T0),
        "last_sent_at": None,
        "send_count": 0,
        "created_at": to_iso(T0),
        "completed_at": None,
        "cancelled_at": None,
        "cancel_reason": "",
        "metadata": {},
    }
    defaults.update(overrides)
    return defaults


def make_send(**overrides):
    defaults = {
        "id": str(uuid.uuid4()),
        "subscription_id": str(uuid.uuid4()),
        "user_id": "user-1",
        "workflow_id": "welcome-sequence",
        "step_id": "welcome-immediate",
        "step_number": 1,
        "variant": "",
        "subject": "Welcome",
        "message_id": f"msg-{uuid.uuid4().hex[:8]}",
        "idempotency_key": uuid.uuid4().hex,
        "status": "sent",
        "sent_at": to_iso(T0),
        "opened_at": None,
        "clicked_at": None,
    }
    defaults.update(overrides)
    return defaults
