"""Supabase connection and generic query helpers."""

import threading

from supabase import Client, create_client

from lifecycle_mail.config import SUPABASE_SERVICE_KEY, SUPABASE_URL

_client: Client | None = None
_client_lock = threading.Lock()

# Postgres SQLSTATE for unique_violation
UNIQUE_VIOLATION = "23505"


def get_client() -> Client:
    """Return the Supabase client singleton (thread-safe)."""
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                if not SUPABASE_URL or not SUPABASE_SERVICE_KEY:
                    raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")
                _client = create_client(SUPABASE_URL, SUPABASE_SERVICE_KEY)
    return _client


# ---------------------------------------------------------------------------
# Generic helpers
# ---------------------------------------------------------------------------

def _table(name: str):
    """Return a table query builder."""
    return get_client().table(name)


def insert(table: str, data: dict) -> dict:
    """Insert a row and return it."""
    result = _table(table).insert(data).execute()
    return result.data[0] if result.data else {}


def upsert(table: str, data: dict | list[dict], on_conflict: str = "") -> dict:
    """Upsert a row (or rows) and return the first."""
    if on_conflict:
        q = _table(table).upsert(data, on_conflict=on_conflict)
    else:
        q = _table(table).upsert(data)
    result = q.execute()
    return result.data[0] if result.data else {}


def update(table: str, data: dict, match: dict) -> dict:
    """Update rows matching conditions. Returns the first updated row or {}."""
    q = _table(table).update(data)
    for k, v in match.items():
        q = q.eq(k, v)
    result = q.execute()
    return result.data[0] if result.data else {}


def select(table: str, columns: str = "*", match: dict | None = None,
           order: str | None = None, order_desc: bool = False,
           limit: int | None = None) -> list[dict]:
    """Select rows with optional filtering and ordering."""
    q = _table(table).select(columns)
    if match:
        for k, v in match.items():
            q = q.eq(k, v)
    if order:
        q = q.order(order, desc=order_desc)
    if limit:
        q = q.limit(limit)
    result = q.execute()
    return result.data or []


def select_one(table: str, columns: str = "*", match: dict | None = None) -> dict | None:
    """Select a single row."""
    rows = select(table, columns, match, limit=1)
    return rows[0] if rows else None


def select_in(table: str, column: str, values: list, columns: str = "*") -> list[dict]:
    """Select rows whose ``column`` is one of ``values``."""
    if not values:
        return []
    result = _table(table).select(columns).in_(column, list(values)).execute()
    return result.data or []


def rpc(function: str, params: dict):
    """Call a Postgres function and return its data."""
    result = get_client().rpc(function, params).execute()
    return result.data


# ---------------------------------------------------------------------------
# Audit Log
# ---------------------------------------------------------------------------

def log_action(action: str, entity_type: str = "", entity_id: str = "", details: str = "") -> dict:
    """Log an engine or operator action."""
    return insert("audit_log", {
        "action": action,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "details": details,
    })
