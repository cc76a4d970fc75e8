from __future__ import annotations
from typing import Optional, List
from datetime import datetime
from functools import wraps
import sqlite3

from pitwall.core.db.base import get_conn, atomic
from pitwall.domain import clock
from pitwall.domain.errors import LedgerUnavailable
from pitwall.domain.models import LedgerEntry

_COLS = "id, message_platform_id, channel_platform_id, kind, series, expires_at, created_at"

def _guarded(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except sqlite3.Error as e:
            raise LedgerUnavailable(f"{fn.__name__}: {e}") from e
    return wrapper

def _row_to_entry(row) -> LedgerEntry:
    return LedgerEntry(
        id=int(row[0]), message_id=row[1], channel_id=row[2],
        kind=row[3], series=row[4],
        expires_at=clock.parse_ts(row[5]),
        created_at=clock.parse_ts(row[6]),
    )

@_guarded
def has_sent(kind: str) -> bool:
    con = get_conn()
    row = con.execute("SELECT 1 FROM messages WHERE kind=? LIMIT 1", (kind,)).fetchone()
    return bool(row)

@_guarded
def record(channel_id, message_id, kind: str, series: str, expires_at: datetime) -> bool:
    """
    À n'appeler qu'après un envoi confirmé. Idempotent sur kind.
    Renvoie True si une entrée a été créée.
    """
    with atomic():
        con = get_conn()
        before = con.total_changes
        con.execute(
            "INSERT OR IGNORE INTO messages(message_platform_id, channel_platform_id, kind, series, expires_at) "
            "VALUES(?,?,?,?,?)",
            (str(message_id), str(channel_id), kind, series, clock.format_ts(expires_at)),
        )
        return (con.total_changes - before) > 0

@_guarded
def get(kind: str) -> Optional[LedgerEntry]:
    con = get_conn()
    row = con.execute(f"SELECT {_COLS} FROM messages WHERE kind=?", (kind,)).fetchone()
    return _row_to_entry(row) if row else None

@_guarded
def list_expired(as_of: datetime) -> List[LedgerEntry]:
    con = get_conn()
    rows = con.execute(
        f"SELECT {_COLS} FROM messages WHERE expires_at<=? ORDER BY expires_at ASC, id ASC",
        (clock.format_ts(as_of),),
    ).fetchall()
    return [_row_to_entry(r) for r in rows]

@_guarded
def reap_expired(as_of: datetime) -> int:
    with atomic():
        con = get_conn()
        n = con.execute("DELETE FROM messages WHERE expires_at<=?", (clock.format_ts(as_of),)).rowcount
    return int(n)

@_guarded
def count() -> int:
    con = get_conn()
    (n,) = con.execute("SELECT COUNT(*) FROM messages").fetchone()
    return int(n)

@_guarded
def next_expiry() -> Optional[datetime]:
    con = get_conn()
    (raw,) = con.execute("SELECT MIN(expires_at) FROM messages").fetchone()
    return clock.parse_ts(raw) if raw else None

@_guarded
def set_expiry(kind: str, expires_at: datetime) -> bool:
    """Seules les entrées sans échéance naturelle (calendrier) sont prolongées ainsi."""
    with atomic():
        con = get_conn()
        n = con.execute("UPDATE messages SET expires_at=? WHERE kind=?",
                        (clock.format_ts(expires_at), kind)).rowcount
    return bool(n)

@_guarded
def forget(kind: str) -> bool:
    """Oublie une entrée dont le message a disparu côté Discord."""
    with atomic():
        con = get_conn()
        n = con.execute("DELETE FROM messages WHERE kind=?", (kind,)).rowcount
    return bool(n)
