from __future__ import annotations
from typing import Optional, List, Tuple
from datetime import date, datetime
from functools import wraps
import logging, sqlite3

from pitwall.core.db.base import get_conn, atomic
from pitwall.domain import clock, tiers
from pitwall.domain.errors import StoreUnavailable, ScheduleInconsistency
from pitwall.domain.models import Weekend, Session, WeekendStatus, SessionStatus

log = logging.getLogger(__name__)

_W_COLS = "w.id, w.name, w.series, w.start_date, w.status, w.created_at"
_S_COLS = "s.id, s.weekend_id, s.start_time, s.name, s.duration, s.notify, s.status, s.created_at"

def _guarded(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"{fn.__name__}: {e}") from e
    return wrapper

def _row_to_weekend(row) -> Weekend:
    return Weekend(
        id=int(row[0]), name=row[1], series=row[2],
        start_date=clock.parse_date(row[3]),
        status=WeekendStatus(row[4]),
        created_at=clock.parse_ts(row[5]),
    )

def _row_to_session(row) -> Session:
    return Session(
        id=int(row[0]), weekend_id=int(row[1]),
        start_time=clock.parse_ts(row[2]), name=row[3],
        duration=int(row[4]), notify=row[5] or "",
        status=SessionStatus(row[6]),
        created_at=clock.parse_ts(row[7]),
    )

def _decode_pairs(rows) -> List[Tuple[Weekend, Session]]:
    """Une ligne illisible (horodatage hors format, écrit à la main) n'écarte que sa session."""
    out = []
    for r in rows:
        try:
            out.append((_row_to_weekend(r[:6]), _row_to_session(r[6:])))
        except ValueError as e:
            log.warning("Skipping unreadable row: %s", ScheduleInconsistency(r[6], str(e)))
    return out

def _decode_sessions(rows) -> List[Session]:
    out = []
    for r in rows:
        try:
            out.append(_row_to_session(r))
        except ValueError as e:
            log.warning("Skipping unreadable row: %s", ScheduleInconsistency(r[0], str(e)))
    return out

# ── Weekends

@_guarded
def create_weekend(name: str, series: str, start_date: date,
                   status: WeekendStatus = WeekendStatus.SCHEDULED) -> Weekend:
    with atomic():
        con = get_conn()
        cur = con.execute(
            "INSERT INTO weekends(name, series, start_date, status) VALUES(?,?,?,?)",
            (name, series, clock.format_date(start_date), WeekendStatus(status).value),
        )
        wid = cur.lastrowid
    return get_weekend(wid)

@_guarded
def get_weekend(weekend_id: int) -> Optional[Weekend]:
    con = get_conn()
    row = con.execute(f"SELECT {_W_COLS} FROM weekends w WHERE w.id=?", (int(weekend_id),)).fetchone()
    return _row_to_weekend(row) if row else None

@_guarded
def set_weekend_status(weekend_id: int, status: WeekendStatus) -> None:
    with atomic():
        con = get_conn()
        con.execute("UPDATE weekends SET status=? WHERE id=?", (WeekendStatus(status).value, int(weekend_id)))

@_guarded
def update_weekend_start(weekend_id: int, start_date: date) -> Weekend:
    """
    start_date n'est modifiable que tant que le weekend est 'scheduled',
    et seulement si toutes ses sessions restent dans la nouvelle fenêtre.
    """
    span_start, span_end = clock.weekend_span(start_date)
    with atomic():
        con = get_conn()
        row = con.execute("SELECT status FROM weekends WHERE id=?", (int(weekend_id),)).fetchone()
        if row is None:
            raise KeyError(weekend_id)
        if row[0] != WeekendStatus.SCHEDULED.value:
            raise ScheduleInconsistency(None, f"weekend {weekend_id} is {row[0]}, start_date is frozen")
        outside = [
            s.id for s in _decode_sessions(con.execute(
                f"SELECT {_S_COLS} FROM sessions s WHERE s.weekend_id=? ORDER BY s.start_time, s.id",
                (int(weekend_id),),
            ).fetchall())
            if not (span_start <= s.start_time < span_end)
        ]
        if outside:
            raise ScheduleInconsistency(None, f"moving weekend {weekend_id} to {clock.format_date(start_date)} "
                                              f"would leave sessions {outside} outside its span")
        con.execute("UPDATE weekends SET start_date=? WHERE id=?",
                    (clock.format_date(start_date), int(weekend_id)))
    return get_weekend(weekend_id)

@_guarded
def delete_weekend(weekend_id: int) -> int:
    """Supprime le weekend et ses sessions (pas de cascade dans le schéma). Renvoie le nb de sessions supprimées."""
    with atomic():
        con = get_conn()
        n = con.execute("DELETE FROM sessions WHERE weekend_id=?", (int(weekend_id),)).rowcount
        con.execute("DELETE FROM weekends WHERE id=?", (int(weekend_id),))
    return int(n)

# ── Sessions

@_guarded
def add_session(weekend_id: int, name: str, start_time: datetime, duration: int,
                notify: str = "") -> Session:
    if int(duration) <= 0:
        raise ValueError("duration must be > 0")
    encoded = tiers.normalize(notify)
    start_time = clock.to_utc(start_time)

    weekend = get_weekend(weekend_id)
    if weekend is None:
        raise KeyError(weekend_id)
    if not weekend.contains(start_time):
        raise ScheduleInconsistency(None, f"start {clock.format_ts(start_time)} outside weekend {weekend_id}")

    with atomic():
        con = get_conn()
        cur = con.execute(
            "INSERT INTO sessions(weekend_id, start_time, name, duration, notify, status) VALUES(?,?,?,?,?,?)",
            (int(weekend_id), clock.format_ts(start_time), name, int(duration), encoded,
             SessionStatus.PENDING.value),
        )
        sid = cur.lastrowid
    return get_session(sid)

@_guarded
def get_session(session_id: int) -> Optional[Session]:
    con = get_conn()
    row = con.execute(f"SELECT {_S_COLS} FROM sessions s WHERE s.id=?", (int(session_id),)).fetchone()
    return _row_to_session(row) if row else None

@_guarded
def set_session_status(session_id: int, status: SessionStatus) -> None:
    with atomic():
        con = get_conn()
        con.execute("UPDATE sessions SET status=? WHERE id=?", (SessionStatus(status).value, int(session_id)))

@_guarded
def list_active_sessions(as_of: datetime) -> List[Tuple[Weekend, Session]]:
    """
    Sessions non terminées des weekends ni annulés ni terminés,
    triées par début puis id. Ne filtre pas sur as_of: l'échéance est décidée par le scheduler.
    """
    con = get_conn()
    rows = con.execute(
        f"SELECT {_W_COLS}, {_S_COLS} FROM sessions s JOIN weekends w ON w.id = s.weekend_id "
        "WHERE w.status NOT IN ('cancelled','completed') AND s.status != 'completed' "
        "ORDER BY s.start_time ASC, s.id ASC"
    ).fetchall()
    log.debug("list_active_sessions(as_of=%s): %d rows", clock.format_ts(as_of), len(rows))
    return _decode_pairs(rows)

@_guarded
def mark_session_notified(session_id: int, kind: str) -> bool:
    """Tous les paliers sont partis. Purement indicatif: la source de vérité reste le registre."""
    with atomic():
        con = get_conn()
        n = con.execute(
            "UPDATE sessions SET status='notified' WHERE id=? AND status='pending'",
            (int(session_id),),
        ).rowcount
    if n:
        log.info("Session %s marked notified (last tier %s)", session_id, kind)
    return bool(n)

@_guarded
def list_upcoming(as_of: datetime, limit: int = 10) -> List[Tuple[Weekend, Session]]:
    now = clock.format_ts(as_of)
    con = get_conn()
    rows = con.execute(
        f"SELECT {_W_COLS}, {_S_COLS} FROM sessions s JOIN weekends w ON w.id = s.weekend_id "
        "WHERE w.status IN ('scheduled','active') AND s.status != 'completed' "
        "AND s.start_time >= ? ORDER BY s.start_time ASC, s.id ASC LIMIT ?",
        (now, int(limit)),
    ).fetchall()
    return _decode_pairs(rows)

@_guarded
def list_calendar(series: str, as_of: datetime, limit: int = 5) -> List[Tuple[Weekend, List[Session]]]:
    """Prochains weekends (scheduled/active, fenêtre pas encore close) d'une série, avec toutes leurs sessions."""
    as_of = clock.to_utc(as_of)
    con = get_conn()
    rows = con.execute(
        f"SELECT {_W_COLS} FROM weekends w WHERE w.series=? AND w.status IN ('scheduled','active') "
        "ORDER BY w.start_date ASC, w.id ASC",
        (series,),
    ).fetchall()
    out: List[Tuple[Weekend, List[Session]]] = []
    for r in rows:
        try:
            weekend = _row_to_weekend(r)
        except ValueError as e:
            log.warning("Skipping unreadable weekend %s: %s", r[0], e)
            continue
        if clock.weekend_span(weekend.start_date)[1] <= as_of:
            continue
        sessions = _decode_sessions(con.execute(
            f"SELECT {_S_COLS} FROM sessions s WHERE s.weekend_id=? ORDER BY s.start_time ASC, s.id ASC",
            (weekend.id,),
        ).fetchall())
        out.append((weekend, sessions))
        if len(out) >= int(limit):
            break
    return out

# ── Nettoyage / cycle de vie

def _has_tiers(s: Session) -> bool:
    try:
        return bool(tiers.parse_tiers(s.notify))
    except ValueError:
        log.warning("Session %s has an unreadable notify setting: %r", s.id, s.notify)
        return False

@_guarded
def delete_orphan_sessions() -> int:
    """Sessions dont le weekend n'existe plus (écrites par un outil externe sans foreign_keys)."""
    with atomic():
        con = get_conn()
        n = con.execute(
            "DELETE FROM sessions WHERE weekend_id NOT IN (SELECT id FROM weekends)"
        ).rowcount
    if n:
        log.warning("Removed %d orphan session(s)", n)
    return int(n)

@_guarded
def advance_lifecycle(now: datetime) -> dict:
    """
    scheduled -> active pour les weekends commencés;
    sessions commencées -> started, terminées -> completed;
    weekends actifs dont la fenêtre est close et toutes les sessions terminées -> completed.
    """
    now = clock.to_utc(now)
    out = {"weekends_active": 0, "sessions_started": 0, "sessions_completed": 0, "weekends_completed": 0}
    with atomic():
        con = get_conn()
        out["weekends_active"] = con.execute(
            "UPDATE weekends SET status='active' WHERE status='scheduled' AND start_date<=?",
            (clock.format_date(now.date()),),
        ).rowcount

        rows = con.execute(
            f"SELECT {_S_COLS} FROM sessions s JOIN weekends w ON w.id = s.weekend_id "
            "WHERE w.status='active' AND s.status != 'completed'"
        ).fetchall()
        for s in _decode_sessions(rows):
            if now >= s.end_time:
                if s.status == SessionStatus.PENDING and _has_tiers(s):
                    log.warning("Session %s ended with reminders still pending", s.id)
                con.execute("UPDATE sessions SET status='completed' WHERE id=?", (s.id,))
                out["sessions_completed"] += 1
            elif now >= s.start_time and (
                s.status == SessionStatus.NOTIFIED
                or (s.status == SessionStatus.PENDING and not _has_tiers(s))
            ):
                con.execute("UPDATE sessions SET status='started' WHERE id=?", (s.id,))
                out["sessions_started"] += 1

        # une session ajoutée tard (course reportée) reste possible jusqu'à la fin de la fenêtre
        for (wid, start_date, open_n) in con.execute(
            "SELECT w.id, w.start_date, "
            "SUM(CASE WHEN s.id IS NOT NULL AND s.status != 'completed' THEN 1 ELSE 0 END) "
            "FROM weekends w LEFT JOIN sessions s ON s.weekend_id = w.id "
            "WHERE w.status='active' GROUP BY w.id"
        ).fetchall():
            try:
                _, span_end = clock.weekend_span(clock.parse_date(start_date))
            except ValueError as e:
                log.warning("Weekend %s has an unreadable start_date: %s", wid, e)
                continue
            if int(open_n or 0) == 0 and now >= span_end:
                con.execute("UPDATE weekends SET status='completed' WHERE id=?", (int(wid),))
                out["weekends_completed"] += 1

    if any(out.values()):
        log.info("Lifecycle: %s", out)
    return out
