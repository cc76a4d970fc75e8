# pitwall/core/db/base.py
from __future__ import annotations
import os, sqlite3, threading
from contextlib import contextmanager

from pitwall.core.config import settings

# WAL: le ticker écrit pendant que /debug et /upcoming lisent
_PRAGMAS = (
    "journal_mode=WAL",
    "foreign_keys=ON",
    "synchronous=NORMAL",
    "temp_store=MEMORY",
    "busy_timeout=5000",
)

_tls = threading.local()
_db_path: str | None = None

def current_db_path() -> str:
    """Chemin absolu de la base, résolu depuis DATA_DIR/DB_NAME au premier appel."""
    global _db_path
    if _db_path is None:
        data_dir = os.path.abspath(settings.data_dir)
        os.makedirs(data_dir, exist_ok=True)
        _db_path = os.path.join(data_dir, settings.db_name)
    return _db_path

def use_database(path: str) -> None:
    """Bascule vers un autre fichier SQLite (tests, outils). Ferme la connexion du thread courant."""
    global _db_path
    close_conn()
    _db_path = os.path.abspath(path)

def _connect() -> sqlite3.Connection:
    con = sqlite3.connect(current_db_path(), check_same_thread=False, isolation_level=None, timeout=5.0)
    con.row_factory = sqlite3.Row
    for pragma in _PRAGMAS:
        con.execute(f"PRAGMA {pragma};")
    return con

def get_conn() -> sqlite3.Connection:
    con = getattr(_tls, "con", None)
    if con is None:
        con = _tls.con = _connect()
    return con

def close_conn() -> None:
    con = getattr(_tls, "con", None)
    if con is not None:
        con.close()
        _tls.con = None

@contextmanager
def atomic(con=None, immediate=True):
    """BEGIN IMMEDIATE par défaut: le verrou d'écriture est pris dès l'entrée."""
    con = con or get_conn()
    con.execute("BEGIN IMMEDIATE;" if immediate else "BEGIN;")
    try:
        yield con
        con.execute("COMMIT;")
    except BaseException:
        if con.in_transaction:
            con.execute("ROLLBACK;")
        raise
