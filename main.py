# main.py - exam session service, BASE_PATH-aware (psycopg3 + pooling)
# Identity comes from the Flask session, or from a trusted proxy header when enabled.

import os
from contextlib import contextmanager
from urllib.parse import urlparse, parse_qs, unquote
from typing import Optional

from flask import Flask, g, jsonify, request, session

# Database (psycopg 3)
from psycopg_pool import ConnectionPool
from psycopg.conninfo import make_conninfo
from psycopg.rows import dict_row

from exam import create_exam_blueprint
from policy import SessionPolicy
from runtime import SessionHost
from store import PostgresStore

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")

app = Flask(__name__)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=True,
)

TRUST_STUDENT_HEADER = os.getenv("TRUST_STUDENT_HEADER", "0").lower() in {"1", "true", "yes"}
STUDENT_HEADER = os.getenv("STUDENT_HEADER", "X-Student-Id")

# =============================================================================
# DB configuration: DATABASE_URL wins, otherwise discrete DB_* settings over TCP
# =============================================================================
DATABASE_URL = os.getenv("DATABASE_URL")
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")
DB_NAME = os.getenv("DB_NAME")
DB_HOST = os.getenv("DB_HOST") or "127.0.0.1"
DB_PORT = int(os.getenv("DB_PORT") or "5432")
DB_SSLMODE = os.getenv("DB_SSLMODE") or "prefer"
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX") or "6")

_BASE_CONN = {"connect_timeout": 10, "options": "-c search_path=public"}

def _parse_database_url(url: str) -> dict:
    # accept SQLAlchemy-style driver suffixes
    scheme, sep, rest = url.partition("://")
    if not sep:
        raise ValueError("DATABASE_URL has no scheme")
    if scheme.split("+", 1)[0] not in ("postgresql", "postgres"):
        raise ValueError(f"Unsupported scheme '{scheme}'")
    p = urlparse("postgresql://" + rest)
    qs = parse_qs(p.query or "", keep_blank_values=True)
    dbname = (p.path or "").lstrip("/") or (qs.get("dbname") or [""])[0]
    if not dbname:
        raise ValueError("DATABASE_URL missing dbname")
    kwargs = dict(_BASE_CONN, dbname=dbname,
                  user=unquote(p.username or ""), password=unquote(p.password or ""))
    host = (qs.get("host") or [p.hostname])[0]
    if host:
        kwargs["host"] = host
    if p.port and not str(host or "").startswith("/"):
        kwargs["port"] = p.port
    if qs.get("sslmode"):
        kwargs["sslmode"] = qs["sslmode"][0]
    return kwargs

def _connection_kwargs() -> dict:
    if DATABASE_URL:
        kwargs = _parse_database_url(DATABASE_URL)
        origin = "DATABASE_URL"
    else:
        if not all([DB_NAME, DB_USER, DB_PASS]):
            raise RuntimeError("Set DATABASE_URL, or DB_NAME, DB_USER and DB_PASS.")
        kwargs = dict(_BASE_CONN, host=DB_HOST, port=DB_PORT, dbname=DB_NAME,
                      user=DB_USER, password=DB_PASS, sslmode=DB_SSLMODE)
        origin = "DB_* settings"
    where = kwargs.get("host", "localhost")
    if not str(where).startswith("/"):
        where = f"{where}:{kwargs.get('port', 5432)}"
    print(f"[DB] {origin}: {where}/{kwargs['dbname']}")
    return kwargs

# =============================================================================
# psycopg3 Connection Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None

def init_pool():
    global _pg_pool
    if _pg_pool is not None:
        return
    _pg_pool = ConnectionPool(conninfo=make_conninfo("", **_connection_kwargs()),
                              min_size=1, max_size=DB_POOL_MAX, open=True)

@contextmanager
def get_conn():
    if _pg_pool is None:
        init_pool()
    with _pg_pool.connection() as conn:
        yield conn

def fetch_all(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            return cur.fetchall()

def fetch_one(q, params=None):
    rows = fetch_all(q, params)
    return rows[0] if rows else None

def execute(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
        conn.commit()

# =============================================================================
# Identity
# =============================================================================
def current_student_id() -> Optional[str]:
    if TRUST_STUDENT_HEADER:
        hdr = (request.headers.get(STUDENT_HEADER) or "").strip()
        if hdr:
            return hdr
    sid = session.get("user_id")
    return str(sid) if sid else None

@app.before_request
def attach_identity():
    g.user_id = current_student_id()

@app.get("/healthz")
def healthz():
    return jsonify({"ok": True, "live_sessions": len(session_host)})

# =============================================================================
# Session engine wiring
# =============================================================================
store = PostgresStore({"fetch_one": fetch_one, "fetch_all": fetch_all, "execute": execute})
try:
    store.ensure_schema()
except Exception as e:
    print(f"[DB] ensure_schema failed: {e}")

session_host = SessionHost(store, store, SessionPolicy.from_env())
session_host.start()

app.register_blueprint(create_exam_blueprint(BASE_PATH, {
    "host": session_host,
    "fetch_exam": store.fetch_exam,
    "admit": store.admit,
}))

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=False)
