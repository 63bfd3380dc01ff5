import logging
import os
import queue
import sqlite3
import threading
from contextlib import contextmanager

import psycopg2
import psycopg2.extras as psycopg2_extras
import psycopg2.pool as psycopg2_pool

logger = logging.getLogger(__name__)

# Integrity violations raised by either backend (duplicate pair, missing parent row)
IntegrityError = (sqlite3.IntegrityError, psycopg2.IntegrityError)

DB_POOL_MIN = int(os.environ.get("DB_POOL_MIN", 1))
DB_POOL_MAX = int(os.environ.get("DB_POOL_MAX", 10))
DB_POOL_TIMEOUT = float(os.environ.get("DB_POOL_TIMEOUT", 30))


class PoolTimeout(Exception):
    """Raised when no connection could be checked out before the timeout."""


#############################
# Database helpers
#############################


def _pg_dsn() -> str:
    """Build a database connection string from environment variables."""
    url = os.environ.get("DATABASE_URL")
    if url:
        return url
    host = os.environ.get("DB_HOST", "localhost")
    port = os.environ.get("DB_PORT", "5432")
    user = os.environ.get("DB_USER", "postgres")
    password = os.environ.get("DB_PASSWORD", "")
    dbname = os.environ.get("DB_NAME", "allegro")
    return f"postgresql://{user}:{password}@{host}:{port}/{dbname}"


def _using_postgres(dsn: str) -> bool:
    return not dsn.startswith("sqlite:")


def _sqlite_path(dsn: str) -> str:
    # sqlite:///relative.db, sqlite:////abs/path.db, sqlite:///:memory: is not supported
    return dsn[len("sqlite:///"):]


def execute(cur, sql, params=()):
    """Execute ``sql`` written with ``%s`` placeholders on either backend."""
    if isinstance(cur, sqlite3.Cursor):
        sql = sql.replace("%s", "?")
    return cur.execute(sql, params)


def insert_returning_id(cur, sql, params=()) -> int:
    """Run an INSERT and return the generated ``id`` of the new row."""
    if isinstance(cur, sqlite3.Cursor):
        execute(cur, sql, params)
        return cur.lastrowid
    execute(cur, sql + " RETURNING id", params)
    return cur.fetchone()["id"]


def placeholders(count: int) -> str:
    return ", ".join(["%s"] * count)


class ConnectionPool:
    """Bounded pool with blocking checkout.

    At most ``maxconn`` connections are out at once; a caller waiting longer than
    ``timeout`` seconds gets :class:`PoolTimeout`.  Connections run in autocommit
    mode, so every statement is its own unit of work."""

    def __init__(self, dsn: str | None = None, minconn: int = DB_POOL_MIN,
                 maxconn: int = DB_POOL_MAX, timeout: float = DB_POOL_TIMEOUT):
        self.dsn = dsn or _pg_dsn()
        self.timeout = timeout
        self.maxconn = maxconn
        self.postgres = _using_postgres(self.dsn)
        self._slots = threading.BoundedSemaphore(maxconn)
        if self.postgres:
            self._pg = psycopg2_pool.ThreadedConnectionPool(
                minconn, maxconn, self.dsn,
                cursor_factory=psycopg2_extras.RealDictCursor,
            )
        else:
            self._pg = None
            self._idle: queue.LifoQueue = queue.LifoQueue()

    def _open_sqlite(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            _sqlite_path(self.dsn), check_same_thread=False,
            timeout=30, isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        return conn

    def _getconn(self):
        if self.postgres:
            conn = self._pg.getconn()
            conn.autocommit = True
            return conn
        try:
            return self._idle.get_nowait()
        except queue.Empty:
            return self._open_sqlite()

    def _putconn(self, conn) -> None:
        if self.postgres:
            self._pg.putconn(conn)
        else:
            self._idle.put(conn)

    @contextmanager
    def connection(self):
        """Check out a connection for the duration of one operation."""
        if not self._slots.acquire(timeout=self.timeout):
            raise PoolTimeout(f"no database connection available after {self.timeout}s")
        try:
            conn = self._getconn()
            try:
                yield conn
            finally:
                self._putconn(conn)
        finally:
            self._slots.release()

    def closeall(self) -> None:
        if self.postgres:
            self._pg.closeall()
            return
        while True:
            try:
                self._idle.get_nowait().close()
            except queue.Empty:
                break


_pool: ConnectionPool | None = None
_pool_lock = threading.Lock()


def get_pool() -> ConnectionPool:
    """Return the process-wide pool, creating it from the environment on first use."""
    global _pool
    with _pool_lock:
        if _pool is None:
            _pool = ConnectionPool()
        return _pool


def set_pool(pool: ConnectionPool | None) -> None:
    global _pool
    with _pool_lock:
        if _pool is not None and _pool is not pool:
            _pool.closeall()
        _pool = pool


@contextmanager
def get_db_connection():
    """Yield a connection from the process-wide pool."""
    with get_pool().connection() as conn:
        yield conn


#############################
# Schema
#############################

_TABLES = [
    # Users: username, salted PBKDF2 hash and the current session
    '''CREATE TABLE IF NOT EXISTS users (
           id {pk},
           username VARCHAR(50) NOT NULL UNIQUE,
           password_hash VARCHAR(255) NOT NULL,
           salt VARCHAR(255) NOT NULL,
           session_token VARCHAR(255) UNIQUE,
           session_created_at BIGINT
       )''',
    # Presence of a row grants admin privilege to that username
    '''CREATE TABLE IF NOT EXISTS admins (
           id {pk},
           username VARCHAR(50) NOT NULL UNIQUE,
           FOREIGN KEY (username) REFERENCES users(username)
       )''',
    '''CREATE TABLE IF NOT EXISTS performers (
           id {pk},
           name TEXT NOT NULL,
           description TEXT,
           image_path TEXT
       )''',
    '''CREATE TABLE IF NOT EXISTS composers (
           id {pk},
           name TEXT NOT NULL,
           description TEXT,
           image_path TEXT
       )''',
    '''CREATE TABLE IF NOT EXISTS songwriters (
           id {pk},
           name TEXT NOT NULL,
           description TEXT,
           image_path TEXT
       )''',
    '''CREATE TABLE IF NOT EXISTS pieces (
           id {pk},
           name TEXT NOT NULL,
           movements INTEGER,
           description TEXT
       )''',
    '''CREATE TABLE IF NOT EXISTS piece_composers (
           id {pk},
           piece_id INTEGER NOT NULL,
           composer_id INTEGER NOT NULL,
           UNIQUE(piece_id, composer_id),
           FOREIGN KEY (piece_id) REFERENCES pieces(id),
           FOREIGN KEY (composer_id) REFERENCES composers(id)
       )''',
    '''CREATE TABLE IF NOT EXISTS piece_songwriters (
           id {pk},
           piece_id INTEGER NOT NULL,
           songwriter_id INTEGER NOT NULL,
           UNIQUE(piece_id, songwriter_id),
           FOREIGN KEY (piece_id) REFERENCES pieces(id),
           FOREIGN KEY (songwriter_id) REFERENCES songwriters(id)
       )''',
    '''CREATE TABLE IF NOT EXISTS releases (
           id {pk},
           name TEXT NOT NULL,
           description TEXT,
           image_path TEXT
       )''',
    '''CREATE TABLE IF NOT EXISTS release_performers (
           id {pk},
           release_id INTEGER NOT NULL,
           performer_id INTEGER NOT NULL,
           UNIQUE(release_id, performer_id),
           FOREIGN KEY (release_id) REFERENCES releases(id),
           FOREIGN KEY (performer_id) REFERENCES performers(id)
       )''',
    '''CREATE TABLE IF NOT EXISTS recordings (
           id {pk},
           piece_name TEXT NOT NULL,
           piece_id INTEGER NOT NULL,
           release_id INTEGER NOT NULL,
           track_number INTEGER NOT NULL,
           file_path TEXT,
           FOREIGN KEY (piece_id) REFERENCES pieces(id),
           FOREIGN KEY (release_id) REFERENCES releases(id)
       )''',
    '''CREATE TABLE IF NOT EXISTS recording_performers (
           id {pk},
           recording_id INTEGER NOT NULL,
           performer_id INTEGER NOT NULL,
           UNIQUE(recording_id, performer_id),
           FOREIGN KEY (recording_id) REFERENCES recordings(id),
           FOREIGN KEY (performer_id) REFERENCES performers(id)
       )''',
]


def init_db(pool: ConnectionPool | None = None) -> None:
    """Create tables if they do not already exist.  This function is idempotent."""
    pool = pool or get_pool()
    pk = "SERIAL PRIMARY KEY" if pool.postgres else "INTEGER PRIMARY KEY AUTOINCREMENT"
    with pool.connection() as conn:
        cur = conn.cursor()
        for stmt in _TABLES:
            execute(cur, stmt.format(pk=pk))
    logger.info("Database schema ready (%s)", "postgres" if pool.postgres else "sqlite")
