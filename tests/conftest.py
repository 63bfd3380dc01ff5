import pytest

import allegro.db as db
from allegro.auth import add_user, login
from allegro.models import AddUserRequest, AuthRequest

try:
    from testcontainers.postgres import PostgresContainer

    pg = PostgresContainer("postgres:15")
    pg.start()
    PG_DSN = pg.get_connection_url().replace("postgresql+psycopg2://", "postgresql://")
    PG_POOL = db.ConnectionPool(PG_DSN, minconn=1, maxconn=10, timeout=10)
except Exception:  # pragma: no cover - Docker not available, tests use SQLite instead
    pg = None
    PG_POOL = None


@pytest.fixture(scope="session", autouse=True)
def _stop_container():
    yield
    if PG_POOL is not None:
        PG_POOL.closeall()
    if pg is not None:
        pg.stop()


@pytest.fixture
def pool(tmp_path):
    """A connection pool on a freshly created, empty schema."""
    if PG_POOL is not None:
        with PG_POOL.connection() as conn:
            cur = conn.cursor()
            cur.execute("DROP SCHEMA public CASCADE")
            cur.execute("CREATE SCHEMA public")
        pool = PG_POOL
    else:
        pool = db.ConnectionPool(f"sqlite:///{tmp_path / 'allegro.db'}", maxconn=10, timeout=10)
    db.init_db(pool)
    db.set_pool(pool)
    yield pool
    if pool is not PG_POOL:
        db.set_pool(None)


@pytest.fixture
def conn(pool):
    with pool.connection() as connection:
        yield connection


@pytest.fixture
def admin_token(conn):
    """Create the bootstrap admin and return a session token for it."""
    assert add_user(conn, AddUserRequest(username="admin", password="pw", token="")).success
    response = login(conn, AuthRequest(username="admin", password="pw"))
    assert response.access
    return response.token
