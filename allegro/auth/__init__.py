import hashlib
import hmac
import logging
import time
import uuid

from allegro.db import IntegrityError, execute
from allegro.models import AddUserRequest, AuthRequest, AuthResponse, Response
from allegro.utils import clean_name

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 100_000
SESSION_DURATION = 7 * 24 * 3600


#############################
# Credential store
#############################


def generate_salt() -> str:
    return str(uuid.uuid4())


def hash_password(password: str, salt: str) -> str:
    """Hash a password with PBKDF2-HMAC-SHA256 and return it hex encoded."""
    hashed = hashlib.pbkdf2_hmac(
        'sha256', password.encode('utf-8'), salt.encode('utf-8'), PBKDF2_ITERATIONS
    )
    return hashed.hex()


def verify_password(password: str, salt: str, expected_hash: str) -> bool:
    """Verify a password against a stored salt and hash."""
    return hmac.compare_digest(hash_password(password, salt), expected_hash)


def is_session_valid(user, now: float | None = None) -> bool:
    """Return True if ``user`` holds a session token younger than ``SESSION_DURATION``."""
    if not user or not user['session_token'] or user['session_created_at'] is None:
        return False
    now = time.time() if now is None else now
    return now - user['session_created_at'] < SESSION_DURATION


def issue_session(conn, username: str) -> str:
    """Store a fresh session token for ``username``, replacing any previous one."""
    token = uuid.uuid4().hex
    cur = conn.cursor()
    execute(cur,
        'UPDATE users SET session_token = %s, session_created_at = %s WHERE username = %s',
        (token, int(time.time()), username),
    )
    return token


def get_user_by_username(conn, username: str):
    cur = conn.cursor()
    execute(cur, 'SELECT * FROM users WHERE username = %s', (username,))
    return cur.fetchone()


def count_users(conn) -> int:
    cur = conn.cursor()
    execute(cur, 'SELECT COUNT(*) AS total FROM users')
    return int(cur.fetchone()['total'])


#############################
# Authorization gate
#############################


def resolve_user(conn, token: str | None):
    """Return the user owning ``token`` or None if it is unknown or expired."""
    if not token:
        return None
    cur = conn.cursor()
    execute(cur, 'SELECT * FROM users WHERE session_token = %s', (token,))
    user = cur.fetchone()
    if user is None or not is_session_valid(user):
        return None
    return user


def has_admin_marker(conn, username: str) -> bool:
    cur = conn.cursor()
    execute(cur, 'SELECT 1 FROM admins WHERE username = %s', (username,))
    return cur.fetchone() is not None


def is_admin(conn, token: str | None) -> bool:
    """Given a token, return whether its user is an admin."""
    user = resolve_user(conn, token)
    if user is None:
        return False
    if not has_admin_marker(conn, user['username']):
        logger.warning("User '%s' is not an admin", user['username'])
        return False
    return True


def require_admin_or_bootstrap(conn, token: str | None) -> str | None:
    """Decide whether a new user may be created.

    Returns ``'bootstrap'`` while the users table is empty (no token needed),
    ``'admin'`` when ``token`` belongs to an admin, and None otherwise."""
    if count_users(conn) == 0:
        return 'bootstrap'
    if is_admin(conn, token):
        return 'admin'
    return None


#############################
# Operations
#############################


def add_user(conn, req: AddUserRequest) -> Response[str]:
    """Add a user, requiring an admin token unless this is the first user."""
    username = clean_name(req.username)
    if not username or not req.password:
        return Response(success=False, message='Username and password are required')

    grant = require_admin_or_bootstrap(conn, req.token)
    if grant is None:
        if resolve_user(conn, req.token) is None:
            return Response(success=False, message='Invalid token')
        return Response(success=False, message='User is not an admin')

    salt = generate_salt()
    cur = conn.cursor()
    try:
        execute(cur,
            'INSERT INTO users (username, password_hash, salt) VALUES (%s, %s, %s)',
            (username, hash_password(req.password, salt), salt),
        )
    except IntegrityError:
        logger.warning("Refusing to add user '%s': username taken", username)
        return Response(success=False, message='Username already exists')

    if grant == 'bootstrap':
        execute(cur, 'INSERT INTO admins (username) VALUES (%s)', (username,))
        logger.info("Bootstrap admin '%s' created", username)
    else:
        logger.info("User '%s' added", username)
    return Response(success=True, message='User successfully added')


def login(conn, req: AuthRequest) -> AuthResponse:
    """Check the credentials and return a session token on success.

    A still-valid token is handed back unchanged instead of being rotated, so
    several clients logged in as the same user share one session."""
    user = get_user_by_username(conn, clean_name(req.username))
    if user is None:
        logger.warning("Login failed for user '%s': unknown user", req.username)
        return AuthResponse(access=False, token=None)
    if not verify_password(req.password, user['salt'], user['password_hash']):
        logger.warning("Login failed for user '%s': invalid password", req.username)
        return AuthResponse(access=False, token=None)
    if is_session_valid(user):
        return AuthResponse(access=True, token=user['session_token'])
    return AuthResponse(access=True, token=issue_session(conn, user['username']))
