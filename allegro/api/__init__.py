#!/usr/bin/env python3
"""
allegro.api
===========

HTTP front end for the Allegro catalog.  Requests are JSON bodies posted to a
small fixed set of paths; every completed operation is answered with ``201``
and a ``{"success": ..., "message": ...}`` envelope, including operations the
caller was not authorised to perform.  Anything that stops an operation from
completing (malformed JSON, a body that does not match the expected shape, no
database connection available, a driver error) is answered with an empty
``500``.

Routes
------

* ``POST /auth/adduser``, ``POST /auth/login``, ``GET /auth/countuser``
* ``POST /music/add/{artist,piece,release,recording}``
* ``POST /music/get/<kind>`` with ``{"id": n}`` and ``GET /music/get/<kind>s``
* ``POST /music/search/<kind>`` with ``{"query": ..., "token": ...}``

where ``<kind>`` is one of performer, composer, songwriter, piece, release or
recording.

Connections are accepted on one thread and handed to a bounded pool of worker
threads, so database calls never block the accept loop.  The number of
connections queued for the workers is capped by ``MAX_PENDING``.  Each request
checks out one pooled database connection for the duration of its operation.
"""

import gzip
import json
import logging
import os
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

from allegro.auth import add_user, count_users, login
from allegro.catalog import add_artist, add_piece, add_recording, add_release, get_all, get_item
from allegro.db import ConnectionPool, get_db_connection, init_db, set_pool
from allegro.models import (
    AddArtistRequest,
    AddPieceRequest,
    AddRecordingRequest,
    AddReleaseRequest,
    AddUserRequest,
    AuthRequest,
    CatalogKind,
    IdRequest,
    Response,
    SearchRequest,
)
from allegro.search import search
from allegro.utils import env_flag

logger = logging.getLogger(__name__)

# Maximum allowed size for HTTP request bodies (default 1 MB)
MAX_REQUEST_SIZE = int(os.environ.get('MAX_REQUEST_SIZE', 1 * 1024 * 1024))

# Number of worker threads handling requests
WORKERS = int(os.environ.get('WORKERS', 16))

# Connections accepted but not yet finished; the accept loop waits beyond this
MAX_PENDING = int(os.environ.get('MAX_PENDING', 256))

LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()

# Log one line per request through the ``allegro.api`` logger
ACCESS_LOG = env_flag('ACCESS_LOG', True)

_KINDS = '|'.join(kind.value for kind in CatalogKind)


class BadRequest(Exception):
    """The request body could not be turned into the expected shape."""


def read_request_body(handler: BaseHTTPRequestHandler) -> bytes:
    """Read and return the request body for the current request.

    Bodies larger than ``MAX_REQUEST_SIZE`` are refused with :class:`BadRequest`."""
    try:
        length = int(handler.headers.get('Content-Length', 0))
    except ValueError:
        return b''
    if length > MAX_REQUEST_SIZE:
        raise BadRequest(f'body of {length} bytes exceeds {MAX_REQUEST_SIZE}')
    return handler.rfile.read(length) if length > 0 else b''


def parse_body(raw: bytes, model):
    """Deserialize ``raw`` JSON into ``model``."""
    try:
        data = json.loads(raw.decode('utf-8')) if raw else {}
        return model.model_validate(data)
    except ValueError as exc:
        # json.JSONDecodeError, UnicodeDecodeError and pydantic.ValidationError
        raise BadRequest(str(exc)) from exc


def send_json(handler: BaseHTTPRequestHandler, status: int, data) -> None:
    """Serialize ``data`` to JSON and send it with the given HTTP status code."""
    payload = json.dumps(data).encode('utf-8')
    accepts = handler.headers.get('Accept-Encoding', '')
    use_gzip = 'gzip' in accepts
    if use_gzip:
        payload = gzip.compress(payload)
    handler.send_response(status)
    handler.send_header('Content-Type', 'application/json')
    handler.send_header('Access-Control-Allow-Origin', '*')
    if use_gzip:
        handler.send_header('Content-Encoding', 'gzip')
    handler.send_header('Content-Length', str(len(payload)))
    handler.end_headers()
    handler.wfile.write(payload)


def send_empty(handler: BaseHTTPRequestHandler, status: int) -> None:
    handler.send_response(status)
    handler.send_header('Content-Length', '0')
    handler.end_headers()


#############################
# HTTP request handler
#############################

class CatalogHandler(BaseHTTPRequestHandler):
    """Request handler dispatching the JSON API."""

    server_version = 'Allegro/1.0'

    # Routing table: (HTTP method, regex pattern, request shape, handler method name)
    ROUTES = [
        ('POST', r'^/auth/adduser$', AddUserRequest, 'api_add_user'),
        ('POST', r'^/auth/login$', AuthRequest, 'api_login'),
        ('GET', r'^/auth/countuser$', None, 'api_count_users'),
        ('POST', r'^/music/add/artist$', AddArtistRequest, 'api_add_artist'),
        ('POST', r'^/music/add/piece$', AddPieceRequest, 'api_add_piece'),
        ('POST', r'^/music/add/release$', AddReleaseRequest, 'api_add_release'),
        ('POST', r'^/music/add/recording$', AddRecordingRequest, 'api_add_recording'),
        ('POST', rf'^/music/get/(?P<kind>{_KINDS})$', IdRequest, 'api_get_item'),
        ('GET', rf'^/music/get/(?P<kind>{_KINDS})s$', None, 'api_get_all'),
        ('POST', rf'^/music/search/(?P<kind>{_KINDS})$', SearchRequest, 'api_search'),
    ]

    def do_OPTIONS(self):  # noqa: N802 (matching http.server naming)
        """Answer CORS preflight requests from browser clients."""
        self.send_response(HTTPStatus.NO_CONTENT)
        self.send_header('Access-Control-Allow-Origin', '*')
        self.send_header('Access-Control-Allow-Methods', 'GET, POST, OPTIONS')
        self.send_header('Access-Control-Allow-Headers', 'Content-Type')
        self.send_header('Access-Control-Max-Age', '3600')
        self.end_headers()

    def do_GET(self):  # noqa: N802
        self.handle_api_request('GET')

    def do_POST(self):  # noqa: N802
        self.handle_api_request('POST')

    def log_message(self, format, *args):
        if ACCESS_LOG:
            logger.info('%s - %s', self.address_string(), format % args)

    def _find_route(self, method: str, path: str):
        """Return ``(request shape, handler, path parameters)`` for a request."""
        for m, pattern, model, handler_name in self.ROUTES:
            if m != method:
                continue
            match = re.match(pattern, path)
            if match:
                return model, getattr(self, handler_name), match.groupdict()
        return None, None, {}

    def handle_api_request(self, method: str):
        path = self.path.split('?', 1)[0]
        model, handler, params = self._find_route(method, path)
        if handler is None:
            self.send_error(HTTPStatus.NOT_FOUND)
            return
        try:
            req = parse_body(read_request_body(self), model) if model else None
            with get_db_connection() as conn:
                result = handler(conn, req, **params)
        except BadRequest as exc:
            logger.warning('Rejected %s %s: %s', method, path, exc)
            send_empty(self, HTTPStatus.INTERNAL_SERVER_ERROR)
            return
        except Exception:
            logger.exception('Internal server error on %s %s', method, path)
            send_empty(self, HTTPStatus.INTERNAL_SERVER_ERROR)
            return
        send_json(self, HTTPStatus.CREATED, result.model_dump(mode='json'))

    # Authentication -----------------------------------------------------

    def api_add_user(self, conn, req: AddUserRequest):
        return add_user(conn, req)

    def api_login(self, conn, req: AuthRequest):
        return login(conn, req)

    def api_count_users(self, conn, req):
        return Response(success=True, message=count_users(conn))

    # Catalog ------------------------------------------------------------

    def api_add_artist(self, conn, req: AddArtistRequest):
        return add_artist(conn, req)

    def api_add_piece(self, conn, req: AddPieceRequest):
        return add_piece(conn, req)

    def api_add_release(self, conn, req: AddReleaseRequest):
        return add_release(conn, req)

    def api_add_recording(self, conn, req: AddRecordingRequest):
        return add_recording(conn, req)

    def api_get_item(self, conn, req: IdRequest, kind: str):
        return get_item(conn, CatalogKind(kind), req.id)

    def api_get_all(self, conn, req, kind: str):
        return get_all(conn, CatalogKind(kind))

    def api_search(self, conn, req: SearchRequest, kind: str):
        return search(conn, CatalogKind(kind), req)


#############################
# Server
#############################

class CatalogServer(ThreadingHTTPServer):
    """HTTP server handing each accepted connection to a fixed-size worker pool.

    At most ``max_pending`` connections are queued or running at once.  Past
    that the accept loop waits for a worker to finish, and new clients stay in
    the kernel's listen backlog instead of piling up in memory."""

    def __init__(self, server_address, handler_class=CatalogHandler, workers: int = WORKERS,
                 max_pending: int = MAX_PENDING):
        super().__init__(server_address, handler_class)
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix='allegro-worker')
        self._pending = threading.BoundedSemaphore(max(max_pending, workers))

    def process_request(self, request, client_address):
        self._pending.acquire()
        try:
            self._executor.submit(self._process_and_release, request, client_address)
        except RuntimeError:
            # executor already shut down
            self._pending.release()
            self.shutdown_request(request)

    def _process_and_release(self, request, client_address):
        try:
            self.process_request_thread(request, client_address)
        finally:
            self._pending.release()

    def server_close(self):
        super().server_close()
        self._executor.shutdown(wait=True)


def run_server(host: str = '0.0.0.0', port: int = 9000, dsn: str | None = None):
    logging.basicConfig(level=LOG_LEVEL)
    pool = ConnectionPool(dsn)
    set_pool(pool)
    init_db(pool)
    server = CatalogServer((host, port))
    logger.info('Allegro server running on http://%s:%d with %d workers', host, port, WORKERS)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info('Shutting down server...')
    finally:
        server.server_close()
        set_pool(None)
