import contextlib
import http.client
import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from allegro.api import CatalogServer


@pytest.fixture
def port(pool):
    httpd = CatalogServer(("127.0.0.1", 0), workers=4)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    # Give server time to start
    time.sleep(0.1)
    yield httpd.server_address[1]
    httpd.shutdown()
    thread.join()
    httpd.server_close()


def request(method, port, path, body=None, raw=None, headers=None):
    conn = http.client.HTTPConnection("127.0.0.1", port)
    data = raw
    if body is not None:
        data = json.dumps(body).encode()
    conn.request(method, path, data, {"Content-Type": "application/json", **(headers or {})})
    res = conn.getresponse()
    res_body = res.read()
    status = res.status
    resp_headers = dict(res.getheaders())
    conn.close()
    return status, resp_headers, res_body


def call(port, method, path, body=None):
    status, _, res_body = request(method, port, path, body)
    assert status == 201
    return json.loads(res_body)


def bootstrap(port):
    assert call(port, "POST", "/auth/adduser", {"username": "admin", "password": "pw", "token": ""})["success"]
    auth = call(port, "POST", "/auth/login", {"username": "admin", "password": "pw"})
    assert auth["access"] is True
    return auth["token"]


def test_bootstrap_login_and_count(port):
    assert call(port, "GET", "/auth/countuser") == {"success": True, "message": 0}
    token = bootstrap(port)
    assert call(port, "GET", "/auth/countuser")["message"] == 1

    denied = call(port, "POST", "/auth/adduser", {"username": "bob", "password": "pw", "token": ""})
    assert denied == {"success": False, "message": "Invalid token"}
    added = call(port, "POST", "/auth/adduser", {"username": "bob", "password": "pw", "token": token})
    assert added["success"] is True

    failed = call(port, "POST", "/auth/login", {"username": "bob", "password": "nope"})
    assert failed == {"access": False, "token": None}


def test_catalog_round_trip(port):
    token = bootstrap(port)
    added = call(port, "POST", "/music/add/artist", {
        "name": "Martha Argerich", "has_image": True, "artist_type": "performer", "token": token,
    })
    assert added["success"] is True
    performers = call(port, "GET", "/music/get/performers")["message"]
    performer_id = performers[0]["id"]
    assert added["message"] == f"performer-{performer_id}"

    call(port, "POST", "/music/add/artist", {"name": "Chopin", "has_image": False, "artist_type": "composer", "token": token})
    composer_id = call(port, "GET", "/music/get/composers")["message"][0]["id"]
    piece = call(port, "POST", "/music/add/piece", {
        "name": "Piano Concerto No. 1", "movements": 3, "composer_ids": [composer_id], "token": token,
    })
    assert piece["success"] is True
    piece_view = call(port, "GET", "/music/get/pieces")["message"][0]
    assert piece_view == {
        "id": piece_view["id"],
        "name": "Piano Concerto No. 1",
        "movements": 3,
        "description": None,
        "composer_ids": [composer_id],
        "songwriter_ids": None,
    }

    release = call(port, "POST", "/music/add/release", {
        "name": "Chopin Concertos", "performer_ids": [performer_id], "has_image": False, "token": token,
    })
    assert release == {"success": True, "message": ""}
    release_id = call(port, "GET", "/music/get/releases")["message"][0]["id"]
    recording = call(port, "POST", "/music/add/recording", {
        "piece_id": piece_view["id"], "release_id": release_id, "performer_ids": [], "track_number": 1, "token": token,
    })
    assert recording["success"] is True

    release_view = call(port, "POST", "/music/get/release", {"id": release_id})
    assert release_view["success"] is True
    assert release_view["message"]["performer_ids"] == [performer_id]
    recording_id = release_view["message"]["recording_ids"][0]

    recording_view = call(port, "POST", "/music/get/recording", {"id": recording_id})["message"]
    assert recording_view["performer_ids"] == []
    assert recording_view["piece_name"] == "Piano Concerto No. 1"
    assert recording_view["file_path"] is None

    found = call(port, "POST", "/music/search/performer", {"query": "mar arg", "token": token})
    assert [p["name"] for p in found["message"]] == ["Martha Argerich"]


def test_unauthorized_write_is_201_with_failure(port):
    bootstrap(port)
    response = call(port, "POST", "/music/add/release", {"name": "X", "performer_ids": [], "has_image": False, "token": "bad"})
    assert response == {"success": False, "message": "User is not an admin"}
    assert call(port, "POST", "/music/search/release", {"query": "x", "token": "bad"}) == {"success": False, "message": []}


def test_missing_item_returns_sentinel(port):
    response = call(port, "POST", "/music/get/piece", {"id": 99})
    assert response["success"] is False
    assert response["message"]["id"] == -1


def test_malformed_requests_are_500_without_body(port):
    status, _, body = request("POST", port, "/auth/login", raw=b"{not json")
    assert status == 500
    assert body == b""
    status, _, body = request("POST", port, "/music/get/piece", {"identifier": 1})
    assert status == 500
    assert body == b""
    status, _, _ = request("POST", port, "/music/add/artist", {
        "name": "X", "has_image": False, "artist_type": "conductor", "token": "",
    })
    assert status == 500


def test_unknown_route_is_404(port):
    status, _, _ = request("GET", port, "/music/get/conductors")
    assert status == 404
    status, _, _ = request("GET", port, "/music/get/piece")
    assert status == 404


def test_cors_preflight(port):
    status, headers, _ = request("OPTIONS", port, "/music/add/piece")
    assert status == 204
    assert headers["Access-Control-Allow-Origin"] == "*"


def test_exhausted_pool_is_500_without_body(port, pool, monkeypatch):
    monkeypatch.setattr(pool, "timeout", 0.2)
    with contextlib.ExitStack() as stack:
        for _ in range(pool.maxconn):
            stack.enter_context(pool.connection())
        status, _, body = request("GET", port, "/auth/countuser")
    assert status == 500
    assert body == b""
    # Served again once the connections are back
    assert call(port, "GET", "/auth/countuser")["success"] is True


def test_out_of_range_ids_are_rejected_before_writing(port):
    token = bootstrap(port)
    status, _, body = request("POST", port, "/music/add/piece", {
        "name": "Etude", "composer_ids": [2**31], "token": token,
    })
    assert status == 500
    assert body == b""
    assert call(port, "GET", "/music/get/pieces")["message"] == []
    status, _, _ = request("POST", port, "/music/get/piece", {"id": 2**40})
    assert status == 500


def test_small_backlog_still_serves_every_client(pool):
    httpd = CatalogServer(("127.0.0.1", 0), workers=1, max_pending=1)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    port = httpd.server_address[1]
    try:
        with ThreadPoolExecutor(max_workers=4) as clients:
            statuses = list(clients.map(lambda _: request("GET", port, "/auth/countuser")[0], range(8)))
        assert statuses == [201] * 8
    finally:
        httpd.shutdown()
        thread.join()
        httpd.server_close()
