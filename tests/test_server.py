import json
import urllib.request

import pytest
import redis

from berghain.game import (
    ACCEPTED_LIMIT,
    BIT_ATTR_ACCEPT,
    MAX_ATTRS,
    Game,
    GameService,
    NormalSource,
    default_game_params,
)
from berghain.goal import GoalOp, attr
from berghain.server import App, Response, format_game, main, serve
from berghain.store import ConnectionPool


def _b(raw):
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw)
    return str(raw).encode()


class FakeStore:
    def __init__(self):
        self.hashes = {}
        self.strings = {}
        self.lists = {}
        self.failing = False


class FakeRedis:
    def __init__(self, store):
        self._store = store

    def _check(self):
        if self._store.failing:
            raise redis.ConnectionError("down")

    def incr(self, name):
        self._check()
        current = int(self._store.strings.get(name, b"0")) + 1
        self._store.strings[name] = _b(current)
        return current

    def hset(self, name, key=None, value=None, mapping=None):
        self._check()
        table = self._store.hashes.setdefault(name, {})
        items = dict(mapping or {})
        if key is not None:
            items[key] = value
        added = 0
        for k, v in items.items():
            added += _b(k) not in table
            table[_b(k)] = _b(v)
        return added

    def hsetnx(self, name, key, value):
        self._check()
        table = self._store.hashes.setdefault(name, {})
        if _b(key) in table:
            return 0
        table[_b(key)] = _b(value)
        return 1

    def hmget(self, name, keys):
        self._check()
        table = self._store.hashes.get(name, {})
        return [table.get(_b(k)) for k in keys]

    def hgetall(self, name):
        self._check()
        return dict(self._store.hashes.get(name, {}))

    def hget(self, name, key):
        self._check()
        return self._store.hashes.get(name, {}).get(_b(key))

    def hdel(self, name, *keys):
        self._check()
        table = self._store.hashes.get(name, {})
        return sum(table.pop(_b(k), None) is not None for k in keys)

    def lpush(self, name, *values):
        self._check()
        items = self._store.lists.setdefault(name, [])
        for v in values:
            items.insert(0, _b(v))
        return len(items)

    def setrange(self, name, offset, value):
        self._check()
        current = bytearray(self._store.strings.get(name, b""))
        if len(current) < offset:
            current.extend(bytes(offset - len(current)))
        current[offset:offset + len(value)] = value
        self._store.strings[name] = bytes(current)
        return len(current)

    def get(self, name):
        self._check()
        return self._store.strings.get(name)

    def close(self):
        pass


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def pool(store):
    return ConnectionPool(2, lambda: FakeRedis(store))


@pytest.fixture
def service(pool):
    source = NormalSource(7)
    games = default_game_params()
    for params in games:
        params.assign_distribution(source, 2000)
    return GameService(pool, source, games)


@pytest.fixture
def app(service, pool):
    return App(service, pool)


def _body(response):
    return json.loads(response.body)


def _register(app, name="alice"):
    return _body(app.new_user({"name": name}, {}))["uuid"]


def _start(app):
    user = _register(app)
    return _body(app.new_game({"user": user, "type": "0"}))["id"]


def test_refuses_other_methods_and_unknown_paths(app):
    assert app.handle("POST", "/params", {}, {}) is None
    assert app.handle("GET", "/nowhere", {}, {}) is None


def test_params_without_type_reports_rulesets(app):
    response = app.handle("GET", "/params", {}, {})
    assert response.body == '{"rulesets":2}'
    assert ("Content-Type", "application/json") in response.headers


def test_params_for_type_zero(app, service):
    body = _body(app.params({"type": "0"}))
    assert body["type"] == 0
    assert body["goals"] == [
        [int(GoalOp.GE), attr(0), 600],
        [int(GoalOp.GE), attr(1), 600],
    ]
    assert body["p"] == pytest.approx(list(service.game_params(0).marginals), abs=1e-6)
    assert len(body["Q"]) == 4


def test_params_bad_type(app):
    assert app.params({"type": "9"}).body == '{"error":"bad or missing arg type"}'


def test_new_user_rejects_short_name(app):
    assert app.new_user({"name": "ab"}, {}).body == '{"error":"bad or missing arg name"}'


def test_new_user_rejects_existing_cookie(app):
    response = app.new_user({"name": "alice"}, {"userid": "x"})
    assert response.body == '{"error":"bad or missing arg userid"}'


def test_new_user_registers_and_sets_cookies(app, service):
    response = app.new_user({"name": "alice"}, {})
    user_uuid = _body(response)["uuid"]
    cookies = [v for k, v in response.headers if k == "Set-Cookie"]
    assert cookies[0].startswith(f"userid={user_uuid}; Expires=")
    assert cookies[0].endswith("; Path=/")
    assert cookies[1].startswith("userdisplay=alice; ")
    user = service.find_user(user_uuid)
    assert user.realname == "alice"
    assert user.id == 1


def test_new_user_name_taken(app):
    _register(app, "alice")
    assert _body(app.new_user({"name": "alice"}, {})) == {"error": "username taken"}


def test_store_failure_is_reported(app, store):
    store.failing = True
    assert _body(app.new_user({"name": "alice"}, {})) == {"error": "valkey error"}


def test_new_game_argument_checks(app):
    user = _register(app)
    assert _body(app.new_game({"type": "0"}))["error"] == "bad or missing arg user"
    assert _body(app.new_game({"user": user}))["error"] == "bad or missing arg type"
    assert _body(app.new_game({"user": user, "type": "1"}))["error"] == (
        "bad or missing arg type"
    )
    unknown = "00000000-0000-0000-0000-000000000000"
    assert _body(app.new_game({"user": unknown, "type": "0"}))["error"] == (
        "bad or missing arg user"
    )


def test_new_game_is_stored(app, service):
    game_uuid = _start(app)
    game = service.find_game(game_uuid)
    assert game.name == game_uuid
    assert game.has_next
    assert game.count == 0


def test_process_person_flow(app, service):
    game_uuid = _start(app)
    peek = _body(app.process_person({"game": game_uuid, "person": "0"}))
    assert peek["status"] == "running"
    assert peek["count"] == 0
    pending = peek["next"]

    after = _body(app.process_person({"game": game_uuid, "person": "0", "verdict": "true"}))
    assert after["count"] == 1
    game = service.find_game(game_uuid)
    assert game.seen[0] == pending | BIT_ATTR_ACCEPT
    assert game.accepted == 1


def test_process_person_wrong_person(app):
    game_uuid = _start(app)
    response = app.process_person({"game": game_uuid, "person": "5", "verdict": "false"})
    assert _body(response) == {"error": "wrong person"}


def test_process_person_bad_game(app):
    response = app.process_person({"game": "not-a-uuid", "person": "0"})
    assert _body(response) == {"error": "bad or missing arg game"}


def test_details_by_uuid_and_id(app):
    game_uuid = _start(app)
    app.process_person({"game": game_uuid, "person": "0", "verdict": "false"})
    by_uuid = _body(app.details({"game": game_uuid}))
    by_id = _body(app.details({"game": "1"}))
    assert by_uuid == by_id
    assert by_uuid["count"] == 1
    assert by_uuid["accepted"] == 0
    assert len(by_uuid["attrs"]) == MAX_ATTRS
    assert by_uuid["type"] == 0
    assert "finished" not in by_uuid


def test_symbols_lists_reviewed_people(app, service):
    game_uuid = _start(app)
    app.process_person({"game": game_uuid, "person": "0", "verdict": "true"})
    app.process_person({"game": game_uuid, "person": "1", "verdict": "false"})
    body = _body(app.symbols({"game": game_uuid}))
    assert body["count"] == 2
    assert body["symbols"] == list(service.find_game(game_uuid).seen)
    assert body["symbols"][0] & BIT_ATTR_ACCEPT
    assert not body["symbols"][1] & BIT_ATTR_ACCEPT


def test_symbols_unknown_game(app):
    assert _body(app.symbols({"game": "42"})) == {"error": "bad or missing arg game"}


def test_format_game_finished():
    params = default_game_params()[0]
    won = Game(name="g", params=params, seen=bytearray([0x83] * ACCEPTED_LIMIT))
    won.update()
    lost = Game(name="g", params=params, seen=bytearray([BIT_ATTR_ACCEPT] * ACCEPTED_LIMIT))
    lost.update()
    assert json.loads(format_game(won)) == {"status": "completed", "count": ACCEPTED_LIMIT}
    assert json.loads(format_game(lost)) == {"status": "failed", "count": ACCEPTED_LIMIT}


def test_format_game_running():
    game = Game(name="g", next=3, seen=bytearray([1, 2]))
    assert json.loads(format_game(game)) == {"status": "running", "count": 2, "next": 3}


def test_response_defaults():
    response = Response("{}")
    assert response.status == 200
    assert response.headers == [("Content-Type", "application/json")]


def test_serve_over_http(app):
    server = serve(app, 0)
    try:
        port = server.server_address[1]
        with urllib.request.urlopen(f"http://127.0.0.1:{port}/params") as reply:
            params = json.loads(reply.read().decode())
        request = urllib.request.Request(
            f"http://127.0.0.1:{port}/new-user?name=alice",
            headers={"Cookie": "userid=abc"},
        )
        with urllib.request.urlopen(request) as reply:
            refused = json.loads(reply.read().decode())
    finally:
        server.shutdown()
        server.server_close()
    assert params == {"rulesets": 2}
    assert refused == {"error": "bad or missing arg userid"}


def test_main_fails_without_store(tmp_path):
    missing = tmp_path / "missing.sock"
    assert main(["--socket", str(missing), "--pool-size", "1"]) == 1