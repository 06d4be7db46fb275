"""HTTP front end for the door game."""

from __future__ import annotations

import argparse
import json
import logging
import re
import sys
import threading
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from email.utils import formatdate
from http.cookies import CookieError, SimpleCookie
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qsl, urlsplit

from berghain.game import (
    MAX_ATTRS,
    USER_NAME_LEN,
    Game,
    GameError,
    GameService,
    valid_game_type,
)
from berghain.store import (
    POOL_SIZE,
    SOCKET_PATH,
    ConnectionPool,
    StoreError,
    connect_unix,
)

GAME_PORT = 8124

# Cookies expire a year from now; nobody should be playing that long.
COOKIE_LIFETIME = 3600 * 24 * 365

_log = logging.getLogger(__name__)

_UUID_RE = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)
_INT_RE = re.compile(r"\s*([+-]?\d+)")


@dataclass
class Response:
    """A JSON reply with its status and headers."""

    body: str
    status: int = 200
    headers: list[tuple[str, str]] = field(
        default_factory=lambda: [("Content-Type", "application/json")]
    )


def _atoi(text: str) -> int:
    match = _INT_RE.match(text)
    return int(match.group(1)) if match else 0


def _parse_uuid(text: str | None) -> uuid.UUID | None:
    if text is None or not _UUID_RE.match(text):
        return None
    return uuid.UUID(text)


def _bad_arg(name: str) -> Response:
    _log.debug("request with bad or missing arg %s", name)
    return Response(f'{{"error":"bad or missing arg {name}"}}')


def _error(exc: Exception) -> Response:
    _log.debug("request with inline error object: %s", exc)
    return Response('{"error":' + json.dumps(str(exc)) + "}")


def _set_cookie(response: Response, cookie: str, cookie_value: str) -> None:
    expires = formatdate(time.time() + COOKIE_LIFETIME, usegmt=True)
    response.headers.append(
        ("Set-Cookie", f"{cookie}={cookie_value}; Expires={expires}; Path=/")
    )


def format_game(game: Game) -> str:
    """Status of a game as sent back after each person is processed."""
    if game.is_finished():
        status = "completed" if game.goals_satisfied else "failed"
        return f'{{"status":"{status}","count":{game.count}}}'
    return f'{{"status":"running","count":{game.count},"next":{game.next}}}'


class App:
    """Routes GET requests to the game operations."""

    def __init__(self, service: GameService, pool: ConnectionPool) -> None:
        self._service = service
        self._pool = pool
        self._routes: dict[str, Callable[[Mapping[str, str]], Response]] = {
            "/new-game": self.new_game,
            "/process-person": self.process_person,
            "/details": self.details,
            "/symbols": self.symbols,
            "/params": self.params,
        }

    def handle(
        self,
        method: str,
        path: str,
        query: Mapping[str, str] | None = None,
        cookies: Mapping[str, str] | None = None,
    ) -> Response | None:
        """Dispatch a request; None means the request is refused outright."""
        if method != "GET":
            return None
        query = query or {}
        if path == "/new-user":
            return self.new_user(query, cookies or {})
        route = self._routes.get(path)
        if route is None:
            _log.debug("failed to match any routes for %s", path)
            return None
        return route(query)

    def new_user(
        self, query: Mapping[str, str], cookies: Mapping[str, str]
    ) -> Response:
        """Register a player under a unique display name."""
        if "userid" in cookies:
            return _bad_arg("userid")

        realname = query.get("name")
        if realname is None or len(realname) < 3:
            return _bad_arg("name")
        realname = realname[:USER_NAME_LEN]

        name = str(uuid.uuid4())
        try:
            with self._pool.connection() as conn:
                if not conn.hsetnx("usernames", realname, name):
                    raise GameError("username taken")
                user_id = int(conn.incr("next_user"))
                conn.hset("userids", user_id, name)
                conn.hset(name, mapping={"id": user_id, "name": realname})
        except (GameError, StoreError) as exc:
            return _error(exc)

        _log.debug("initialized new user %s (%s) id %d", name, realname, user_id)
        response = Response(f'{{"uuid":"{name}"}}')
        _set_cookie(response, "userid", name)
        _set_cookie(response, "userdisplay", realname)
        return response

    def new_game(self, query: Mapping[str, str]) -> Response:
        """Start a game of the requested type for a registered player."""
        user_uuid = _parse_uuid(query.get("user"))
        if user_uuid is None:
            return _bad_arg("user")

        type_arg = query.get("type")
        if type_arg is None:
            return _bad_arg("type")
        game_type = _atoi(type_arg)
        if not valid_game_type(game_type):
            return _bad_arg("type")

        try:
            user = self._service.find_user(user_uuid)
        except (GameError, StoreError):
            user = None
        if user is None:
            return _bad_arg("user")

        try:
            game = self._service.new_game(game_type, user)
        except (GameError, StoreError) as exc:
            return _error(exc)
        _log.debug("new game %s, type %d", game.name, game_type)
        return Response(f'{{"id":"{game.name}"}}')

    def process_person(self, query: Mapping[str, str]) -> Response:
        """Report the pending person, or record a verdict on them."""
        game_uuid = _parse_uuid(query.get("game"))
        if game_uuid is None:
            return _bad_arg("game")

        person_arg = query.get("person")
        if person_arg is None:
            return _bad_arg("person")

        try:
            game = self._service.find_game(game_uuid)
        except (GameError, StoreError):
            return _bad_arg("game")

        verdict_arg = query.get("verdict")
        if verdict_arg is None:
            return Response(format_game(game))

        verdict = verdict_arg != "false"
        if _atoi(person_arg) != game.count:
            return _error(GameError("wrong person"))

        try:
            self._service.process_next_person(game, verdict)
            if not game.is_finished():
                self._service.create_next_person(game)
        except (GameError, StoreError) as exc:
            return _error(exc)
        return Response(format_game(game))

    def _lookup(self, game_arg: str) -> Game | None:
        game_uuid = _parse_uuid(game_arg)
        try:
            if game_uuid is not None:
                return self._service.find_game(game_uuid)
            return self._service.find_game_by_id(_atoi(game_arg))
        except (GameError, StoreError):
            return None

    def details(self, query: Mapping[str, str]) -> Response:
        """Summary of a game, looked up by uuid or numeric id."""
        game_arg = query.get("game")
        if game_arg is None:
            return _bad_arg("game")
        game = self._lookup(game_arg)
        if game is None:
            return _bad_arg("game")

        attrs = ",".join(str(n) for n in game.attr_n[:MAX_ATTRS])
        body = (
            f'{{"count":{game.count},"accepted":{game.accepted},'
            f'"next":{game.next},"attrs":[{attrs}],"type":{game.game_type}'
        )
        if game.is_finished():
            won = "true" if game.goals_satisfied else "false"
            body += f',"finished":true,"won":{won}'
        return Response(body + "}")

    def symbols(self, query: Mapping[str, str]) -> Response:
        """Every person reviewed in a game, in order."""
        game_arg = query.get("game")
        if game_arg is None:
            return _bad_arg("game")
        game = self._lookup(game_arg)
        if game is None:
            return _bad_arg("game")

        symbols = ",".join(str(s) for s in game.seen)
        return Response(f'{{"count":{game.count},"symbols":[{symbols}]}}')

    def params(self, query: Mapping[str, str]) -> Response:
        """Number of rule sets, or the rules of one game type."""
        type_arg = query.get("type")
        if type_arg is None:
            return Response(f'{{"rulesets":{self._service.number_of_games()}}}')

        game_type = _atoi(type_arg)
        params = self._service.game_params(game_type)
        if params is None:
            return _bad_arg("type")

        marginals = ",".join(f"{p:0.6f}" for p in params.marginals)
        corr = ",".join(f"{q:0.6f}" for q in params.corr)
        goals = ",".join(
            "[" + ",".join(str(term) for term in goal.terms()) + "]"
            for goal in params.goals
        )
        return Response(
            f'{{"type":{game_type},"p":[{marginals}],"Q":[{corr}],"goals":[{goals}]}}'
        )


def _parse_cookies(raw: str | None) -> dict[str, str]:
    if not raw:
        return {}
    jar = SimpleCookie()
    try:
        jar.load(raw)
    except CookieError:
        _log.debug("ignoring malformed cookie header %r", raw)
        return {}
    return {key: morsel.value for key, morsel in jar.items()}


def serve(app: App, port: int = GAME_PORT) -> ThreadingHTTPServer:
    """Start serving ``app`` in a background thread and return the server."""

    class _Handler(BaseHTTPRequestHandler):
        def do_GET(self) -> None:
            parts = urlsplit(self.path)
            query: dict[str, str] = {}
            for key, val in parse_qsl(parts.query, keep_blank_values=True):
                query.setdefault(key, val)

            cookies = _parse_cookies(self.headers.get("Cookie"))

            response = app.handle("GET", parts.path, query, cookies)
            if response is None:
                self.close_connection = True
                return

            payload = response.body.encode()
            self.send_response(response.status)
            for name, val in response.headers:
                self.send_header(name, val)
            self.send_header("Content-Length", str(len(payload)))
            self.end_headers()
            self.wfile.write(payload)

        def log_message(self, format: str, *args: object) -> None:
            _log.debug("%s - %s", self.address_string(), format % args)

    server = ThreadingHTTPServer(("", port), _Handler)
    threading.Thread(target=server.serve_forever, daemon=True).start()
    return server


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="berghain-server", description="Run the door game server."
    )
    parser.add_argument("--port", type=int, default=GAME_PORT)
    parser.add_argument("--socket", default=SOCKET_PATH)
    parser.add_argument("--pool-size", type=int, default=POOL_SIZE)
    args = parser.parse_args(argv)

    try:
        pool = ConnectionPool(args.pool_size, lambda: connect_unix(args.socket))
    except StoreError as exc:
        print(exc, file=sys.stderr)
        return 1

    with pool:
        service = GameService(pool)
        try:
            server = serve(App(service, pool), args.port)
        except OSError as exc:
            print(f"failed to start http server: {exc}", file=sys.stderr)
            return 1
        try:
            while True:
                char = sys.stdin.read(1)
                if not char or char == "q":
                    break
        finally:
            server.shutdown()
            server.server_close()
    return 0