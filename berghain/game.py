"""Game rules, attribute generation and game state kept in the store."""

from __future__ import annotations

import math
import random
import threading
import uuid
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from berghain.goal import Goal, GoalOp, attr, check_goals, make_params, value
from berghain.store import ConnectionPool

# Maximum venue capacity
ACCEPTED_LIMIT = 1000
LOSS_LIMIT = 20000 + ACCEPTED_LIMIT

# Maximum number of attributes a person can carry
MAX_ATTRS = 7

# A person is marked as accepted by a reserved bit in their attribute byte
ATTR_ACCEPT = 7
BIT_ATTR_ACCEPT = 1 << ATTR_ACCEPT

UUID_NAME_LEN = 37
USER_NAME_LEN = 32

# Number of samples drawn to estimate attribute correlations
ATTR_STAT_COUNT = 10_000_000

_TWO_POW_64 = float(1 << 64)


class GameError(Exception):
    """Raised when a game request cannot be carried out."""


class NormalSource:
    """Thread-safe source of standard normal pairs via the Box-Muller transform."""

    def __init__(self, seed: int | None = None) -> None:
        self._rng = random.Random(seed)
        self._lock = threading.Lock()

    def normals(self) -> tuple[float, float]:
        """Return two independent standard normal values."""
        with self._lock:
            u0i = self._rng.getrandbits(64)
            u1i = self._rng.getrandbits(64) or 1
        u0 = 2.0 * math.pi * u0i / _TWO_POW_64
        u1 = math.sqrt(-2.0 * math.log(u1i / _TWO_POW_64))
        return u1 * math.cos(u0), u1 * math.sin(u0)


@dataclass(frozen=True)
class GenParams:
    """Thresholds ``t`` and row-major mixing matrix ``a`` for ``n`` attributes."""

    n: int
    t: tuple[float, ...]
    a: tuple[float, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "t", tuple(float(x) for x in self.t))
        object.__setattr__(self, "a", tuple(float(x) for x in self.a))
        if len(self.t) != self.n:
            raise ValueError("threshold count does not match n")
        if len(self.a) != self.n * self.n:
            raise ValueError("coefficient count does not match n*n")

    def row(self, i: int) -> tuple[float, ...]:
        return self.a[i * self.n:(i + 1) * self.n]


def generate_attributes(source: NormalSource, gen: GenParams) -> int:
    """Draw one person's attributes as a bit field.

    Attribute ``i`` is set when the ``i``-th linear combination of independent
    normals exceeds its threshold. ``n`` must be a non-zero even number.
    """
    n = gen.n
    if n == 0 or n % 2:
        raise ValueError(f"invalid value for n in generate_attributes: {n}")

    x: list[float] = []
    for _ in range(n // 2):
        x.extend(source.normals())

    result = 0
    for i, threshold in enumerate(gen.t):
        total = sum(xj * aij for xj, aij in zip(x, gen.row(i)))
        if total > threshold:
            result |= 1 << i
    return result


def marginal_probabilities(gen: GenParams) -> list[float]:
    """Closed-form probability that each attribute is set."""
    result = []
    for i, threshold in enumerate(gen.t):
        variance = sum(c * c for c in gen.row(i))
        result.append(0.5 * (1 - math.erf(threshold / math.sqrt(2 * variance))))
    return result


def estimate_correlation(
    source: NormalSource, gen: GenParams, samples: int = ATTR_STAT_COUNT
) -> list[float]:
    """Estimate the row-major attribute correlation matrix by sampling."""
    if samples < 2:
        raise ValueError("at least two samples are needed")
    n = gen.n
    patterns = Counter(generate_attributes(source, gen) for _ in range(samples))

    bits = {mask: [(mask >> j) & 1 for j in range(n)] for mask in patterns}
    mean = [
        sum(count * bits[mask][j] for mask, count in patterns.items()) / samples
        for j in range(n)
    ]

    cov = [[0.0] * n for _ in range(n)]
    for mask, count in patterns.items():
        centred = [b - m for b, m in zip(bits[mask], mean)]
        for j, cj in enumerate(centred):
            for k, ck in enumerate(centred):
                cov[j][k] += count * cj * ck
    cov = [[c / (samples - 1) for c in row] for row in cov]

    corr = []
    for j in range(n):
        for k in range(n):
            denom = math.sqrt(cov[j][j] * cov[k][k])
            corr.append(cov[j][k] / denom if denom else math.nan)
    return corr


@dataclass
class GameParams:
    """A rule set: how people are generated and which goals must be met."""

    gen: GenParams
    goals: tuple[Goal, ...]
    marginals: tuple[float, ...] = ()
    corr: tuple[float, ...] = ()

    def assign_distribution(
        self, source: NormalSource, samples: int = ATTR_STAT_COUNT
    ) -> None:
        """Fill in marginal probabilities and the correlation matrix."""
        self.marginals = tuple(marginal_probabilities(self.gen))
        self.corr = tuple(estimate_correlation(source, self.gen, samples))


def default_game_params() -> list[GameParams]:
    """The built-in rule sets, without their distribution statistics."""
    return [
        GameParams(
            gen=GenParams(n=2, t=(0.5, 0.5), a=(1.0, 1.0, 1.0, 2.0)),
            goals=(
                Goal(make_params(GoalOp.GE, attr(0), value(600))),
                Goal(make_params(GoalOp.GE, attr(1), value(600))),
            ),
        ),
        GameParams(
            gen=GenParams(
                n=4,
                t=(0.75, 0.2, 0.4, 0.7),
                a=(
                    1.0, 0.0, 0.0, 0.0,
                    0.0, 1.0, 2.0, -2.0,
                    0.0, 0.0, 1.0, -1.0,
                    0.0, 0.0, 0.0, 1.0,
                ),
            ),
            goals=(
                Goal(make_params(GoalOp.GE, attr(1), GoalOp.DIV, attr(0), value(2))),
                Goal(make_params(GoalOp.GE, attr(2), GoalOp.DIV, attr(3), value(2))),
            ),
        ),
    ]


def valid_game_type(game_type: int) -> bool:
    """Return True for game types that players may start."""
    return game_type == 0


@dataclass
class Game:
    """State of one game as recorded in the store."""

    name: str
    id: int = 0
    user_id: int = 0
    game_type: int = 0
    params: GameParams | None = None
    goals_satisfied: bool = False
    accepted: int = 0
    attr_n: list[int] = field(default_factory=lambda: [0] * MAX_ATTRS)
    has_next: bool = False
    next: int = 0
    seen: bytearray = field(default_factory=bytearray)

    @property
    def count(self) -> int:
        """Number of people reviewed so far, not counting the pending one."""
        return len(self.seen)

    def is_finished(self) -> bool:
        """True once the venue is full or too many people were turned away."""
        return self.accepted >= ACCEPTED_LIMIT or self.count >= LOSS_LIMIT

    def update(self) -> None:
        """Recompute totals from the reviewed people and check goals if finished."""
        self.accepted = sum(1 for person in self.seen if person & BIT_ATTR_ACCEPT)
        self.attr_n = [
            sum(1 for person in self.seen if person & (1 << a))
            for a in range(MAX_ATTRS)
        ]
        if self.is_finished():
            self.goals_satisfied = self.params is not None and check_goals(
                self.params.goals, self.attr_n
            )


@dataclass
class User:
    """A registered player."""

    name: str
    realname: str = ""
    id: int = 0


def _text(raw: Any) -> str:
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw).decode()
    return str(raw)


def _uuid_name(value_: uuid.UUID | str) -> str:
    return str(uuid.UUID(str(value_)))


def _seen_key(name: str) -> str:
    return f"{name}-m"


class GameService:
    """Creates, loads and advances games held in the store."""

    def __init__(
        self,
        pool: ConnectionPool,
        source: NormalSource | None = None,
        games: Sequence[GameParams] | None = None,
    ) -> None:
        self._pool = pool
        self._source = source if source is not None else NormalSource()
        if games is None:
            games = default_game_params()
            for params in games:
                params.assign_distribution(self._source)
        self._games = list(games)

    def game_params(self, game_type: int) -> GameParams | None:
        """Rule set for a game type, or None if there is no such type."""
        if 0 <= game_type < len(self._games):
            return self._games[game_type]
        return None

    def number_of_games(self) -> int:
        return len(self._games)

    def new_game(self, game_type: int, user: User) -> Game:
        """Register a new game for ``user`` and draw its first person."""
        with self._pool.connection() as conn:
            game_id = int(conn.incr("next_game"))
            params = self.game_params(game_type)
            if params is None:
                raise GameError("invalid game type")
            game = Game(
                name=str(uuid.uuid4()),
                id=game_id,
                user_id=user.id,
                game_type=game_type,
                params=params,
            )
            conn.hset(
                game.name,
                mapping={"id": game.id, "userid": user.id, "type": game_type},
            )
            conn.hset("gameids", game.id, game.name)
            conn.lpush(f"{user.name}-games", game.name)
        self.create_next_person(game)
        return game

    def create_next_person(self, game: Game) -> None:
        """Draw the next person waiting at the door and record them."""
        if game.params is None:
            raise GameError("invalid game type")
        attrs = generate_attributes(self._source, game.params.gen)
        game.next = attrs & 0xFF
        game.has_next = True
        with self._pool.connection() as conn:
            conn.hset(game.name, "next", attrs)

    def process_next_person(self, game: Game, verdict: bool) -> None:
        """Accept or reject the pending person."""
        if game.is_finished():
            raise GameError("game finished")
        if not game.has_next:
            raise GameError("no patron available")

        person = game.next | (BIT_ATTR_ACCEPT if verdict else 0)
        with self._pool.connection() as conn:
            conn.hdel(game.name, "next")
            conn.setrange(_seen_key(game.name), game.count, bytes([person]))
        game.seen.append(person)
        game.has_next = False
        game.update()

    def find_user(self, user_uuid: uuid.UUID | str) -> User | None:
        """Load a user by their uuid, or None if they are not registered."""
        name = _uuid_name(user_uuid)
        with self._pool.connection() as conn:
            raw_id, raw_name = conn.hmget(name, ["id", "name"])
        if raw_id is None or raw_name is None:
            return None
        realname = _text(raw_name)
        if len(realname) > USER_NAME_LEN:
            raise GameError("stored user name is too long")
        return User(name=name, realname=realname, id=int(_text(raw_id)))

    def find_game(self, game_uuid: uuid.UUID | str) -> Game:
        """Load a game and everyone reviewed in it so far."""
        game = Game(name=_uuid_name(game_uuid))
        with self._pool.connection() as conn:
            fields = {_text(k): _text(v) for k, v in conn.hgetall(game.name).items()}
            if not fields:
                raise GameError("unknown game")
            for key, raw in fields.items():
                if key == "id":
                    game.id = int(raw)
                elif key == "userid":
                    game.user_id = int(raw)
                elif key == "type":
                    game.game_type = int(raw)
                    game.params = self.game_params(game.game_type)
                    if game.params is None:
                        raise GameError("invalid game type")
                elif key == "next":
                    game.next = int(raw) & 0xFF
                    game.has_next = True
            seen = conn.get(_seen_key(game.name))
        game.seen = bytearray(seen or b"")
        game.update()
        return game

    def find_game_by_id(self, game_id: int) -> Game:
        """Load a game by its numeric id."""
        with self._pool.connection() as conn:
            raw = conn.hget("gameids", game_id)
        if raw is None:
            raise GameError("invalid game id")
        try:
            game_uuid = uuid.UUID(_text(raw))
        except ValueError as exc:
            raise GameError("invalid uuid") from exc
        return self.find_game(game_uuid)