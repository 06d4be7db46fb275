"""A greedy door policy that plays the game against a running server."""

from __future__ import annotations

import argparse
import json
import logging
import math
import ssl
import sys
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

log = logging.getLogger(__name__)

MAX_ATTR = 10

# Marginal probabilities and correlations for game type 0, indexed by the
# positions given in the attribute map.
DEFAULT_PROBABILITIES = (0.361586, 0.411255)
DEFAULT_CORRELATION = (
    (1.0, 0.781504),
    (0.781504, 1.0),
)
DEFAULT_ATTRS = {0: 0, 1: 1}

DEFAULT_BASE_URL = "https://localhost/game"
DEFAULT_USER = "00000000-0000-4000-8000-000000000000"

VENUE_CAPACITY = 1000
DEFAULT_TARGETS = ((0, 600), (1, 600))


class GameOver(Exception):
    """Raised when the server reports that the game cannot continue."""

    def __init__(self, message: str, status: str | None = None) -> None:
        super().__init__(message)
        self.status = status


@dataclass(frozen=True)
class Person:
    """Someone waiting at the door, described by the attributes they carry."""

    attrs: tuple[int, ...] = ()

    @classmethod
    def from_mask(cls, mask: int) -> Person:
        """Decode the attribute bit field sent by the server."""
        return cls(tuple(i for i in range(MAX_ATTR) if (mask >> i) & 1))

    def has(self, attr: int) -> bool:
        return attr in self.attrs


@dataclass
class Target:
    """How many more people with ``attr`` must still be let in."""

    attr: int
    num: int
    length: int = 0


class Model:
    """Attribute probabilities and pairwise correlations."""

    def __init__(
        self,
        probabilities: Sequence[float] | None = None,
        correlation: Sequence[Sequence[float]] | None = None,
        attrs: Mapping[int, int] | None = None,
    ) -> None:
        self._p = tuple(
            float(x)
            for x in (DEFAULT_PROBABILITIES if probabilities is None else probabilities)
        )
        rows = DEFAULT_CORRELATION if correlation is None else correlation
        self._r = tuple(tuple(float(x) for x in row) for row in rows)
        self._attrs = dict(DEFAULT_ATTRS if attrs is None else attrs)
        if len(self._r) != len(self._p) or any(len(row) != len(self._p) for row in self._r):
            raise ValueError("correlation matrix does not match probabilities")
        for attr, index in self._attrs.items():
            if not 0 <= index < len(self._p):
                raise ValueError(f"attr {attr} maps outside the probability table")

    def _index(self, attr: int) -> int:
        try:
            return self._attrs[attr]
        except KeyError:
            raise ValueError(f"invalid attr {attr}") from None

    def p(self, attr: int) -> float:
        """Probability that a person carries ``attr``."""
        return self._p[self._index(attr)]

    def correlation(self, a: int, b: int) -> float:
        return self._r[self._index(a)][self._index(b)]

    def p_given(self, a: int, given: int) -> float:
        """p(a | given), interpolated linearly from the correlation."""
        pa = self.p(a)
        r = self.correlation(a, given)
        if r < 0:
            return pa * (1 + r)
        return pa + r * (1 - pa)

    def min_length(self, target: Target) -> int:
        """Expected number of people needed to meet ``target``."""
        return math.ceil(target.num / self.p(target.attr))


@dataclass
class Goals:
    """Outstanding targets and the room left in the venue."""

    targets: list[Target] = field(default_factory=list)
    space: int = VENUE_CAPACITY

    def sort_by_length(self, model: Model) -> None:
        """Order targets from hardest to easiest."""
        for target in self.targets:
            target.length = model.min_length(target)
        self.targets.sort(key=lambda t: t.length, reverse=True)

    def adjust_rest(self, model: Model) -> Goals:
        """Goals left after the first target is met, crediting the others.

        Each remaining target is reduced by the number of its people expected
        to arrive alongside those meeting the first target.
        """
        if not self.targets:
            raise ValueError("no targets to adjust")
        first, *rest = self.targets
        adjusted = [
            Target(
                t.attr,
                t.num - math.ceil(first.num * model.p_given(t.attr, first.attr)),
                t.length,
            )
            for t in rest
        ]
        return Goals(adjusted, self.space - first.num)

    def reject_for_required(self, person: Person) -> bool:
        """True if accepting ``person`` would make some target unreachable."""
        if self.space <= 0:
            return False
        return any(
            t.num >= self.space and not person.has(t.attr) for t in self.targets
        )

    def update(self, person: Person) -> None:
        """Account for ``person`` having been let in."""
        self.space -= 1
        for target in self.targets:
            if person.has(target.attr):
                target.num -= 1
        while self.targets and self.targets[-1].num <= 0:
            self.targets.pop()


def decide_for(person: Person, goals: Goals, model: Model) -> bool:
    """Return True to let ``person`` in."""
    if not goals.targets:
        return goals.space > 0

    if goals.reject_for_required(person):
        return False

    goals.sort_by_length(model)
    hardest = goals.targets[0]

    if hardest.num <= 0:
        return goals.space > 0

    if person.has(hardest.attr):
        return True

    return decide_for(person, goals.adjust_rest(model), model)


def _load(body: str) -> dict:
    data = json.loads(body)
    if not isinstance(data, dict):
        raise ValueError("reply is not a JSON object")
    if "error" in data:
        raise GameOver(f"error reply: {data['error']}")
    return data


def parse_person(body: str, expected_count: int) -> Person:
    """Read the next person from a process-person reply."""
    data = _load(body)
    status = data.get("status")
    if status is None:
        raise ValueError("reply has no status")
    if status in ("failed", "completed"):
        raise GameOver(f"game {status}", status)

    count = int(data["count"])
    if count != expected_count:
        raise ValueError(f"expected count {expected_count}, got {count}")
    return Person.from_mask(int(data["next"]))


def parse_game_id(body: str) -> str:
    """Read the game uuid from a new-game reply."""
    data = _load(body)
    if "id" not in data:
        raise ValueError("reply has no game id")
    return str(data["id"])


class Client:
    """Talks to the game server for one player."""

    def __init__(self, base_url: str = DEFAULT_BASE_URL, user: str = DEFAULT_USER) -> None:
        self.base_url = base_url.rstrip("/")
        self.user = user
        self.game_id: str | None = None
        self.person_id = 0
        self._first = True
        self._context = ssl.create_default_context()
        self._context.check_hostname = False
        self._context.verify_mode = ssl.CERT_NONE

    def _get(self, path: str, params: Mapping[str, object]) -> str:
        url = f"{self.base_url}/{path}?{urllib.parse.urlencode(params)}"
        log.debug("making request for %s", url)
        try:
            with urllib.request.urlopen(url, context=self._context, timeout=30) as reply:
                body = reply.read()
        except urllib.error.URLError as exc:
            raise GameOver(f"request failed: {exc}") from exc
        return body.decode() if isinstance(body, bytes) else str(body)

    def new_game(self) -> str:
        """Start a game of type 0 and remember its id."""
        body = self._get("new-game", {"user": self.user, "type": 0})
        self.game_id = parse_game_id(body)
        self.person_id = 0
        self._first = True
        return self.game_id

    def next_person(self, verdict: bool = False) -> Person:
        """Send the verdict on the current person and get the next one.

        The verdict is ignored on the first call, which only fetches the
        first person.
        """
        if self.game_id is None:
            raise GameOver("no game started")
        if self._first:
            params: dict[str, object] = {"game": self.game_id, "person": self.person_id}
        else:
            params = {
                "game": self.game_id,
                "person": self.person_id,
                "verdict": "true" if verdict else "false",
            }
            self.person_id += 1
        body = self._get("process-person", params)
        self._first = False
        return parse_person(body, self.person_id)


def _dump(goals: Goals, client: Client) -> None:
    print("exit. goal state:", file=sys.stderr)
    for i, target in enumerate(goals.targets):
        print(f"goal {i}: attr {target.attr}, remain {target.num}", file=sys.stderr)
    print(f"total space: {goals.space}", file=sys.stderr)
    print(f"game uuid: {client.game_id or ''}", file=sys.stderr)
    print(f"current personid: {client.person_id}", file=sys.stderr)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="berghain-greed", description="Play the door game with a greedy policy."
    )
    parser.add_argument("--url", default=DEFAULT_BASE_URL)
    parser.add_argument("--user", default=DEFAULT_USER)
    args = parser.parse_args(argv)

    model = Model()
    goals = Goals([Target(attr, num) for attr, num in DEFAULT_TARGETS], VENUE_CAPACITY)
    goals.sort_by_length(model)
    client = Client(args.url, args.user)

    try:
        client.new_game()
        choice = False
        while True:
            person = client.next_person(choice)
            choice = decide_for(person, goals, model)
            if choice:
                goals.update(person)
    except (GameOver, ValueError, KeyError) as exc:
        print(exc, file=sys.stderr)
        _dump(goals, client)
        return 1