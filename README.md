# berghain

A small simulation game about running the door of a venue. Patrons arrive one
at a time. Each one has a set of binary attributes drawn from correlated
distributions, and you accept or reject each one. The venue holds 1000 people.
The game ends when the venue is full or when 21000 patrons have been reviewed.
You win if the accepted crowd meets every goal of the game type, for example
"at least 600 people with attribute 0".

The package contains:

- `berghain.server`: an HTTP game server. It keeps its state in a
  Redis-compatible store (such as Valkey or Redis) that it reaches over a Unix
  socket.
- `berghain.game`: the rule sets, the attribute generator and game state
  (`GameService`, `Game`, `GameParams`, `NormalSource`).
- `berghain.goal`: the goal expressions (`Goal`, `GoalOp`, `evaluate`,
  `check_goals`).
- `berghain.store`: a fixed-size pool of store connections (`ConnectionPool`).
- `berghain.check`: statistical checks of the attribute generator.
- `berghain.greed`: a greedy client that plays a game against the server.
- `berghain.analyze`: an analyzer for accept/reject sequences.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Running the server

```
berghain-server [--port 8124] [--socket /tmp/berghain.sock] [--pool-size 16]
```

The server opens `--pool-size` connections to the store at `--socket` and
exits with status 1 if it cannot reach the store. It then serves plain HTTP on
`--port`. Before it starts serving, it estimates the attribute correlations of
every rule set from ten million samples each, so startup takes a while. Type
`q` and press Enter to stop it. End of input also stops it.

### Endpoints

All endpoints take `GET` requests and return JSON. Any other method or path is
refused and the connection is closed.

| Path              | Query arguments                          | Result |
|-------------------|------------------------------------------|--------|
| `/new-user`       | `name` (at least 3 characters, cut to 32) | `{"uuid": ...}`, with `userid` and `userdisplay` cookies set for a year |
| `/new-game`       | `user` (uuid), `type`                    | `{"id": ...}` |
| `/process-person` | `game` (uuid), `person`, optionally `verdict` | `{"status": ..., "count": ..., "next": ...}` |
| `/details`        | `game` (uuid or numeric id)              | `count`, `accepted`, `next`, `attrs` (totals for 7 attributes), `type`, and `finished`/`won` once the game is over |
| `/symbols`        | `game` (uuid or numeric id)              | `count`, and `symbols`: every patron reviewed so far, as integers |
| `/params`         | optionally `type`                        | `{"rulesets": n}`, or the marginals `p`, correlations `Q` and encoded `goals` of one rule set |

`/new-user` is refused with a `userid` error if the request already carries a
`userid` cookie. Display names must be unique.

Two rule sets exist, and `/params` reports both. Only type 0 can be started
with `/new-game`.

Call `/process-person` without `verdict` to see the pending patron. Then call
it with a `verdict` for each decision: any value other than `false` accepts
the patron. `person` must equal the number of patrons already reviewed. The
`next` value is a bit field of the pending patron's attributes. `status` is
`running`, `completed` (won) or `failed`. In `/symbols`, accepted patrons
carry bit 7.

Errors come back as `{"error": "..."}` with HTTP status 200, for example
`{"error":"bad or missing arg game"}` or `{"error":"wrong person"}`.

## Checking the generator

```
berghain-check [--normal-samples N] [--attr-samples N] [--seed S]
```

This prints the mean, variance, skewness and excess kurtosis of the normal
sampler. For a correct sampler, skewness and excess kurtosis are near zero.
For each rule set it then prints the measured means next to the closed-form
expected means, the Bernoulli variances, the covariance matrix and the
correlation matrix. Both sample counts default to ten million.

The same checks are available from Python as `check_normals` and
`measure_covariance` in `berghain.check`.

## Playing with the greedy client

```
berghain-greed --url http://localhost:8124 --user <your user uuid>
```

`--url` defaults to `https://localhost/game` and `--user` to a placeholder
uuid. Register first with `/new-user` and pass the uuid you receive.
Certificate verification is turned off for HTTPS.

The client plays a type 0 game with the targets "600 of attribute 0" and
"600 of attribute 1". It uses fixed marginal probabilities and correlations
for that game type. For each patron it sorts the remaining targets by the
expected number of people still needed and rejects anyone whose admission
would make a target unreachable. It accepts anyone who has the attribute of
the hardest target. It also accepts a patron without that attribute if, after
crediting the other targets with their expected progress, there is still room
for them. It plays until the game ends, then prints the remaining targets to
standard error and exits with status 1.

The policy is available from Python as `decide_for`, `Goals`, `Target`,
`Model` and `Person` in `berghain.greed`.

## Analyzing a sequence

`berghain-analyze` reads a sequence of at most 8191 bytes from standard
input. The sequence has one letter per patron: upper case for accepted, lower
case for rejected. It reports the counts of the letters `A` to `D` in both
cases. Working backwards, it swaps the last accepted patron with the earliest
earlier rejected patron of the same letter, then drops the trailing
rejections. It repeats this until no swap is possible, and prints both
sequences and how much shorter the result is:

```
berghain-analyze < sequence.txt
```

From Python:

```python
from berghain.analyze import analyze

with open("sequence.txt") as f:
    result = analyze(f.read())
print(result.report())
```

## What is not included

- The server does not serve HTTPS. It does not serve under a `/game` path
  prefix either, so the client's default URL only works behind a proxy that
  provides both.
- There is no command to clear or reset the store. Users, games and counters
  persist until they are removed from the store by other means.
- The server does not store the store's connection settings anywhere but the
  command line.