"""Goal expressions: packed prefix-notation programs over attribute counts."""

from __future__ import annotations

import enum
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass

TAIL_BIT = 1 << 14
OPER_BIT = 1 << 13
ATTR_BIT = 1 << 12
VALUE_MASK = (1 << 12) - 1
TAIL = TAIL_BIT


class GoalOp(enum.IntEnum):
    """Operators that may appear in a goal expression."""

    PLUS = OPER_BIT | 0
    MINUS = OPER_BIT | 1
    DIV = OPER_BIT | 2
    MULT = OPER_BIT | 3
    LT = OPER_BIT | 4
    GE = OPER_BIT | 5


def attr(index: int) -> int:
    """Encode a reference to the count of attribute ``index``."""
    return ATTR_BIT | (index & VALUE_MASK)


def value(number: int) -> int:
    """Encode a 12-bit signed literal."""
    return number & VALUE_MASK


def make_params(*args: int) -> tuple[int, ...]:
    """Build a parameter list terminated by the tail marker."""
    return (*(int(a) for a in args), TAIL)


@dataclass(frozen=True)
class Goal:
    """A goal as a packed, tail-terminated prefix expression."""

    params: tuple[int, ...]

    def __post_init__(self) -> None:
        params = tuple(int(p) for p in self.params)
        if not any(p & TAIL_BIT for p in params):
            raise ValueError("goal parameters lack a tail marker")
        object.__setattr__(self, "params", params)

    def terms(self) -> list[int]:
        """Return the parameters that precede the tail marker."""
        return list(self._iter_terms())

    def _iter_terms(self) -> Iterator[int]:
        for param in self.params:
            if param & TAIL_BIT:
                return
            yield param


def _wrap32(number: int) -> int:
    return ((number + (1 << 31)) % (1 << 32)) - (1 << 31)


def _sign_extend(number: int, bits: int) -> int:
    sign = 1 << (bits - 1)
    number &= (1 << bits) - 1
    return (number ^ sign) - sign


def _decode(param: int, attr_counts: Sequence[int]) -> int:
    if param & ATTR_BIT:
        return int(attr_counts[param & VALUE_MASK])
    return _sign_extend(param & VALUE_MASK, 12)


def _truncating_div(a: int, b: int) -> int:
    quotient = abs(a) // abs(b)
    return quotient if (a >= 0) == (b >= 0) else -quotient


def _apply(op: int, a: int, b: int) -> int:
    try:
        oper = GoalOp(op)
    except ValueError:
        return 0
    if oper is GoalOp.PLUS:
        result = a + b
    elif oper is GoalOp.MINUS:
        result = a - b
    elif oper is GoalOp.DIV:
        result = _truncating_div(a, b)
    elif oper is GoalOp.MULT:
        result = a * b
    elif oper is GoalOp.LT:
        result = int(a < b)
    else:
        result = int(a >= b)
    return _wrap32(result)


def _reducible(stack: list[int]) -> bool:
    return (
        len(stack) > 2
        and bool(stack[-3] & OPER_BIT)
        and not stack[-2] & OPER_BIT
        and not stack[-1] & OPER_BIT
    )


def evaluate(goal: Goal, attr_counts: Sequence[int] = ()) -> int:
    """Evaluate a goal expression against per-attribute counts."""
    stack: list[int] = []
    terms = goal._iter_terms()
    has_input = True

    while has_input or len(stack) > 2:
        reduced = False
        while _reducible(stack):
            b = _decode(stack.pop(), attr_counts)
            a = _decode(stack.pop(), attr_counts)
            op = stack.pop()
            stack.append(_apply(op, a, b))
            reduced = True

        term = next(terms, None)
        if term is None:
            if not has_input and not reduced and len(stack) > 2:
                raise ValueError("malformed goal expression")
            has_input = False
        else:
            stack.append(term)

    return stack[0] if stack else 0


def check_goals(goals: Iterable[Goal], attr_counts: Sequence[int]) -> bool:
    """Return True when every goal evaluates to a non-zero result."""
    return all(evaluate(goal, attr_counts) != 0 for goal in goals)