"""Find how a recorded door sequence could have finished sooner."""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass

MAX_SEQUENCE = 8192
ACCEPTED = 1000
LETTERS = "AaBbCcDd"


def _is_lower(char: str) -> bool:
    return "a" <= char <= "z"


def _is_upper(char: str) -> bool:
    return "A" <= char <= "Z"


def letter_counts(sequence: str) -> dict[str, int]:
    """Occurrences of each of the tracked letters, in report order."""
    return {letter: sequence.count(letter) for letter in LETTERS}


def improve(sequence: str) -> str:
    """Shorten a sequence by swapping late acceptances with earlier rejections.

    Working backwards, the last accepted person (upper case) is swapped with
    the earliest rejected person of the same kind (the lower case letter);
    trailing rejections are then dropped. This repeats until the last accepted
    person has no earlier rejection to swap with.
    """
    if not sequence:
        return ""
    seq = list(sequence)
    i = len(seq) - 1
    while True:
        while i > 0 and _is_lower(seq[i]):
            i -= 1
        if not (i > 0 and _is_upper(seq[i])):
            break
        wanted = seq[i].lower()
        j = next((k for k, c in enumerate(seq[:i]) if c == wanted), None)
        if j is None:
            break
        seq[i], seq[j] = seq[j], seq[i]
    return "".join(seq[: i + 1])


@dataclass(frozen=True)
class Analysis:
    """A sequence and its improved form."""

    original: str
    improved: str

    @property
    def improvement(self) -> int:
        return len(self.original) - len(self.improved)

    def report(self) -> str:
        lines = [
            "Read string:",
            f"  length: {len(self.original)}",
            f"  rejected: {len(self.original) - ACCEPTED}",
            *_stats(self.original),
            "Improved string:",
            f"  length: {len(self.improved)}",
            f"  rejected: {len(self.improved) - ACCEPTED}",
            f"  improvement: {self.improvement}",
            *_stats(self.improved),
            f"In: {self.original}",
            f"Out: {self.improved}",
        ]
        return "\n".join(lines) + "\n"


def _stats(sequence: str) -> list[str]:
    return ["Stats:", *(f" {k}: {v}" for k, v in letter_counts(sequence).items())]


def analyze(sequence: str) -> Analysis:
    return Analysis(sequence, improve(sequence))


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="berghain-analyze",
        description="Read a door sequence from standard input and shorten it.",
    )
    parser.parse_args(argv)

    data = sys.stdin.buffer.read(MAX_SEQUENCE)
    if len(data) >= MAX_SEQUENCE:
        print("input was much longer than expected, increase the sequence limit")
        return 1
    sys.stdout.write(analyze(data.decode("latin-1")).report())
    return 0