"""Statistical checks of the random person generator."""

from __future__ import annotations

import argparse
import math
import sys
from collections import Counter
from dataclasses import dataclass

from berghain.game import (
    GameParams,
    NormalSource,
    default_game_params,
    generate_attributes,
    marginal_probabilities,
)

NORMAL_TEST_COUNT = 10_000_000
ATTR_TEST_COUNT = 10_000_000


def _fmt(number: float) -> str:
    return "% 08.6f" % number


@dataclass(frozen=True)
class NormalStats:
    """Sample moments of generated normals; skewness and kurtosis should be near 0."""

    mean: float
    variance: float
    skewness: float
    excess_kurtosis: float

    def format(self) -> str:
        return (
            "check_normals:\n"
            f"  mean: {self.mean:f}\n"
            f"  variance: {self.variance:f}\n"
            f"  skewness: {self.skewness:f}\n"
            f"  excess kurtosis: {self.excess_kurtosis:f}\n"
        )


def check_normals(source: NormalSource, count: int = NORMAL_TEST_COUNT) -> NormalStats:
    """Draw ``count`` normals and measure their first four moments."""
    if count < 2 or count % 2:
        raise ValueError("count must be a positive even number")
    data = [x for _ in range(count // 2) for x in source.normals()]
    mean = math.fsum(data) / count
    deviations = [x - mean for x in data]
    variance = math.fsum(d * d for d in deviations) / count
    third = math.fsum(d ** 3 for d in deviations) / count
    fourth = math.fsum(d ** 4 for d in deviations) / count
    return NormalStats(
        mean=mean,
        variance=variance,
        skewness=third / variance ** 1.5,
        excess_kurtosis=fourth / variance ** 2 - 3,
    )


@dataclass(frozen=True)
class CovarianceReport:
    """Measured attribute statistics for one rule set."""

    means: tuple[float, ...]
    expected_means: tuple[float, ...]
    covariance: tuple[tuple[float, ...], ...]
    correlation: tuple[tuple[float, ...], ...]

    @property
    def n(self) -> int:
        return len(self.means)

    def format(self, game_id: int) -> str:
        lines = [
            f"Measured statistics (game {game_id}):",
            f"  # of attributes: {self.n}",
            "",
            "  means   :" + "".join(" " + _fmt(m) for m in self.means),
            "  E[means]:" + "".join(" " + _fmt(m) for m in self.expected_means),
            "",
            "  variances (bernoulli calc):",
        ]
        lines.extend(
            "    " + " " * 10 * i + _fmt(m * (1 - m)) for i, m in enumerate(self.means)
        )
        lines.append("  covariance matrix:")
        lines.extend("   " + "".join(" " + _fmt(q) for q in row) for row in self.covariance)
        lines.append("")
        lines.append("  correlation matrix:")
        lines.extend(
            "   " + "".join(" " + _fmt(r) for r in row) for row in self.correlation
        )
        return "\n".join(lines) + "\n"


def measure_covariance(
    source: NormalSource, params: GameParams, count: int = ATTR_TEST_COUNT
) -> CovarianceReport:
    """Sample attributes and estimate their means, covariance and correlation."""
    if count < 2:
        raise ValueError("at least two samples are needed")
    gen = params.gen
    n = gen.n
    patterns = Counter(generate_attributes(source, gen) for _ in range(count))
    bits = {mask: [(mask >> j) & 1 for j in range(n)] for mask in patterns}

    means = [
        sum(c * bits[mask][j] for mask, c in patterns.items()) / count
        for j in range(n)
    ]

    cov = [[0.0] * n for _ in range(n)]
    for mask, c in patterns.items():
        centred = [b - m for b, m in zip(bits[mask], means)]
        for j, cj in enumerate(centred):
            for k, ck in enumerate(centred):
                cov[j][k] += c * cj * ck
    covariance = tuple(tuple(q / (count - 1) for q in row) for row in cov)

    def _corr(j: int, k: int) -> float:
        denom = math.sqrt(covariance[j][j] * covariance[k][k])
        return covariance[j][k] / denom if denom else math.nan

    correlation = tuple(tuple(_corr(j, k) for k in range(n)) for j in range(n))
    expected = params.marginals or tuple(marginal_probabilities(gen))
    return CovarianceReport(
        means=tuple(means),
        expected_means=tuple(expected),
        covariance=covariance,
        correlation=correlation,
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="berghain-check", description="Check the person generator's statistics."
    )
    parser.add_argument("--normal-samples", type=int, default=NORMAL_TEST_COUNT)
    parser.add_argument("--attr-samples", type=int, default=ATTR_TEST_COUNT)
    parser.add_argument("--seed", type=int, default=None)
    args = parser.parse_args(argv)

    source = NormalSource(args.seed)
    games = default_game_params()
    for params in games:
        params.marginals = tuple(marginal_probabilities(params.gen))

    sys.stdout.write(check_normals(source, args.normal_samples).format())
    for game_id, params in enumerate(games):
        sys.stdout.write("\n----\n\n")
        report = measure_covariance(source, params, args.attr_samples)
        sys.stdout.write(report.format(game_id))
    return 0