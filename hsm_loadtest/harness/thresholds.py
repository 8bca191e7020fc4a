"""
Threshold expressions over aggregated metrics.

A threshold is written the way k6 writes them, ``<selector> <op> <bound>``::

    p(95)<500      95th percentile (nearest rank) below 500
    rate<=0.01     at most 1% of observations true
    avg<200        arithmetic mean below 200

Selectors ``rate``, ``p(N)``, ``avg``, ``min``, ``max``, ``med`` and
``count`` are understood; operators are ``<``, ``<=``, ``>`` and ``>=``.

A threshold whose metric has no samples is not compared at all.  It passes
vacuously unless the threshold is marked ``required``, in which case the missing
data is itself a failure.
"""

from __future__ import annotations

import operator
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from .config import ConfigurationError, ThresholdSpec
from .metrics import COUNTER, RATE, TREND, MetricsRegistry, MetricsSnapshot

NO_SAMPLES = "no samples"

OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}

SELECTOR_KINDS = {
    "rate": {RATE},
    "count": {COUNTER, RATE},
    "p": {TREND},
    "avg": {TREND},
    "min": {TREND},
    "max": {TREND},
    "med": {TREND},
}

_EXPRESSION = re.compile(
    r"""^\s*
    (?P<selector>rate|count|avg|min|max|med|p\(\s*(?P<percentile>\d+(?:\.\d+)?)\s*\))
    \s*(?P<op><=|>=|<|>)\s*
    (?P<bound>[-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?)
    \s*$""",
    re.VERBOSE,
)


@dataclass(frozen=True)
class ThresholdExpression:
    selector: str
    op: str
    bound: float
    percentile: float | None = None

    @property
    def label(self) -> str:
        if self.selector == "p":
            return f"p({self.percentile:g})"
        return self.selector

    def compare(self, observed: float) -> bool:
        return OPERATORS[self.op](observed, self.bound)

    def __str__(self) -> str:
        return f"{self.label}{self.op}{self.bound:g}"


@dataclass(frozen=True)
class ThresholdResult:
    spec: ThresholdSpec
    passed: bool
    observed: float | None
    note: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": self.spec.metric,
            "expression": self.spec.expression,
            "required": self.spec.required,
            "passed": self.passed,
            "observed": self.observed,
            "note": self.note,
        }


@dataclass(frozen=True)
class ThresholdReport:
    results: tuple[ThresholdResult, ...]

    @property
    def passed(self) -> bool:
        return all(result.passed for result in self.results)

    @property
    def failures(self) -> list[ThresholdResult]:
        return [result for result in self.results if not result.passed]


def parse_threshold(expression: str) -> ThresholdExpression:
    match = _EXPRESSION.match(expression)
    if match is None:
        raise ConfigurationError(f"malformed threshold expression {expression!r}")
    percentile = match.group("percentile")
    if percentile is not None:
        value = float(percentile)
        if value > 100.0:
            raise ConfigurationError(
                f"percentile in {expression!r} must be within [0, 100]"
            )
        return ThresholdExpression("p", match.group("op"), float(match.group("bound")), value)
    return ThresholdExpression(
        match.group("selector"), match.group("op"), float(match.group("bound"))
    )


def validate_thresholds(specs: Iterable[ThresholdSpec], registry: MetricsRegistry) -> None:
    """Fail before the run if a threshold names an unknown metric or a wrong selector."""
    for spec in specs:
        expression = parse_threshold(spec.expression)
        metric = registry.get(spec.metric)
        if metric is None:
            known = ", ".join(registry.names())
            raise ConfigurationError(
                f"threshold {spec.expression!r} references unknown metric {spec.metric!r}"
                f" (known: {known})"
            )
        if metric.kind not in SELECTOR_KINDS[expression.selector]:
            raise ConfigurationError(
                f"selector {expression.label!r} cannot be applied to {metric.kind} metric"
                f" {spec.metric!r}"
            )


def evaluate_threshold(snapshot: MetricsSnapshot, spec: ThresholdSpec) -> ThresholdResult:
    expression = parse_threshold(spec.expression)
    metric = snapshot.get(spec.metric)
    if metric is None or not metric.has_samples:
        return ThresholdResult(spec, passed=not spec.required, observed=None, note=NO_SAMPLES)
    try:
        observed = metric.stat(expression.selector, expression.percentile)
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from exc
    return ThresholdResult(spec, passed=expression.compare(observed), observed=observed)


def evaluate_thresholds(
    snapshot: MetricsSnapshot, specs: Iterable[ThresholdSpec]
) -> ThresholdReport:
    return ThresholdReport(tuple(evaluate_threshold(snapshot, spec) for spec in specs))


__all__ = [
    "NO_SAMPLES",
    "ThresholdExpression",
    "ThresholdReport",
    "ThresholdResult",
    "evaluate_threshold",
    "evaluate_thresholds",
    "parse_threshold",
    "validate_thresholds",
]
