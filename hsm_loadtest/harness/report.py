from __future__ import annotations

import json
import logging
from pathlib import Path

from .cycle import (
    DECRYPT_DURATION,
    ENCRYPT_DURATION,
    ENCRYPT_FAILURES,
    ERRORS,
    HTTP_REQ_DURATION,
    HTTP_REQ_FAILED,
    HTTP_REQS,
    ROUND_TRIP_FAILURES,
    TOTAL_OPERATIONS,
)
from .metrics import CounterSnapshot, RateSnapshot, TrendSnapshot
from .runner import TestResult

LOGGER = logging.getLogger("hsm_loadtest.harness.report")

WIDTH = 60


def _count(result: TestResult, name: str) -> float:
    metric = result.metrics.get(name)
    if isinstance(metric, CounterSnapshot):
        return metric.count
    return 0.0


def _rate_percent(result: TestResult, name: str) -> float:
    metric = result.metrics.get(name)
    if isinstance(metric, RateSnapshot):
        return metric.rate * 100.0
    return 0.0


def _trend(result: TestResult, name: str, selector: str, arg: float | None = None) -> float:
    metric = result.metrics.get(name)
    if isinstance(metric, TrendSnapshot) and metric.has_samples:
        return metric.stat(selector, arg)
    return 0.0


def format_summary(result: TestResult, indent: str = " ") -> str:
    """Render the end-of-run summary printed to stdout."""
    requests_total = _count(result, HTTP_REQS)
    request_rate = requests_total / result.duration_s if result.duration_s else 0.0

    lines = [
        "",
        indent + "=" * WIDTH,
        indent + f"Load Test Summary ({result.profile_name}, {result.duration_s:.1f}s)",
        indent + "=" * WIDTH,
        "",
        indent + "HTTP Metrics:",
        indent + f"  Total Requests: {requests_total:.0f}",
        indent + f"  Request Rate: {request_rate:.2f} req/s",
        indent + f"  Failed Requests: {_rate_percent(result, HTTP_REQ_FAILED):.2f}%",
        indent + f"  Avg Duration: {_trend(result, HTTP_REQ_DURATION, 'avg'):.2f}ms",
        indent + f"  P95 Duration: {_trend(result, HTTP_REQ_DURATION, 'p', 95):.2f}ms",
        indent + f"  P99 Duration: {_trend(result, HTTP_REQ_DURATION, 'p', 99):.2f}ms",
        "",
        indent + "Custom Metrics:",
        indent + f"  Encrypt P95: {_trend(result, ENCRYPT_DURATION, 'p', 95):.2f}ms",
        indent + f"  Decrypt P95: {_trend(result, DECRYPT_DURATION, 'p', 95):.2f}ms",
        indent + f"  Total Operations: {_count(result, TOTAL_OPERATIONS):.0f}",
        indent + f"  Encrypt Failures: {_count(result, ENCRYPT_FAILURES):.0f}",
        indent + f"  Round-trip Failures: {_count(result, ROUND_TRIP_FAILURES):.0f}",
        indent + f"  Error Rate: {_rate_percent(result, ERRORS):.2f}%",
        "",
    ]

    if result.thresholds:
        lines.append(indent + "Thresholds:")
        lines.append(indent + f"  {'Metric':<20}{'Expression':<14}{'Observed':>12}{'Status':>10}")
        for threshold in result.thresholds:
            observed = "n/a" if threshold.observed is None else f"{threshold.observed:.4g}"
            status = "PASS" if threshold.passed else "FAIL"
            lines.append(
                indent
                + f"  {threshold.spec.metric:<20}{threshold.spec.expression:<14}"
                + f"{observed:>12}{status:>10}"
                + (f"  ({threshold.note})" if threshold.note else "")
            )
        lines.append("")

    lines.append(indent + f"Overall: {'PASS' if result.passed else 'FAIL'}")
    lines.append(indent + "=" * WIDTH)
    return "\n".join(lines) + "\n"


def write_summary_json(result: TestResult, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(result.to_dict(), f, indent=2)
    LOGGER.info("Summary written to %s", path)
    return path


def write_samples_csv(result: TestResult, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    df = result.metrics.trend_frame()
    df.to_csv(path, index=False)
    LOGGER.info("Saved %d latency samples to %s", len(df), path)
    return path


__all__ = ["format_summary", "write_samples_csv", "write_summary_json"]
