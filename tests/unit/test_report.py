"""
Unit tests for the summary reporter and chart rendering.
"""

import json
import random
import warnings

import pandas as pd
import pytest

from hsm_loadtest.harness.charts import render_result_charts
from hsm_loadtest.harness.config import ThresholdSpec
from hsm_loadtest.harness.cycle import RequestCycle
from hsm_loadtest.harness.load import TimelinePoint
from hsm_loadtest.harness.report import format_summary, write_samples_csv, write_summary_json
from hsm_loadtest.harness.runner import TestResult
from hsm_loadtest.harness.thresholds import evaluate_thresholds


pytestmark = pytest.mark.unit


@pytest.fixture
def result(fake_client, registry, cycle_settings):
    cycle = RequestCycle(fake_client, registry, cycle_settings, rng=random.Random(5))
    for _ in range(4):
        cycle.run()
    snapshot = registry.snapshot()
    specs = (
        ThresholdSpec("errors", "rate<0.01", required=True),
        ThresholdSpec("encrypt_duration", "p(95)<1"),
        ThresholdSpec("health_checks", "rate>0.9"),
    )
    report = evaluate_thresholds(snapshot, specs)
    return TestResult(
        profile_name="quick",
        started_at=1_000.0,
        finished_at=1_010.0,
        metrics=snapshot,
        thresholds=report.results,
        timeline=(
            TimelinePoint(0.0, 0, 0),
            TimelinePoint(1.0, 2, 2),
            TimelinePoint(2.0, 4, 4),
            TimelinePoint(3.0, 0, 0),
        ),
    )


def test_result_verdict_is_and_of_thresholds(result):
    assert [threshold.passed for threshold in result.thresholds] == [True, False, True]
    assert result.passed is False
    assert result.duration_s == 10.0


def test_text_summary_lists_metrics_and_thresholds(result):
    text = format_summary(result)

    assert "Load Test Summary (quick, 10.0s)" in text
    assert "Total Requests: 8" in text
    assert "Request Rate: 0.80 req/s" in text
    assert "Failed Requests: 0.00%" in text
    assert "Encrypt P95: 4.00ms" in text
    assert "Decrypt P95: 6.00ms" in text
    assert "Total Operations: 8" in text
    assert "Error Rate: 0.00%" in text
    assert "p(95)<1" in text
    assert "FAIL" in text
    assert "no samples" in text
    assert text.rstrip().endswith("=" * 60)
    assert "Overall: FAIL" in text


def test_summary_json_is_fully_populated(result, tmp_path):
    path = write_summary_json(result, tmp_path / "out" / "summary.json")

    data = json.loads(path.read_text(encoding="utf-8"))

    assert data["profile"] == "quick"
    assert data["passed"] is False
    assert data["metrics"]["errors"]["values"]["total"] == 4
    assert data["metrics"]["encrypt_duration"]["values"]["p(95)"] == 4.0
    assert data["metrics"]["total_operations"]["values"]["count"] == 8
    assert [t["passed"] for t in data["thresholds"]] == [True, False, True]
    assert data["thresholds"][2]["observed"] is None
    assert data["timeline"][2] == {"elapsed_s": 2.0, "target": 4, "live": 4}


def test_samples_csv_contains_every_trend_sample(result, tmp_path):
    path = write_samples_csv(result, tmp_path / "samples.csv")

    df = pd.read_csv(path)

    assert set(df["metric"]) == {"encrypt_duration", "decrypt_duration", "http_req_duration"}
    assert len(df) == 4 + 4 + 8


def test_charts_are_rendered(result, tmp_path):
    paths = render_result_charts(result, tmp_path / "charts")

    assert [path.name for path in paths] == ["concurrency_timeline.png", "latency_distribution.png"]
    assert all(path.stat().st_size > 0 for path in paths)


def test_charts_skip_missing_data(registry, tmp_path):
    empty = TestResult(
        profile_name="empty",
        started_at=0.0,
        finished_at=0.0,
        metrics=registry.snapshot(),
        thresholds=(),
    )

    assert render_result_charts(empty, tmp_path) == []


def test_latency_chart_colours_boxes_without_palette_warning(result, tmp_path):
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        render_result_charts(result, tmp_path)

    assert not [warning for warning in caught if "palette" in str(warning.message)]
