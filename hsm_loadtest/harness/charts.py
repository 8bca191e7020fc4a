from __future__ import annotations

import logging
from pathlib import Path

import matplotlib.pyplot as plt
import pandas as pd
import seaborn as sns

from .runner import TestResult

LOGGER = logging.getLogger("hsm_loadtest.harness.charts")

sns.set_style("whitegrid")
plt.rcParams["figure.dpi"] = 100
plt.rcParams["savefig.dpi"] = 300
plt.rcParams["font.size"] = 10
plt.rcParams["axes.labelsize"] = 11
plt.rcParams["axes.titlesize"] = 13
plt.rcParams["legend.fontsize"] = 9

METRIC_COLORS = {
    "encrypt_duration": "#2E86AB",
    "decrypt_duration": "#A23B72",
    "http_req_duration": "#F18F01",
}

METRIC_NAMES = {
    "encrypt_duration": "Encrypt",
    "decrypt_duration": "Decrypt",
    "http_req_duration": "All requests",
}


def render_result_charts(result: TestResult, output_dir: Path) -> list[Path]:
    """Render the concurrency timeline and latency distribution charts."""
    output_dir.mkdir(parents=True, exist_ok=True)
    paths = []

    timeline_path = _render_timeline_chart(result, output_dir / "concurrency_timeline.png")
    if timeline_path is not None:
        paths.append(timeline_path)

    latency_path = _render_latency_chart(result, output_dir / "latency_distribution.png")
    if latency_path is not None:
        paths.append(latency_path)

    return paths


def _render_timeline_chart(result: TestResult, chart_path: Path) -> Path | None:
    if not result.timeline:
        LOGGER.warning("No scheduler timeline available for concurrency chart")
        return None

    df = pd.DataFrame(
        [
            {"elapsed_s": point.elapsed_s, "target": point.target, "live": point.live}
            for point in result.timeline
        ]
    )

    fig, ax = plt.subplots(figsize=(10, 6))
    ax.plot(
        df["elapsed_s"],
        df["target"],
        linestyle="--",
        linewidth=2,
        color="#808080",
        label="Target",
    )
    ax.step(
        df["elapsed_s"],
        df["live"],
        where="post",
        linewidth=2.5,
        color="#2E86AB",
        label="Live users",
    )
    ax.set_xlabel("Elapsed (seconds)", fontweight="semibold")
    ax.set_ylabel("Virtual users", fontweight="semibold")
    ax.set_title(f"Concurrency Ramp ({result.profile_name})", fontweight="bold", pad=15)
    ax.set_ylim(bottom=0)
    ax.legend(loc="upper right", frameon=True)
    ax.grid(True, alpha=0.3, linestyle="--")

    plt.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    LOGGER.info("Rendering chart %s", chart_path)
    return chart_path


def _render_latency_chart(result: TestResult, chart_path: Path) -> Path | None:
    df = result.metrics.trend_frame()
    df = df[df["metric"].isin(METRIC_NAMES.keys())].copy()
    if df.empty:
        LOGGER.warning("No latency samples available for latency chart")
        return None

    df["metric_display"] = df["metric"].map(METRIC_NAMES)
    order = [name for name in METRIC_NAMES if name in set(df["metric"])]

    fig, ax = plt.subplots(figsize=(10, 6))
    sns.boxplot(
        data=df,
        x="metric_display",
        y="value",
        order=[METRIC_NAMES[name] for name in order],
        hue="metric_display",
        hue_order=[METRIC_NAMES[name] for name in order],
        palette=[METRIC_COLORS[name] for name in order],
        legend=False,
        ax=ax,
        linewidth=1.5,
        width=0.6,
    )
    ax.set_xlabel("")
    ax.set_ylabel("Latency (ms)", fontweight="semibold", labelpad=12)
    ax.set_ylim(bottom=0)
    ax.set_title("Request Latency Distribution", fontweight="bold", pad=15)
    ax.grid(True, alpha=0.3, linestyle="--", linewidth=0.5, axis="y")
    ax.set_axisbelow(True)
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)

    plt.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    LOGGER.info("Rendering chart %s", chart_path)
    return chart_path


__all__ = ["render_result_charts"]
