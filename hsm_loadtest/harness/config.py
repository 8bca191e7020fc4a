from __future__ import annotations

import dataclasses
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

import yaml

DEFAULT_CONTEXT = "exchange-key"

FULL_PAYLOADS = (
    "SGVsbG8gV29ybGQh",
    "VGhpcyBpcyBhIG1lZGl1bSBzaXplZCBwYXlsb2FkIGZvciB0ZXN0aW5n",
    "TG9uZ2VyIHBheWxvYWQgd2l0aCBtb3JlIGRhdGEgdG8gdGVzdCBwZXJmb3JtYW5jZSB1bmRlciB2YXJpb3Vz"
    "IGNvbmRpdGlvbnMgYW5kIGxvYWRz",
)
QUICK_PAYLOADS = (
    "SGVsbG8gV29ybGQh",
    "VGVzdCBkYXRhIGZvciBsb2FkIHRlc3Rpbmc=",
)

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


class ConfigurationError(Exception):
    """Raised when the load test cannot start because its configuration is invalid."""


def parse_duration(value: Any) -> float:
    """Convert ``90``, ``"90s"``, ``"1m30s"`` or ``"250ms"`` to seconds."""
    if isinstance(value, bool):
        raise ConfigurationError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip().replace(" ", "")
        if not text:
            raise ConfigurationError("duration must not be empty")
        try:
            seconds = float(text)
        except ValueError:
            parts = _DURATION_PART.findall(text)
            if not parts or "".join(num + unit for num, unit in parts) != text:
                raise ConfigurationError(f"invalid duration {value!r}") from None
            seconds = sum(float(num) * _UNIT_SECONDS[unit] for num, unit in parts)
    if seconds < 0 or math.isnan(seconds) or math.isinf(seconds):
        raise ConfigurationError(f"duration must be a finite non-negative value, got {value!r}")
    return seconds


def format_duration(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        return f"{int(seconds // 60)}m"
    return f"{seconds:g}s"


@dataclass(frozen=True)
class Stage:
    duration_seconds: float
    target: int

    def __post_init__(self) -> None:
        if self.duration_seconds < 0:
            raise ConfigurationError(f"stage duration must be >= 0, got {self.duration_seconds}")
        if self.target < 0:
            raise ConfigurationError(f"stage target must be >= 0, got {self.target}")


@dataclass(frozen=True)
class RampProfile:
    """Ordered stages the scheduler walks through; the ramp starts from zero users."""

    name: str
    stages: tuple[Stage, ...]

    def __post_init__(self) -> None:
        if not self.stages:
            raise ConfigurationError(f"ramp profile {self.name!r} has no stages")

    @property
    def total_duration(self) -> float:
        return sum(stage.duration_seconds for stage in self.stages)

    @property
    def peak_target(self) -> int:
        return max(stage.target for stage in self.stages)

    def stage_index_at(self, elapsed: float) -> int | None:
        start = 0.0
        for index, stage in enumerate(self.stages):
            end = start + stage.duration_seconds
            if elapsed < end:
                return index
            start = end
        return None

    def target_at(self, elapsed: float) -> int:
        """Interpolated user count, rounded half-up; 0 once the profile is over."""
        previous = 0
        start = 0.0
        for stage in self.stages:
            end = start + stage.duration_seconds
            if elapsed <= end:
                if stage.duration_seconds == 0:
                    return stage.target
                fraction = max(elapsed - start, 0.0) / stage.duration_seconds
                return int(math.floor(previous + (stage.target - previous) * fraction + 0.5))
            previous = stage.target
            start = end
        return 0


@dataclass(frozen=True)
class ThresholdSpec:
    metric: str
    expression: str
    required: bool = False


@dataclass(frozen=True)
class LoadTestConfig:
    profile: RampProfile
    thresholds: tuple[ThresholdSpec, ...] = ()
    request_timeout_s: float = 10.0
    health_check_probability: float = 0.1
    sleep_min_s: float = 1.5
    sleep_max_s: float = 2.5
    context: str = DEFAULT_CONTEXT
    payloads: tuple[str, ...] = field(default=FULL_PAYLOADS)

    def __post_init__(self) -> None:
        if self.request_timeout_s <= 0:
            raise ConfigurationError("request timeout must be > 0")
        if not 0.0 <= self.health_check_probability <= 1.0:
            raise ConfigurationError("health check probability must be within [0, 1]")
        if self.sleep_min_s < 0 or self.sleep_max_s < self.sleep_min_s:
            raise ConfigurationError(
                f"invalid sleep bounds [{self.sleep_min_s}, {self.sleep_max_s}]"
            )
        if not self.payloads:
            raise ConfigurationError("at least one payload is required")
        if not self.context:
            raise ConfigurationError("authorization context must not be empty")


def _thresholds(
    definitions: Mapping[str, Sequence[str]], required: Iterable[str] = ()
) -> tuple[ThresholdSpec, ...]:
    required_metrics = set(required)
    return tuple(
        ThresholdSpec(metric=metric, expression=expression, required=metric in required_metrics)
        for metric, expressions in definitions.items()
        for expression in expressions
    )


def default_profiles() -> dict[str, LoadTestConfig]:
    """Return the built-in ``full`` (22 minutes) and ``quick`` (2 minutes) runs."""

    full = LoadTestConfig(
        profile=RampProfile(
            name="full",
            stages=(
                Stage(60, 50),
                Stage(180, 100),
                Stage(300, 100),
                Stage(120, 200),
                Stage(300, 200),
                Stage(120, 100),
                Stage(180, 50),
                Stage(60, 0),
            ),
        ),
        thresholds=_thresholds(
            {
                "http_req_duration": ["p(95)<500", "p(99)<1000"],
                "http_req_failed": ["rate<0.01"],
                "errors": ["rate<0.01"],
                "encrypt_duration": ["p(95)<100", "p(99)<200"],
                "decrypt_duration": ["p(95)<100", "p(99)<200"],
            },
            required=("http_req_duration", "errors"),
        ),
        payloads=FULL_PAYLOADS,
    )
    quick = dataclasses.replace(
        full,
        profile=RampProfile(
            name="quick",
            stages=(Stage(30, 10), Stage(60, 20), Stage(30, 0)),
        ),
        thresholds=_thresholds(
            {
                "http_req_duration": ["p(95)<500", "p(99)<1000"],
                "http_req_failed": ["rate<0.05"],
                "errors": ["rate<0.05"],
                "encrypt_duration": ["p(95)<200", "p(99)<500"],
                "decrypt_duration": ["p(95)<200", "p(99)<500"],
            },
            required=("http_req_duration", "errors"),
        ),
        payloads=QUICK_PAYLOADS,
        sleep_min_s=0.5,
        sleep_max_s=1.0,
    )
    return {"full": full, "quick": quick}


def load_config(path: str | Path, base: LoadTestConfig | None = None) -> LoadTestConfig:
    """Read a YAML load test description; omitted keys fall back to ``base``."""
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except OSError as exc:
        raise ConfigurationError(f"cannot read config {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"config {path} must contain a mapping")
    return config_from_dict(data, base=base, default_name=path.stem)


def config_from_dict(
    data: Mapping[str, Any],
    base: LoadTestConfig | None = None,
    default_name: str = "custom",
) -> LoadTestConfig:
    base = base or default_profiles()["full"]
    overrides: dict[str, Any] = {}

    if "stages" in data:
        overrides["profile"] = RampProfile(
            name=str(data.get("name") or default_name),
            stages=_parse_stages(data["stages"]),
        )
    elif "name" in data:
        overrides["profile"] = dataclasses.replace(base.profile, name=str(data["name"]))

    if "thresholds" in data:
        overrides["thresholds"] = _parse_thresholds(data["thresholds"])
    if "request_timeout" in data:
        overrides["request_timeout_s"] = parse_duration(data["request_timeout"])
    if "health_check_probability" in data:
        overrides["health_check_probability"] = _parse_float(
            data["health_check_probability"], "health_check_probability"
        )
    if "sleep" in data:
        sleep = data["sleep"]
        if not isinstance(sleep, dict):
            raise ConfigurationError("sleep must be a mapping with min and max")
        overrides["sleep_min_s"] = parse_duration(sleep.get("min", base.sleep_min_s))
        overrides["sleep_max_s"] = parse_duration(sleep.get("max", base.sleep_max_s))
    if "context" in data:
        overrides["context"] = str(data["context"])
    if "payloads" in data:
        payloads = data["payloads"]
        if not isinstance(payloads, list):
            raise ConfigurationError("payloads must be a list of base64 strings")
        overrides["payloads"] = tuple(str(item) for item in payloads)

    return dataclasses.replace(base, **overrides)


def _parse_stages(raw: Any) -> tuple[Stage, ...]:
    if not isinstance(raw, list) or not raw:
        raise ConfigurationError("stages must be a non-empty list")
    stages = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict) or "duration" not in item or "target" not in item:
            raise ConfigurationError(f"stage #{index + 1} needs duration and target")
        target = item["target"]
        if isinstance(target, bool) or not isinstance(target, int):
            raise ConfigurationError(f"stage #{index + 1} target must be an integer")
        stages.append(Stage(parse_duration(item["duration"]), target))
    return tuple(stages)


def _parse_thresholds(raw: Any) -> tuple[ThresholdSpec, ...]:
    if not isinstance(raw, dict):
        raise ConfigurationError("thresholds must map metric names to expression lists")
    specs = []
    for metric, entries in raw.items():
        if isinstance(entries, (str, dict)):
            entries = [entries]
        if not isinstance(entries, list):
            raise ConfigurationError(f"thresholds for {metric!r} must be a list")
        for entry in entries:
            if isinstance(entry, str):
                specs.append(ThresholdSpec(str(metric), entry))
            elif isinstance(entry, dict) and isinstance(entry.get("threshold"), str):
                specs.append(
                    ThresholdSpec(
                        str(metric),
                        entry["threshold"],
                        required=bool(entry.get("required", False)),
                    )
                )
            else:
                raise ConfigurationError(f"invalid threshold entry for {metric!r}: {entry!r}")
    return tuple(specs)


def _parse_float(value: Any, field_name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{field_name} must be numeric, got {value!r}") from exc


__all__ = [
    "ConfigurationError",
    "LoadTestConfig",
    "RampProfile",
    "Stage",
    "ThresholdSpec",
    "config_from_dict",
    "default_profiles",
    "format_duration",
    "load_config",
    "parse_duration",
]
