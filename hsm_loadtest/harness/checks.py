from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from ..client import HttpExchange


@dataclass(frozen=True)
class CheckResult:
    name: str
    passed: bool
    message: str = ""


def status_is(name: str, exchange: HttpExchange, expected: int = 200) -> CheckResult:
    if exchange.error is not None:
        return CheckResult(name, False, exchange.error)
    if exchange.status != expected:
        return CheckResult(name, False, f"status {exchange.status}, expected {expected}")
    return CheckResult(name, True)


def field_present(name: str, field_name: str, value: object | None) -> CheckResult:
    if value is None:
        return CheckResult(name, False, f"response has no {field_name!r} field")
    return CheckResult(name, True)


def field_equals(name: str, field_name: str, actual: object | None, expected: object) -> CheckResult:
    if actual is None:
        return CheckResult(name, False, f"response has no {field_name!r} field")
    if actual != expected:
        return CheckResult(name, False, f"{field_name} {actual!r} != {expected!r}")
    return CheckResult(name, True)


def decode_failed(name: str, error: Exception) -> CheckResult:
    return CheckResult(name, False, str(error))


def all_passed(results: Iterable[CheckResult]) -> bool:
    return all(result.passed for result in results)


def describe_failures(results: Iterable[CheckResult]) -> str:
    return "; ".join(
        f"{result.name}: {result.message}" for result in results if not result.passed
    )
