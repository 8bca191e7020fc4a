from __future__ import annotations

import enum
import logging
import random
from dataclasses import dataclass, field

from ..client import EncryptionServiceClient, HttpExchange
from ..schemas import DecryptResponse, EncryptResponse, HealthResponse, ResponseDecodeError
from .checks import (
    CheckResult,
    all_passed,
    decode_failed,
    describe_failures,
    field_equals,
    field_present,
    status_is,
)
from .config import LoadTestConfig
from .metrics import MetricsRegistry

LOGGER = logging.getLogger("hsm_loadtest.harness.cycle")
FAILURE_LOGGER_NAME = "hsm_loadtest.failures"

ERRORS = "errors"
ENCRYPT_DURATION = "encrypt_duration"
DECRYPT_DURATION = "decrypt_duration"
TOTAL_OPERATIONS = "total_operations"
ENCRYPT_FAILURES = "encrypt_failures"
ROUND_TRIP_FAILURES = "round_trip_failures"
HEALTH_CHECKS = "health_checks"
CHECKS = "checks"
ITERATIONS = "iterations"
HTTP_REQS = "http_reqs"
HTTP_REQ_DURATION = "http_req_duration"
HTTP_REQ_FAILED = "http_req_failed"


class CycleStatus(str, enum.Enum):
    SUCCESS = "success"
    ENCRYPT_FAILED = "encrypt_failed"
    ROUND_TRIP_FAILED = "round_trip_failed"


@dataclass(frozen=True)
class CycleSettings:
    context: str
    payloads: tuple[str, ...]
    health_check_probability: float = 0.1

    @classmethod
    def from_config(cls, config: LoadTestConfig) -> CycleSettings:
        return cls(
            context=config.context,
            payloads=config.payloads,
            health_check_probability=config.health_check_probability,
        )


@dataclass
class CycleResult:
    status: CycleStatus
    plaintext: str
    checks: list[CheckResult] = field(default_factory=list)
    health_checks: list[CheckResult] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.status is not CycleStatus.SUCCESS


def declare_metrics(registry: MetricsRegistry) -> None:
    """Declare every metric a cycle writes so thresholds can be validated up front."""
    for name in (TOTAL_OPERATIONS, ENCRYPT_FAILURES, ROUND_TRIP_FAILURES, ITERATIONS, HTTP_REQS):
        registry.counter(name)
    for name in (ERRORS, HEALTH_CHECKS, CHECKS, HTTP_REQ_FAILED):
        registry.rate(name)
    for name in (ENCRYPT_DURATION, DECRYPT_DURATION, HTTP_REQ_DURATION):
        registry.trend(name)


class RequestCycle:
    """One encrypt -> decrypt -> compare round trip plus an occasional health probe."""

    def __init__(
        self,
        client: EncryptionServiceClient,
        registry: MetricsRegistry,
        settings: CycleSettings,
        rng: random.Random | None = None,
        failure_logger: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._settings = settings
        self._rng = rng or random.Random()
        self._failures = failure_logger or logging.getLogger(FAILURE_LOGGER_NAME)

        declare_metrics(registry)
        self._errors = registry.rate(ERRORS)
        self._encrypt_duration = registry.trend(ENCRYPT_DURATION)
        self._decrypt_duration = registry.trend(DECRYPT_DURATION)
        self._total_operations = registry.counter(TOTAL_OPERATIONS)
        self._encrypt_failures = registry.counter(ENCRYPT_FAILURES)
        self._round_trip_failures = registry.counter(ROUND_TRIP_FAILURES)
        self._health_checks = registry.rate(HEALTH_CHECKS)
        self._checks = registry.rate(CHECKS)
        self._iterations = registry.counter(ITERATIONS)
        self._http_reqs = registry.counter(HTTP_REQS)
        self._http_req_duration = registry.trend(HTTP_REQ_DURATION)
        self._http_req_failed = registry.rate(HTTP_REQ_FAILED)

    def run(self) -> CycleResult:
        plaintext = self._rng.choice(self._settings.payloads)
        result = self._round_trip(plaintext)
        if self._rng.random() < self._settings.health_check_probability:
            result.health_checks = self._probe_health()
        self._iterations.add(1)
        return result

    def _round_trip(self, plaintext: str) -> CycleResult:
        context = self._settings.context
        encrypt_exchange = self._client.encrypt(context, plaintext)
        self._record_http(encrypt_exchange)
        encrypt_checks, encrypted = self._check_encrypt(encrypt_exchange)
        self._record_checks(encrypt_checks)

        if encrypted is None:
            self._errors.add(True)
            self._encrypt_failures.add(1)
            self._failures.warning(
                "encrypt failed: status=%d body=%s (%s)",
                encrypt_exchange.status,
                encrypt_exchange.body[:500],
                describe_failures(encrypt_checks),
            )
            return CycleResult(CycleStatus.ENCRYPT_FAILED, plaintext, encrypt_checks)

        self._encrypt_duration.add(encrypt_exchange.elapsed_ms)
        self._total_operations.add(1)

        decrypt_exchange = self._client.decrypt(context, encrypted.ciphertext, encrypted.key_id)
        self._record_http(decrypt_exchange)
        decrypt_checks = self._check_decrypt(decrypt_exchange, plaintext)
        self._record_checks(decrypt_checks)
        checks = encrypt_checks + decrypt_checks

        if not all_passed(decrypt_checks):
            self._errors.add(True)
            self._round_trip_failures.add(1)
            self._failures.warning(
                "round trip failed for key %s: status=%d (%s)",
                encrypted.key_id,
                decrypt_exchange.status,
                describe_failures(decrypt_checks),
            )
            return CycleResult(CycleStatus.ROUND_TRIP_FAILED, plaintext, checks)

        self._decrypt_duration.add(decrypt_exchange.elapsed_ms)
        self._total_operations.add(1)
        self._errors.add(False)
        return CycleResult(CycleStatus.SUCCESS, plaintext, checks)

    def _check_encrypt(
        self, exchange: HttpExchange
    ) -> tuple[list[CheckResult], EncryptResponse | None]:
        checks = [status_is("encrypt: status 200", exchange)]
        try:
            response = EncryptResponse.from_body(exchange.body)
        except ResponseDecodeError as exc:
            LOGGER.debug("undecodable encrypt response: %s", exc)
            checks.append(decode_failed("encrypt: has ciphertext", exc))
            checks.append(decode_failed("encrypt: has key_id", exc))
            return checks, None

        checks.append(field_present("encrypt: has ciphertext", "ciphertext", response.ciphertext))
        checks.append(field_present("encrypt: has key_id", "key_id", response.key_id))
        if not all_passed(checks):
            return checks, None
        return checks, response

    def _check_decrypt(self, exchange: HttpExchange, plaintext: str) -> list[CheckResult]:
        checks = [status_is("decrypt: status 200", exchange)]
        try:
            response = DecryptResponse.from_body(exchange.body)
        except ResponseDecodeError as exc:
            LOGGER.debug("undecodable decrypt response: %s", exc)
            checks.append(decode_failed("decrypt: has plaintext", exc))
            checks.append(decode_failed("decrypt: plaintext matches", exc))
            return checks

        checks.append(field_present("decrypt: has plaintext", "plaintext", response.plaintext))
        checks.append(
            field_equals("decrypt: plaintext matches", "plaintext", response.plaintext, plaintext)
        )
        return checks

    def _probe_health(self) -> list[CheckResult]:
        exchange = self._client.health()
        self._record_http(exchange)
        checks = [status_is("health: status 200", exchange)]
        try:
            response = HealthResponse.from_body(exchange.body)
        except ResponseDecodeError as exc:
            checks.append(decode_failed("health: service ok", exc))
        else:
            checks.append(field_equals("health: service ok", "status", response.status, "ok"))
        self._record_checks(checks)
        self._health_checks.add(all_passed(checks))
        if not all_passed(checks):
            self._failures.warning("health check failed: %s", describe_failures(checks))
        return checks

    def _record_http(self, exchange: HttpExchange) -> None:
        self._http_reqs.add(1)
        self._http_req_duration.add(exchange.elapsed_ms)
        self._http_req_failed.add(not exchange.ok)

    def _record_checks(self, checks: list[CheckResult]) -> None:
        for check in checks:
            self._checks.add(check.passed)


__all__ = [
    "CycleResult",
    "CycleSettings",
    "CycleStatus",
    "RequestCycle",
    "declare_metrics",
]
