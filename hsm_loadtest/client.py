from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

import requests
import urllib3

LOGGER = logging.getLogger("hsm_loadtest.client")

DEFAULT_BASE_URL = "https://localhost:8443"
DEFAULT_CLIENT_CERT = "pki/client/hsm-trading-client-1.crt"
DEFAULT_CLIENT_KEY = "pki/client/hsm-trading-client-1.key"
REQUEST_TIMEOUT_S_DEFAULT = 10.0

JSON_HEADERS = {"Content-Type": "application/json"}


class ServiceUnavailableError(Exception):
    """Raised when the encryption service never answers the readiness probe."""


@dataclass(frozen=True)
class TransportSettings:
    base_url: str = DEFAULT_BASE_URL
    client_cert: str | None = DEFAULT_CLIENT_CERT
    client_key: str | None = DEFAULT_CLIENT_KEY
    verify: bool | str = True
    timeout_s: float = REQUEST_TIMEOUT_S_DEFAULT

    def url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"

    def cert(self) -> tuple[str, str] | str | None:
        if self.client_cert and self.client_key:
            return (self.client_cert, self.client_key)
        return self.client_cert or None


@dataclass(frozen=True)
class HttpExchange:
    """Outcome of one HTTP call. ``status == 0`` means the transport failed."""

    method: str
    path: str
    status: int
    body: str
    elapsed_ms: float
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and 200 <= self.status < 300


def create_session(settings: TransportSettings) -> requests.Session:
    session = requests.Session()
    session.cert = settings.cert()
    session.verify = settings.verify
    if settings.verify is False:
        # Self-signed lab certificates would otherwise flood the log.
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
    return session


class EncryptionServiceClient:
    """Issues the encrypt/decrypt/health calls and never raises on transport faults."""

    def __init__(
        self,
        settings: TransportSettings,
        session: requests.Session | None = None,
    ) -> None:
        self._settings = settings
        self._session = session or create_session(settings)

    @property
    def settings(self) -> TransportSettings:
        return self._settings

    def encrypt(self, context: str, plaintext: str) -> HttpExchange:
        return self._send(
            "POST", "/encrypt", {"context": context, "plaintext": plaintext}
        )

    def decrypt(self, context: str, ciphertext: str, key_id: str) -> HttpExchange:
        return self._send(
            "POST",
            "/decrypt",
            {"context": context, "ciphertext": ciphertext, "key_id": key_id},
        )

    def health(self) -> HttpExchange:
        return self._send("GET", "/health")

    def close(self) -> None:
        self._session.close()

    def _send(
        self, method: str, path: str, payload: dict[str, Any] | None = None
    ) -> HttpExchange:
        started = time.perf_counter()
        try:
            response = self._session.request(
                method,
                self._settings.url(path),
                json=payload,
                headers=JSON_HEADERS if payload is not None else None,
                timeout=self._settings.timeout_s,
            )
        except (requests.RequestException, OSError) as exc:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            LOGGER.debug("%s %s failed after %.1fms: %r", method, path, elapsed_ms, exc)
            return HttpExchange(
                method=method,
                path=path,
                status=0,
                body="",
                elapsed_ms=elapsed_ms,
                error=f"{type(exc).__name__}: {exc}",
            )
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        return HttpExchange(
            method=method,
            path=path,
            status=response.status_code,
            body=response.text,
            elapsed_ms=elapsed_ms,
        )


def wait_for_service(
    client: EncryptionServiceClient,
    timeout_s: float,
    sleep=time.sleep,
) -> HttpExchange | None:
    """Poll ``/health`` until the service answers with any HTTP status."""
    if timeout_s <= 0:
        return None

    backoff = 1.0
    max_backoff = 10.0
    deadline = time.time() + timeout_s

    while True:
        exchange = client.health()
        if exchange.error is None:
            LOGGER.info(
                "Service at %s answered /health with status %d",
                client.settings.base_url,
                exchange.status,
            )
            return exchange
        if time.time() >= deadline:
            raise ServiceUnavailableError(
                f"{client.settings.base_url} did not respond within {timeout_s:g} seconds"
                f" ({exchange.error})"
            )

        LOGGER.info("Waiting for %s: %s", client.settings.base_url, exchange.error)
        sleep(backoff)
        backoff = min(backoff * 1.5, max_backoff)


__all__ = [
    "DEFAULT_BASE_URL",
    "REQUEST_TIMEOUT_S_DEFAULT",
    "EncryptionServiceClient",
    "HttpExchange",
    "ServiceUnavailableError",
    "TransportSettings",
    "create_session",
    "wait_for_service",
]
