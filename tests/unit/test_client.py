"""
Unit tests for the HTTP transport adapter and response schemas.

The ``requests.Session`` is replaced by a recording fake so no socket is
ever opened.
"""

import random
from types import SimpleNamespace

import pytest
import requests

from hsm_loadtest.client import (
    EncryptionServiceClient,
    ServiceUnavailableError,
    TransportSettings,
    create_session,
    wait_for_service,
)
from hsm_loadtest.harness.cycle import CycleStatus, RequestCycle
from hsm_loadtest.schemas import (
    DecryptResponse,
    EncryptResponse,
    HealthResponse,
    ResponseDecodeError,
)
from tests.fakes import exchange, transport_error


pytestmark = pytest.mark.unit


class RecordingSession:
    def __init__(self, responses):
        self._responses = list(responses)
        self.requests = []
        self.closed = False

    def request(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def close(self):
        self.closed = True


def _response(status=200, text="{}"):
    return SimpleNamespace(status_code=status, text=text)


@pytest.fixture
def settings():
    return TransportSettings(base_url="https://hsm.test:8443/", timeout_s=3.0)


def test_encrypt_posts_context_and_plaintext(settings):
    session = RecordingSession([_response(200, '{"ciphertext": "c", "key_id": "k"}')])
    client = EncryptionServiceClient(settings, session=session)

    result = client.encrypt("exchange-key", "SGVsbG8=")

    method, url, kwargs = session.requests[0]
    assert method == "POST"
    assert url == "https://hsm.test:8443/encrypt"
    assert kwargs["json"] == {"context": "exchange-key", "plaintext": "SGVsbG8="}
    assert kwargs["headers"] == {"Content-Type": "application/json"}
    assert kwargs["timeout"] == 3.0
    assert result.status == 200
    assert result.ok is True
    assert result.elapsed_ms >= 0
    assert result.body == '{"ciphertext": "c", "key_id": "k"}'


def test_decrypt_posts_ciphertext_and_key_id(settings):
    session = RecordingSession([_response(200, '{"plaintext": "SGVsbG8="}')])
    client = EncryptionServiceClient(settings, session=session)

    client.decrypt("exchange-key", "c", "k")

    method, url, kwargs = session.requests[0]
    assert (method, url) == ("POST", "https://hsm.test:8443/decrypt")
    assert kwargs["json"] == {"context": "exchange-key", "ciphertext": "c", "key_id": "k"}


def test_health_is_a_plain_get(settings):
    session = RecordingSession([_response(200, '{"status": "ok"}')])
    client = EncryptionServiceClient(settings, session=session)

    result = client.health()

    method, url, kwargs = session.requests[0]
    assert (method, url) == ("GET", "https://hsm.test:8443/health")
    assert kwargs["json"] is None
    assert result.method == "GET"


@pytest.mark.parametrize(
    "error",
    [
        requests.ConnectionError("connection refused"),
        requests.Timeout("read timed out"),
        requests.exceptions.SSLError("certificate required"),
        OSError("Could not find the TLS certificate file, invalid path: /nonexistent.crt"),
    ],
)
def test_transport_errors_become_failed_exchanges(settings, error):
    client = EncryptionServiceClient(settings, session=RecordingSession([error]))

    result = client.encrypt("exchange-key", "SGVsbG8=")

    assert result.status == 0
    assert result.ok is False
    assert type(error).__name__ in result.error


def test_unreadable_client_certificate_is_a_failed_cycle(settings, registry, cycle_settings):
    error = OSError("Could not find the TLS certificate file, invalid path: /nonexistent.crt")
    client = EncryptionServiceClient(settings, session=RecordingSession([error]))
    cycle = RequestCycle(client, registry, cycle_settings, rng=random.Random(3))

    result = cycle.run()

    snapshot = registry.snapshot()
    assert result.status is CycleStatus.ENCRYPT_FAILED
    assert snapshot["errors"].passes == snapshot["errors"].total == 1
    assert snapshot["encrypt_failures"].count == 1
    assert snapshot["http_reqs"].count == 1
    assert snapshot["http_req_failed"].passes == 1


def test_non_2xx_status_is_not_ok(settings):
    client = EncryptionServiceClient(settings, session=RecordingSession([_response(500, "")]))

    result = client.health()

    assert result.ok is False
    assert result.error is None


def test_close_closes_session(settings):
    session = RecordingSession([])
    EncryptionServiceClient(settings, session=session).close()

    assert session.closed is True


def test_create_session_configures_mutual_tls():
    settings = TransportSettings(
        client_cert="client.crt", client_key="client.key", verify="ca.pem"
    )

    session = create_session(settings)

    assert session.cert == ("client.crt", "client.key")
    assert session.verify == "ca.pem"


def test_create_session_without_client_key_uses_combined_pem():
    session = create_session(TransportSettings(client_cert="bundle.pem", client_key=None, verify=False))

    assert session.cert == "bundle.pem"
    assert session.verify is False


class ScriptedHealthClient:
    def __init__(self, exchanges, settings):
        self._exchanges = list(exchanges)
        self.settings = settings

    def health(self):
        if len(self._exchanges) > 1:
            return self._exchanges.pop(0)
        return self._exchanges[0]


def test_wait_for_service_backs_off_until_reachable(settings):
    client = ScriptedHealthClient(
        [
            transport_error("/health", method="GET"),
            transport_error("/health", method="GET"),
            exchange("/health", status=503, method="GET"),
        ],
        settings,
    )
    sleeps = []

    result = wait_for_service(client, timeout_s=60, sleep=sleeps.append)

    assert result.status == 503
    assert sleeps == [1.0, 1.5]


def test_wait_for_service_gives_up_after_timeout(settings):
    client = ScriptedHealthClient([transport_error("/health", method="GET")], settings)

    with pytest.raises(ServiceUnavailableError, match="did not respond"):
        wait_for_service(client, timeout_s=0.01, sleep=lambda _: None)


def test_wait_for_service_disabled_with_zero_timeout(settings):
    client = ScriptedHealthClient([transport_error("/health", method="GET")], settings)

    assert wait_for_service(client, timeout_s=0) is None


def test_encrypt_response_schema():
    response = EncryptResponse.from_body('{"ciphertext": "c", "key_id": "k", "extra": 1}')

    assert response == EncryptResponse(ciphertext="c", key_id="k")


def test_schema_fields_are_optional():
    assert EncryptResponse.from_body('{"ciphertext": "c"}').key_id is None
    assert DecryptResponse.from_body("{}").plaintext is None
    assert HealthResponse.from_body('{"status": null}').status is None


def test_non_string_fields_are_treated_as_absent():
    assert DecryptResponse.from_body('{"plaintext": 42}').plaintext is None


@pytest.mark.parametrize("body", ["", "not json", "[1, 2]", '"text"', "null"])
def test_non_object_bodies_raise_decode_error(body):
    with pytest.raises(ResponseDecodeError):
        DecryptResponse.from_body(body)
