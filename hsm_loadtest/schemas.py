from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any


class ResponseDecodeError(Exception):
    """Raised when a response body is not a JSON object."""


def _decode_object(body: str) -> dict[str, Any]:
    try:
        data = json.loads(body)
    except (TypeError, ValueError) as exc:
        raise ResponseDecodeError(f"body is not valid JSON: {body[:120]!r}") from exc
    if not isinstance(data, dict):
        raise ResponseDecodeError(f"expected a JSON object, got {type(data).__name__}")
    return data


def _optional_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    if isinstance(value, str):
        return value
    return None


@dataclass(frozen=True)
class EncryptResponse:
    ciphertext: str | None
    key_id: str | None

    @classmethod
    def from_body(cls, body: str) -> EncryptResponse:
        data = _decode_object(body)
        return cls(
            ciphertext=_optional_str(data, "ciphertext"),
            key_id=_optional_str(data, "key_id"),
        )


@dataclass(frozen=True)
class DecryptResponse:
    plaintext: str | None

    @classmethod
    def from_body(cls, body: str) -> DecryptResponse:
        return cls(plaintext=_optional_str(_decode_object(body), "plaintext"))


@dataclass(frozen=True)
class HealthResponse:
    status: str | None

    @classmethod
    def from_body(cls, body: str) -> HealthResponse:
        return cls(status=_optional_str(_decode_object(body), "status"))


__all__ = [
    "DecryptResponse",
    "EncryptResponse",
    "HealthResponse",
    "ResponseDecodeError",
]
