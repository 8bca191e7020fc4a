from __future__ import annotations

import random

import pytest

from hsm_loadtest.harness.config import QUICK_PAYLOADS
from hsm_loadtest.harness.cycle import CycleSettings
from hsm_loadtest.harness.metrics import MetricsRegistry
from tests.fakes import FakeEncryptionClient


@pytest.fixture
def registry() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture
def fake_client() -> FakeEncryptionClient:
    return FakeEncryptionClient()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def cycle_settings() -> CycleSettings:
    return CycleSettings(
        context="exchange-key",
        payloads=QUICK_PAYLOADS,
        health_check_probability=0.0,
    )
