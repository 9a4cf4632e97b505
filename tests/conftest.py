from __future__ import annotations

import pytest

from echo_runtime.core.config import RuntimeConfig
from tests.fakes import FakeConditionSource

@pytest.fixture
def runtime_config(tmp_path) -> RuntimeConfig:
    return RuntimeConfig(models_dir=tmp_path, telemetry_interval_s=30.0, max_workers=4)

@pytest.fixture
def conditions() -> FakeConditionSource:
    return FakeConditionSource()
