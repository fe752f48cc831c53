from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fakes import FakeGateway, FakeLedger, make_settings  # noqa: E402


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()
