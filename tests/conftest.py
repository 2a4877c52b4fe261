"""Shared fixtures for the anchoring tests."""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from held.config import AnchoringSettings
from held.ledger.memory import InMemoryLedger
from held.persistence.event_index import AnchoringEventIndex
from held.persistence.record_store import JsonRecordStore


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"

TEST_KEY = "0x" + "4c" * 32

NOW = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Monotonic clock whose sleep() advances time instantly."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def make_object(**overrides: Any) -> dict[str, Any]:
    obj: dict[str, Any] = {
        "id": "obj-001",
        "title": "Omega Speedmaster 145.022",
        "maker": "Omega",
        "year": 1969,
        "category": "watches",
        "condition": "excellent",
        "created": "2024-05-01T09:30:00Z",
        "images": [
            {"url": "https://img.example/front.jpg", "isPublic": True},
            {"url": "https://img.example/caseback.jpg", "isPublic": False},
        ],
        "serialNumber": "SN-29384756",
        "acquisitionDate": "2021-11-20",
        "certificateRef": "CERT-7781",
        "chain": [
            {"owner": "First owner", "from": "1969"},
            {"owner": "Second owner", "from": "1998"},
        ],
    }
    obj.update(overrides)
    return obj


@pytest.fixture
def settings() -> AnchoringSettings:
    return AnchoringSettings.from_config_dir(CONFIG_DIR).with_overrides(
        base_url="https://held.example",
        sync_timeout_seconds=30.0,
        sync_poll_interval_seconds=5.0,
        private_key=TEST_KEY,
    )


@pytest.fixture
def ledger() -> InMemoryLedger:
    return InMemoryLedger(start_block=400)


@pytest.fixture
def store() -> JsonRecordStore:
    return JsonRecordStore()


@pytest.fixture
def event_index() -> AnchoringEventIndex:
    return AnchoringEventIndex()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def obj() -> dict[str, Any]:
    return make_object()
