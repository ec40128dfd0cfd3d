"""Shared fixtures: a controllable clock and an instrumented in-memory store."""

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import UTC, datetime, timedelta

import pytest

from verifyflow.config import Settings, load_type_configs
from verifyflow.delivery import LogDelivery
from verifyflow.dispatch import FlowDispatcher
from verifyflow.flow import VerificationFlow
from verifyflow.handoffs import build_dispatcher
from verifyflow.store import MemoryChallengeStore
from verifyflow.verification import VerificationManager

# Aligned to a 300s step boundary
T0 = datetime.fromtimestamp(1_700_000_100, UTC)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class CountingStore(MemoryChallengeStore):
    """Memory store that records how often each operation is called."""

    def __init__(self) -> None:
        super().__init__()
        self.calls: Counter[str] = Counter()

    async def find_live(self, type, target, now):
        self.calls["find_live"] += 1
        return await super().find_live(type, target, now)

    async def create(self, challenge):
        self.calls["create"] += 1
        return await super().create(challenge)

    async def replace(self, challenge):
        self.calls["replace"] += 1
        return await super().replace(challenge)

    async def delete_by_key(self, type, target, challenge_id=None):
        self.calls["delete_by_key"] += 1
        return await super().delete_by_key(type, target, challenge_id)

    async def delete_expired(self, now):
        self.calls["delete_expired"] += 1
        return await super().delete_expired(now)


class YieldingStore(CountingStore):
    """Yields to the event loop on lookup so concurrent submissions interleave."""

    async def find_live(self, type, target, now):
        found = await super().find_live(type, target, now)
        await asyncio.sleep(0)
        return found


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        verify_base_url="https://app.example.com",
        otp_algorithm="SHA256",
        otp_digits=6,
        default_period=600,
    )


@pytest.fixture
def store() -> CountingStore:
    return CountingStore()


@pytest.fixture
def delivery() -> LogDelivery:
    return LogDelivery()


@pytest.fixture
def manager(store, delivery, test_settings, clock) -> VerificationManager:
    return VerificationManager(
        store,
        delivery=delivery,
        type_configs=load_type_configs(),
        config=test_settings,
        clock=clock,
    )


@pytest.fixture
def dispatcher(manager) -> FlowDispatcher:
    return build_dispatcher(manager.type_configs)


@pytest.fixture
def flow(manager, dispatcher) -> VerificationFlow:
    return VerificationFlow(manager, dispatcher)
