"""Pytest fixtures for Tallyman tests."""

import pytest

from tallyman.adapters.memory import InMemoryMirrorBackend
from tallyman.services.ledger import LedgerStore


class FlakyMirrorBackend(InMemoryMirrorBackend):
    """In-memory mirror that fails the next ``failures`` upserts."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls = 0

    def upsert_snapshot(self, principal_id, snapshot):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("mirror unavailable")
        super().upsert_snapshot(principal_id, snapshot)


class RecordingNotifier:
    """TierChangeNotifier that remembers every call."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []

    def notify_tier_change(self, principal_id, new_tier, discount_percent):
        self.calls.append((principal_id, new_tier, discount_percent))
        if self.fail:
            raise RuntimeError("push gateway down")


@pytest.fixture(autouse=True)
def mirror():
    """Fresh shared in-memory mirror for every test."""
    InMemoryMirrorBackend.reset()
    yield InMemoryMirrorBackend()
    InMemoryMirrorBackend.reset()


@pytest.fixture
def flaky_mirror():
    return FlakyMirrorBackend


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def principal(db):
    """Provisioned principal with a zero balance."""
    account, _ = LedgerStore.provision("uid-001")
    return account


@pytest.fixture
def seed(db):
    """Give a principal a starting balance through the ledger (mirror untouched)."""

    def _seed(principal_id: str, balance: int):
        LedgerStore.provision(principal_id)
        if balance:
            LedgerStore.commit_delta(principal_id, balance, "seed")
        return principal_id

    return _seed
