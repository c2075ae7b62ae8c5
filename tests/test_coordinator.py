"""
Tests for ApplyDelta / GetStatus:
- Scenarios A-E (credit, floored debit, tier change, rollback, incident)
- Floor-at-zero / compensation asymmetry
- Ledger, mirror and activity-log invariants
- State machine
- Notifier isolation
- Outer transactions and concurrent callers
"""

import threading
from unittest.mock import patch

import pytest
from django.db import connection, connections, transaction

from tallyman.exceptions import TallymanError
from tallyman.models import ActivityLogEntry, LedgerIncident, PrincipalBalance
from tallyman.service import LedgerService
from tallyman.services import notifications
from tallyman.services.compensation import CompensationHandler
from tallyman.services.coordinator import (
    TERMINAL_STATES,
    LedgerCoordinator,
    SyncRun,
    SyncState,
)
from tallyman.services.ledger import MAX_DELTA, LedgerStore
from tallyman.services.reconciliation import fold_balance
from tallyman.signals import tier_changed
from tallyman.tiers import Tier, tier_of


pytestmark = pytest.mark.django_db


@pytest.fixture
def tier_events():
    received = []

    def receiver(sender, **kwargs):
        received.append(kwargs)

    tier_changed.connect(receiver)
    yield received
    tier_changed.disconnect(receiver)


def _commit_then_fail():
    """commit_delta stand-in: first call commits, later calls fail."""
    real_commit = LedgerStore.commit_delta
    calls = []

    def side_effect(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            return real_commit(*args, **kwargs)
        raise TallymanError("LEDGER_COMMIT_FAILED", cause="database unavailable")

    return side_effect


# ═══════════════════════════════════════════════════════════════════
# Scenarios
# ═══════════════════════════════════════════════════════════════════


class TestScenarios:
    def test_a_purchase_from_zero(self, principal, mirror):
        result = LedgerService.apply_delta("uid-001", 150, "purchase")

        assert result.balance == 150
        assert result.tier == "SILVER"
        assert result.discount_percent == 5
        assert result.delta == 150
        assert mirror.get_snapshot("uid-001").points_balance == 150

    def test_b_redemption_floors_at_zero(self, seed, mirror):
        seed("uid-002", 100)
        result = LedgerService.apply_delta("uid-002", -250, "redemption")

        assert result.balance == 0
        assert result.tier == "BRONZE"
        assert result.discount_percent == 0
        assert result.delta == -100
        assert mirror.get_snapshot("uid-002").points_balance == 0

    def test_c_tier_change_notifies(self, seed, tier_events):
        seed("uid-003", 450)
        result = LedgerService.apply_delta("uid-003", 60, "bonus")

        assert result.balance == 510
        assert result.tier == "GOLD"
        assert tier_events == [
            {"signal": tier_changed, "principal_id": "uid-003", "new_tier": "GOLD", "discount_percent": 10}
        ]

    def test_no_notification_without_tier_change(self, seed, tier_events):
        seed("uid-003", 450)
        LedgerService.apply_delta("uid-003", 10, "bonus")
        assert tier_events == []

    def test_d_mirror_failure_rolled_back(self, seed, flaky_mirror):
        seed("uid-004", 450)
        coordinator = LedgerCoordinator(mirror_backend=flaky_mirror(failures=2))

        with pytest.raises(TallymanError) as exc_info:
            coordinator.apply_delta("uid-004", 60, "bonus")

        err = exc_info.value
        assert err.code == "COMPENSATION_SUCCEEDED"
        assert err.data["state"] == SyncState.COMPENSATION_SUCCEEDED.value
        assert err.data["restored_balance"] == 450
        assert err.retryable

        status = LedgerService.get_status("uid-004")
        assert status.balance == 450
        assert status.tier == "SILVER"
        assert not LedgerIncident.objects.exists()

        reasons = [e.reason for e in LedgerService.history("uid-004")]
        assert reasons == ["rollback_mirror_failure", "bonus", "seed"]

    def test_d_rollback_does_not_notify(self, seed, flaky_mirror, notifier):
        seed("uid-004", 450)
        coordinator = LedgerCoordinator(mirror_backend=flaky_mirror(failures=2), notifier=notifier)
        with pytest.raises(TallymanError):
            coordinator.apply_delta("uid-004", 60, "bonus")
        assert notifier.calls == []

    def test_d_single_failure_without_retry(self, seed, flaky_mirror, settings, mirror):
        settings.TALLYMAN = {**settings.TALLYMAN, "MIRROR_SYNC_ATTEMPTS": 1}
        seed("uid-004", 450)
        backend = flaky_mirror(failures=1)

        with pytest.raises(TallymanError) as exc_info:
            LedgerCoordinator(mirror_backend=backend).apply_delta("uid-004", 60, "bonus")

        assert exc_info.value.code == "COMPENSATION_SUCCEEDED"
        assert exc_info.value.data["restored_balance"] == 450
        assert backend.calls == 1
        assert LedgerService.get_status("uid-004").tier == "SILVER"
        assert mirror.get_snapshot("uid-004") is None
        assert not LedgerIncident.objects.exists()

    def test_e_compensation_failure_raises_incident(self, seed, flaky_mirror, caplog):
        seed("uid-005", 100)
        backend = flaky_mirror(failures=2)
        coordinator = LedgerCoordinator(mirror_backend=backend)

        with patch.object(LedgerStore, "commit_delta", side_effect=_commit_then_fail()):
            with pytest.raises(TallymanError) as exc_info:
                coordinator.apply_delta("uid-005", 50, "purchase")

        err = exc_info.value
        assert err.code == "COMPENSATION_FAILED_CRITICAL"
        assert err.data["state"] == SyncState.COMPENSATION_FAILED_CRITICAL.value
        assert err.data["ledger_balance"] == 150
        assert not err.retryable

        incident = LedgerIncident.objects.get()
        assert err.data["incident_id"] == incident.pk
        assert incident.principal_id == "uid-005"
        assert incident.original_delta == 50
        assert incident.original_reason == "purchase"
        assert "MIRROR_SYNC_FAILED" in incident.mirror_error
        assert "LEDGER_COMMIT_FAILED" in incident.compensation_error

        # Ledger holds the uncompensated update; mirror never saw it
        assert LedgerService.get_status("uid-005").balance == 150
        assert backend.get_snapshot("uid-005") is None
        assert any(r.levelname == "CRITICAL" for r in caplog.records)

    def test_transient_mirror_failure_succeeds(self, principal, flaky_mirror):
        backend = flaky_mirror(failures=1)
        result = LedgerCoordinator(mirror_backend=backend).apply_delta("uid-001", 150, "purchase")
        assert result.balance == 150
        assert backend.get_snapshot("uid-001").points_balance == 150
        assert ActivityLogEntry.objects.filter(reason="rollback_mirror_failure").count() == 0


# ═══════════════════════════════════════════════════════════════════
# Floor-at-zero vs compensation
# ═══════════════════════════════════════════════════════════════════


class TestFloorCompensationAsymmetry:
    def test_floored_debit_restored_exactly(self, seed, flaky_mirror):
        """Compensation reverses the effective -100, not the requested -250."""
        seed("uid-006", 100)
        coordinator = LedgerCoordinator(mirror_backend=flaky_mirror(failures=2))

        with pytest.raises(TallymanError, match="COMPENSATION_SUCCEEDED"):
            coordinator.apply_delta("uid-006", -250, "redemption")

        assert LedgerService.get_status("uid-006").balance == 100
        original = ActivityLogEntry.objects.get(reason="redemption")
        rollback = ActivityLogEntry.objects.get(reason="rollback_mirror_failure")
        assert (original.requested_delta, original.delta) == (-250, -100)
        assert rollback.delta == 100
        assert rollback.reverses == original
        assert rollback.metadata["original_requested_delta"] == -250

    def test_reversing_requested_delta_would_overshoot(self, seed):
        """Undoing a floored debit with the requested amount does not restore the balance."""
        seed("uid-006", 100)
        debit = LedgerStore.commit_delta("uid-006", -250, "redemption")
        naive = LedgerStore.commit_delta("uid-006", -debit.requested_delta, "manual_reversal")
        assert naive.new_balance == 250
        assert naive.new_balance != 100

    def test_compensation_floored_by_concurrent_debit(self, seed, flaky_mirror):
        """
        A debit landing between commit and rollback makes the rollback floor:
        restored = max(0, balance_at_rollback - original_delta).
        """
        seed("uid-007", 100)
        compensate = CompensationHandler.compensate

        def redemption_then_compensate(*args, **kwargs):
            LedgerStore.commit_delta("uid-007", -140, "redemption")
            return compensate(*args, **kwargs)

        backend = flaky_mirror(failures=2)
        with patch.object(CompensationHandler, "compensate", side_effect=redemption_then_compensate):
            with pytest.raises(TallymanError, match="COMPENSATION_SUCCEEDED"):
                LedgerCoordinator(mirror_backend=backend).apply_delta("uid-007", 50, "purchase")

        # 100 +50 -> 150, -140 -> 10, rollback -50 floors -> 0
        rollback = ActivityLogEntry.objects.get(reason="rollback_mirror_failure")
        assert rollback.requested_delta == -50
        assert rollback.delta == -10
        assert LedgerService.get_status("uid-007").balance == max(0, 10 - 50)


# ═══════════════════════════════════════════════════════════════════
# Invariants
# ═══════════════════════════════════════════════════════════════════


class TestInvariants:
    DELTAS = [150, -20, 400, -1000, 0, 60, 999, 4500, -3, -7000, 100]

    def test_sequence_keeps_ledger_mirror_and_log_consistent(self, principal, mirror):
        for delta in self.DELTAS:
            entries_before = ActivityLogEntry.objects.count()
            result = LedgerService.apply_delta("uid-001", delta, "purchase" if delta >= 0 else "redemption")

            account = PrincipalBalance.objects.get(principal_id="uid-001")
            assert account.points_balance >= 0
            assert account.points_balance == result.balance
            assert account.tier == tier_of(account.points_balance)

            snapshot = mirror.get_snapshot("uid-001")
            assert snapshot.points_balance == account.points_balance
            assert snapshot.tier == account.tier

            assert ActivityLogEntry.objects.count() == entries_before + 1
            latest = ActivityLogEntry.objects.first()
            assert latest.resulting_balance == result.balance
            assert latest.delta == result.delta

        assert LedgerService.verify("uid-001").is_consistent


# ═══════════════════════════════════════════════════════════════════
# Errors before commit
# ═══════════════════════════════════════════════════════════════════


class TestApplyDeltaErrors:
    def test_unknown_principal(self, mirror):
        with pytest.raises(TallymanError) as exc_info:
            LedgerService.apply_delta("ghost", 10, "purchase")

        assert exc_info.value.code == "PRINCIPAL_NOT_FOUND"
        assert exc_info.value.data["state"] == SyncState.LEDGER_COMMIT_FAILED.value
        assert mirror.get_snapshot("ghost") is None

    def test_ledger_commit_failure_skips_mirror(self, principal, flaky_mirror):
        backend = flaky_mirror()
        with patch.object(
            LedgerStore, "commit_delta", side_effect=TallymanError("LEDGER_COMMIT_FAILED")
        ):
            with pytest.raises(TallymanError) as exc_info:
                LedgerCoordinator(mirror_backend=backend).apply_delta("uid-001", 10, "purchase")

        assert exc_info.value.retryable
        assert backend.calls == 0

    @pytest.mark.parametrize("delta", [1.5, "10", None, True, 10**20, -(10**20), MAX_DELTA + 1])
    def test_invalid_delta(self, principal, delta):
        with pytest.raises(TallymanError, match="INVALID_DELTA"):
            LedgerService.apply_delta("uid-001", delta, "purchase")

    def test_missing_reason(self, principal):
        with pytest.raises(TallymanError, match="INVALID_REQUEST"):
            LedgerService.apply_delta("uid-001", 10, "")

    def test_metadata_must_be_mapping(self, principal):
        with pytest.raises(TallymanError, match="INVALID_REQUEST"):
            LedgerService.apply_delta("uid-001", 10, "purchase", metadata=["order"])


# ═══════════════════════════════════════════════════════════════════
# GetStatus
# ═══════════════════════════════════════════════════════════════════


class TestGetStatus:
    def test_status_with_next_tier(self, seed):
        seed("uid-008", 450)
        status = LedgerService.get_status("uid-008")
        assert status.balance == 450
        assert status.tier == "SILVER"
        assert status.discount_percent == 5
        assert status.next_tier == "GOLD"
        assert status.points_to_next_tier == 50

    def test_status_at_top_tier(self, seed):
        seed("uid-009", 7000)
        status = LedgerService.get_status("uid-009")
        assert status.tier == "DIAMOND"
        assert status.next_tier is None
        assert status.points_to_next_tier == 0
        assert status.as_dict()["nextTier"] is None

    def test_as_dict(self, seed):
        seed("uid-008", 0)
        assert LedgerService.get_status("uid-008").as_dict() == {
            "balance": 0,
            "tier": "BRONZE",
            "discountPercent": 0,
            "nextTier": "SILVER",
            "pointsToNextTier": 100,
        }

    def test_not_found(self):
        with pytest.raises(TallymanError, match="PRINCIPAL_NOT_FOUND"):
            LedgerService.get_status("ghost")


# ═══════════════════════════════════════════════════════════════════
# State machine
# ═══════════════════════════════════════════════════════════════════


class TestSyncRun:
    def _run(self):
        return SyncRun(principal_id="uid-001", delta=10, reason="purchase")

    def test_success_path(self):
        run = self._run()
        for state in (
            SyncState.COMMITTING_LEDGER,
            SyncState.LEDGER_COMMITTED,
            SyncState.SYNCING_MIRROR,
            SyncState.MIRROR_SYNCED,
        ):
            run.advance(state)
        assert run.finished
        assert run.history[0] == SyncState.IDLE
        assert run.history[-1] == SyncState.MIRROR_SYNCED

    def test_compensation_path(self):
        run = self._run()
        for state in (
            SyncState.COMMITTING_LEDGER,
            SyncState.LEDGER_COMMITTED,
            SyncState.SYNCING_MIRROR,
            SyncState.MIRROR_FAILED,
            SyncState.COMPENSATING,
            SyncState.COMPENSATION_FAILED_CRITICAL,
        ):
            run.advance(state)
        assert run.finished

    def test_cannot_skip_the_ledger(self):
        run = self._run()
        with pytest.raises(ValueError):
            run.advance(SyncState.SYNCING_MIRROR)

    def test_cannot_compensate_uncommitted(self):
        run = self._run()
        run.advance(SyncState.COMMITTING_LEDGER)
        run.advance(SyncState.LEDGER_COMMIT_FAILED)
        with pytest.raises(ValueError):
            run.advance(SyncState.COMPENSATING)

    def test_terminal_states(self):
        assert TERMINAL_STATES == {
            SyncState.LEDGER_COMMIT_FAILED,
            SyncState.MIRROR_SYNCED,
            SyncState.COMPENSATION_SUCCEEDED,
            SyncState.COMPENSATION_FAILED_CRITICAL,
        }


# ═══════════════════════════════════════════════════════════════════
# Notifier isolation
# ═══════════════════════════════════════════════════════════════════


class TestNotifier:
    def test_injected_notifier_receives_tier_change(self, seed, notifier):
        seed("uid-010", 450)
        LedgerCoordinator(notifier=notifier).apply_delta("uid-010", 60, "bonus")
        assert notifier.calls == [("uid-010", "GOLD", 10)]

    def test_notifier_failure_does_not_change_result(self, seed, notifier, caplog):
        seed("uid-010", 450)
        notifier.fail = True
        result = LedgerCoordinator(notifier=notifier).apply_delta("uid-010", 60, "bonus")

        assert result.tier == "GOLD"
        assert LedgerService.get_status("uid-010").balance == 510
        assert notifier.calls == [("uid-010", "GOLD", 10)]
        assert "Tier-change notification failed" in caplog.text

    def test_downgrade_notifies_too(self, seed, notifier):
        seed("uid-010", 520)
        LedgerCoordinator(notifier=notifier).apply_delta("uid-010", -30, "redemption")
        assert notifier.calls == [("uid-010", Tier.SILVER.value, 5)]

    def test_async_dispatch_does_not_block(self, settings, notifier):
        settings.TALLYMAN = {**settings.TALLYMAN, "NOTIFY_ASYNC": True}
        try:
            future = notifications.dispatch_tier_change("uid-011", Tier.GOLD, 10, notifier=notifier)
            assert future is not None
            assert future.result(timeout=5) is True
        finally:
            notifications.shutdown()
        assert notifier.calls == [("uid-011", "GOLD", 10)]

    def test_disabled_notifier(self, settings):
        settings.TALLYMAN = {**settings.TALLYMAN, "NOTIFIER_BACKEND": ""}
        assert notifications.get_notifier() is None
        assert notifications.dispatch_tier_change("uid-011", Tier.GOLD, 10) is None


# ═══════════════════════════════════════════════════════════════════
# Transactions
# ═══════════════════════════════════════════════════════════════════


@pytest.mark.django_db(transaction=True)
class TestOuterTransaction:
    def test_refused_inside_atomic_block(self, mirror):
        LedgerService.provision("uid-020")

        with transaction.atomic():
            with pytest.raises(TallymanError) as exc_info:
                LedgerService.apply_delta("uid-020", 150, "purchase")

        err = exc_info.value
        assert err.code == "INVALID_REQUEST"
        assert err.data["state"] == SyncState.LEDGER_COMMIT_FAILED.value
        assert not err.retryable
        assert LedgerService.get_status("uid-020").balance == 0
        assert not ActivityLogEntry.objects.exists()
        assert mirror.get_snapshot("uid-020") is None

    def test_outer_rollback_leaves_ledger_and_mirror_aligned(self, mirror):
        LedgerService.provision("uid-020")

        with pytest.raises(TallymanError):
            with transaction.atomic():
                LedgerService.apply_delta("uid-020", 150, "purchase")
                raise RuntimeError("checkout failed")

        assert LedgerService.get_status("uid-020").balance == 0
        assert mirror.get_snapshot("uid-020") is None
        assert LedgerService.verify("uid-020").is_consistent

    def test_outside_any_transaction_commits(self, mirror):
        LedgerService.provision("uid-020")
        result = LedgerService.apply_delta("uid-020", 150, "purchase")

        assert result.balance == 150
        assert mirror.get_snapshot("uid-020").points_balance == 150
        assert LedgerService.verify("uid-020").is_consistent


@pytest.mark.skipif(
    connection.vendor != "postgresql",
    reason="row locks need PostgreSQL (TALLYMAN_TEST_DB=postgres)",
)
@pytest.mark.django_db(transaction=True)
class TestConcurrentCallers:
    DELTAS = [150, -40, 300, -500, 75, 20, -10, 600, -90, 5, 250, -1000, 40, 999, -3, 60]

    def test_same_principal_calls_serialize(self, mirror):
        LedgerService.provision("uid-030")
        barrier = threading.Barrier(len(self.DELTAS))
        errors = []

        def worker(delta):
            try:
                barrier.wait()
                LedgerService.apply_delta("uid-030", delta, "purchase" if delta >= 0 else "redemption")
            except Exception as exc:
                errors.append(exc)
            finally:
                connections.close_all()

        threads = [threading.Thread(target=worker, args=(delta,)) for delta in self.DELTAS]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert errors == []
        entries = list(ActivityLogEntry.objects.filter(account__principal_id="uid-030").order_by("id"))
        assert len(entries) == len(self.DELTAS)
        assert sorted(e.requested_delta for e in entries) == sorted(self.DELTAS)

        # Each commit saw the previous one: replaying the requested deltas
        # in commit order reproduces every stored balance.
        running = 0
        for entry in entries:
            running = max(0, running + entry.requested_delta)
            assert entry.resulting_balance == running

        balance = LedgerService.get_status("uid-030").balance
        assert balance == fold_balance(e.delta for e in entries)
        assert balance == fold_balance(e.requested_delta for e in entries)
        assert LedgerService.verify("uid-030").is_consistent
