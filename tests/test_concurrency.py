"""
Concurrent operations against one store

Operations racing for the same balance or the same request must never
overdraw, double-credit or leave the ledger inconsistent.
"""

import sqlite3
import tempfile
import threading
from pathlib import Path

import pytest

from easy_cash.config import EasyCashConfig
from easy_cash.storage import InMemoryStorage, SQLiteStorage, StorageUnavailableError
from easy_cash.accounts import AccountRole, AccountStatus
from easy_cash.collaborators import Actor, StaticPinVerifier
from easy_cash.results import RejectionReason, ErrorCategory
from easy_cash.system import EasyCashSystem


def run_concurrently(target, count):
    """Start ``count`` threads on ``target`` together and collect the results"""
    results = []
    results_lock = threading.Lock()
    start = threading.Barrier(count)

    def worker():
        start.wait()
        result = target()
        with results_lock:
            results.append(result)

    threads = [threading.Thread(target=worker) for _ in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return results


@pytest.fixture(params=["memory", "sqlite"])
def system(request, tmp_path):
    if request.param == "memory":
        storage = InMemoryStorage()
    else:
        storage = SQLiteStorage(tmp_path / "concurrency.db")

    system = EasyCashSystem.create(
        config=EasyCashConfig(),
        pin_verifier=StaticPinVerifier({"agent@example.com": "1111"}),
        storage=storage
    )
    system.accounts.bootstrap_admin("admin@easycash.com", "01700000000", "1000000000")
    system.accounts.open_account("alice@example.com", "01711111111", "2000000001", "Alice", AccountRole.USER)
    system.accounts.open_account("bob@example.com", "01722222222", "2000000002", "Bob", AccountRole.USER)
    system.accounts.open_account("agent@example.com", "01811111111", "3000000001", "Agent", AccountRole.AGENT)
    system.accounts.set_status("agent@example.com", AccountStatus.APPROVED)
    yield system
    system.close()


class TestConcurrentTransfers:
    """Races on a single balance"""

    def test_racing_sends_never_overdraw(self, system):
        agent = Actor("agent@example.com", AccountRole.AGENT)
        alice = Actor("alice@example.com", AccountRole.USER)
        # Alice holds exactly enough for one transfer of 100 plus fee
        assert system.engine.cash_in(agent, "01711111111", 65, "1111").success

        results = run_concurrently(lambda: system.engine.send_money(alice, "01722222222", 100), 10)

        succeeded = [r for r in results if r.success]
        assert len(succeeded) == 1
        assert all(r.reason == RejectionReason.INSUFFICIENT_BALANCE for r in results if not r.success)
        assert system.accounts.get_account("alice@example.com").balance == 0
        assert system.accounts.get_account("bob@example.com").balance == 140
        assert system.report.check_consistency()['valid']

    def test_parallel_transfers_in_both_directions(self, system):
        alice = Actor("alice@example.com", AccountRole.USER)
        bob = Actor("bob@example.com", AccountRole.USER)

        def ping_pong():
            outcomes = []
            for _ in range(10):
                outcomes.append(system.engine.send_money(alice, "01722222222", 3))
                outcomes.append(system.engine.send_money(bob, "01711111111", 3))
            return outcomes

        batches = run_concurrently(ping_pong, 4)

        completed = sum(1 for batch in batches for r in batch if r.success)
        assert system.ledger.count() == completed
        report = system.report.check_consistency()
        assert report['valid'], report
        snapshot = system.report.snapshot()
        assert snapshot['user_balance'] == 80


class TestConcurrentApprovals:
    """Races on a single pending request"""

    def test_request_is_approved_once(self, system):
        admin = Actor("admin@easycash.com", AccountRole.ADMIN)
        agent = Actor("agent@example.com", AccountRole.AGENT)
        request_id = system.engine.request_money(agent).request_id

        results = run_concurrently(
            lambda: system.engine.approve_money_request(admin, request_id, "agent@example.com"), 8
        )

        assert sum(1 for r in results if r.success) == 1
        assert all(r.reason == RejectionReason.STATE_CONFLICT for r in results if not r.success)
        assert system.accounts.get_account("agent@example.com").balance == 200000
        assert system.report.check_consistency()['valid']

    def test_withdrawals_cannot_overdraw_agent(self, system):
        admin = Actor("admin@easycash.com", AccountRole.ADMIN)
        agent = Actor("agent@example.com", AccountRole.AGENT)
        request_ids = [system.engine.withdraw_request(agent, 60000).request_id for _ in range(2)]

        def approve(request_id):
            return system.engine.approve_withdraw_request(admin, request_id, "agent@example.com", 60000)

        barrier = threading.Barrier(2)
        results = []

        def worker(request_id):
            barrier.wait()
            results.append(approve(request_id))

        threads = [threading.Thread(target=worker, args=(rid,)) for rid in request_ids]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sum(1 for r in results if r.success) == 1
        assert [r.reason for r in results if not r.success] == [RejectionReason.INSUFFICIENT_BALANCE]
        assert system.accounts.get_account("agent@example.com").balance == 40000
        assert system.report.check_consistency()['valid']


class TestStoreFailures:
    """Lock contention and outages seen through the engine"""

    def setup_method(self):
        self.tmp_dir = tempfile.TemporaryDirectory()
        self.db_path = Path(self.tmp_dir.name) / "contended.db"
        self.system = EasyCashSystem.create(
            config=EasyCashConfig(),
            storage=SQLiteStorage(self.db_path, timeout=0.1)
        )
        self.system.accounts.bootstrap_admin("admin@easycash.com", "01700000000", "1000000000")
        self.system.accounts.open_account("alice@example.com", "01711111111", "2000000001", "Alice", AccountRole.USER)
        self.system.accounts.open_account("bob@example.com", "01722222222", "2000000002", "Bob", AccountRole.USER)
        self.alice = Actor("alice@example.com", AccountRole.USER)

    def teardown_method(self):
        self.system.close()
        self.tmp_dir.cleanup()

    def test_lock_contention_is_a_concurrency_conflict(self):
        other = sqlite3.connect(str(self.db_path), isolation_level=None)
        try:
            other.execute("BEGIN IMMEDIATE")
            result = self.system.engine.send_money(self.alice, "01722222222", 10)
        finally:
            other.execute("ROLLBACK")
            other.close()

        assert not result.success
        assert result.reason == RejectionReason.CONCURRENCY_CONFLICT
        assert result.category == ErrorCategory.CONCURRENCY_CONFLICT
        assert self.system.accounts.get_account("alice@example.com").balance == 40
        assert self.system.ledger.count() == 0

        # The writer is gone, so the same call now goes through
        assert self.system.engine.send_money(self.alice, "01722222222", 10).success

    def test_storage_outage_propagates(self):
        self.system.storage.close()

        with pytest.raises(StorageUnavailableError):
            self.system.engine.send_money(self.alice, "01722222222", 10)
