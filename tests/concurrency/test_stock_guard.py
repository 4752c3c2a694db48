"""
StockGuard tests.

Verifies:
- Keyed locks are reentrant and exclude other threads
- A close waits for postings holding the period gate
- Lock and gate entries are dropped once nothing holds or awaits them
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from apparel_kernel.exceptions import ConcurrencyConflictError
from apparel_kernel.services.stock_guard import StockGuard


@pytest.fixture
def guard():
    return StockGuard(timeout_seconds=0.2)


def _in_other_thread(fn):
    with ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(fn).result()


class TestKeyedLocks:

    def test_reentrant_for_the_holding_thread(self, guard):
        with guard.hold(["stock:A"]):
            with guard.hold(["stock:A", "stock:B"]):
                assert guard.tracked() == 2

    def test_other_thread_times_out(self, guard):
        def contend():
            with pytest.raises(ConcurrencyConflictError) as exc_info:
                with guard.hold(["stock:A"]):
                    pass
            return exc_info.value.resource

        with guard.hold(["stock:A"]):
            assert _in_other_thread(contend) == "stock:A"


class TestPeriodGate:

    def test_close_waits_for_posting(self, guard):
        posting_in = threading.Event()
        release = threading.Event()

        def post():
            with guard.posting_gate("acme", "2026-01"):
                posting_in.set()
                release.wait(timeout=5)

        with ThreadPoolExecutor(max_workers=1) as pool:
            pending = pool.submit(post)
            posting_in.wait(timeout=5)
            with pytest.raises(ConcurrencyConflictError):
                with guard.closing_gate("acme", "2026-01"):
                    pass
            release.set()
            pending.result()

        with guard.closing_gate("acme", "2026-01"):
            assert guard.tracked() == 1


class TestRegistryCleanup:

    def test_entries_dropped_after_release(self, guard):
        for n in range(50):
            with guard.hold([f"production_order:MO-{n}", f"stock:WIP-{n}"]), \
                    guard.posting_gate("acme", f"period-{n}"):
                assert guard.tracked() == 3

        assert guard.tracked() == 0

    def test_entries_dropped_after_timeout(self, guard):
        def contend():
            with pytest.raises(ConcurrencyConflictError):
                with guard.hold(["stock:A"]):
                    pass

        with guard.hold(["stock:A"]):
            _in_other_thread(contend)
            assert guard.tracked() == 1

        assert guard.tracked() == 0
