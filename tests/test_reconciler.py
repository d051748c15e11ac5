import asyncio
import unittest

from txbench.constants import FailReason, TxState
from txbench.models import MempoolTx, SentTransaction, TransactionIntent
from txbench.reconciler import MempoolReconciler
from txbench.registry import WalletRegistry

from tests.fakes import FakeKeyStore, FakeNode, make_keys, wallet


def accepted_tx(tx_hash, *, nonce=0, sender=None, at=100.0):
    intent = TransactionIntent(sender=sender or wallet("PK0"), recipient="PK1", amount=1, fee=10, nonce=nonce)
    tx = SentTransaction(intent=intent)
    tx.accept(tx_hash, at=at)
    return tx


class TestReconcile(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.now = 100.0
        self.node = FakeNode()
        self.reconciler = MempoolReconciler(self.node, deadline=60.0, clock=lambda: self.now)

    async def test_included_is_confirmed(self):
        tx = accepted_tx("A")
        self.reconciler.track(tx)
        report = await self.reconciler.reconcile([], [MempoolTx("A", ledger_index=7)])
        self.assertEqual(tx.status, TxState.CONFIRMED)
        self.assertEqual(tx.finalized_at, 100.0)
        self.assertEqual(report.confirmed, ("A",))

    async def test_pending_stays_accepted_past_deadline(self):
        tx = accepted_tx("A")
        self.reconciler.track(tx)
        self.now = 500.0
        report = await self.reconciler.reconcile([MempoolTx("A")], [])
        self.assertEqual(tx.status, TxState.ACCEPTED)
        self.assertEqual(report.awaiting, ("A",))
        self.assertEqual(report.timed_out, ())

    async def test_missing_before_deadline(self):
        tx = accepted_tx("A")
        self.reconciler.track(tx)
        self.now = 159.0
        report = await self.reconciler.reconcile([], [])
        self.assertEqual(tx.status, TxState.ACCEPTED)
        self.assertEqual(report.missing, ("A",))

    async def test_missing_after_deadline_times_out(self):
        tx = accepted_tx("A")
        self.reconciler.track(tx)
        self.now = 160.0
        report = await self.reconciler.reconcile([], [])
        self.assertEqual((tx.status, tx.reason), (TxState.FAILED, FailReason.TIMEOUT))
        self.assertEqual(report.timed_out, ("A",))
        self.assertEqual(report.missing, ())

    async def test_reconcile_is_idempotent(self):
        a, b, c = accepted_tx("A"), accepted_tx("B"), accepted_tx("C", at=50.0)
        for tx in (a, b, c):
            self.reconciler.track(tx)
        pending, included = [MempoolTx("B"), MempoolTx("X")], [MempoolTx("A")]

        first = await self.reconciler.reconcile(pending, included)
        statuses = [(t.status, t.reason, t.finalized_at) for t in (a, b, c)]
        self.now = 105.0
        second = await self.reconciler.reconcile(pending, included)

        self.assertEqual(first, second)
        self.assertEqual([(t.status, t.reason, t.finalized_at) for t in (a, b, c)], statuses)

    async def test_terminal_transactions_are_not_revisited(self):
        tx = accepted_tx("A")
        self.reconciler.track(tx)
        self.now = 200.0
        await self.reconciler.reconcile([], [])
        report = await self.reconciler.reconcile([], [MempoolTx("A")])
        self.assertEqual(tx.status, TxState.FAILED)
        self.assertEqual(report.late_included, ("A",))
        self.assertEqual(report.confirmed, ())

    async def test_late_inclusion_of_expired_transaction(self):
        expired, fresh = accepted_tx("A", at=10.0), accepted_tx("B")
        self.reconciler.track(expired)
        self.reconciler.track(fresh)
        first = await self.reconciler.reconcile([], [])
        self.assertEqual(first.timed_out, ("A",))
        self.assertEqual(first.late_included, ())

        report = await self.reconciler.reconcile([MempoolTx("A")], [MempoolTx("A"), MempoolTx("B")])

        self.assertEqual(report.late_included, ("A",))
        self.assertEqual(report.confirmed, ("B",))
        self.assertEqual(report.duplicates, ("A",))
        self.assertEqual((expired.status, expired.reason), (TxState.FAILED, FailReason.TIMEOUT))

    async def test_duplicates_are_reported(self):
        report = await self.reconciler.reconcile([MempoolTx("D")], [MempoolTx("D"), MempoolTx("E")])
        self.assertEqual(report.duplicates, ("D",))
        self.assertEqual(len(report.pending), 1)
        self.assertEqual(len(report.included), 2)

    async def test_track_requires_hash(self):
        intent = TransactionIntent(sender=wallet(), recipient="PK1", amount=1, fee=10, nonce=0)
        with self.assertRaises(ValueError):
            self.reconciler.track(SentTransaction(intent=intent))

    async def test_stats_and_clear(self):
        self.reconciler.track(accepted_tx("A"))
        self.reconciler.track(accepted_tx("B"))
        await self.reconciler.reconcile([], [MempoolTx("A")])
        stats = self.reconciler.stats()
        self.assertEqual(stats["total_tracked"], 2)
        self.assertEqual(stats["CONFIRMED"], 1)
        self.assertEqual(stats["ACCEPTED"], 1)
        self.reconciler.clear()
        self.assertEqual(self.reconciler.tracked(), [])
        self.assertIsNone(self.reconciler.last_report)


class TestReconcileWithRegistry(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.now = 100.0
        self.node = FakeNode({"PK0": (1_000, 3)})
        self.registry = WalletRegistry(self.node, FakeKeyStore(make_keys(1)))
        await self.registry.load(initial=True)
        self.reconciler = MempoolReconciler(self.node, registry=self.registry, deadline=60.0, clock=lambda: self.now)

    async def test_confirmation_moves_nonce_forward(self):
        sender = self.registry.get("PK0")
        self.reconciler.track(accepted_tx("A", nonce=7, sender=sender))
        await self.reconciler.reconcile([], [MempoolTx("A")])
        self.assertEqual(self.registry.get("PK0").nonce, 8)

    async def test_timeout_refreshes_sender(self):
        sender = self.registry.get("PK0")
        self.reconciler.track(accepted_tx("A", nonce=3, sender=sender))
        self.now = 161.0
        await self.reconciler.reconcile([], [])
        self.assertEqual(self.node.fetches["PK0"], 2)

    async def test_timeout_resets_sequence_to_node(self):
        sender = self.registry.get("PK0")
        for _ in range(3):
            await self.registry.alloc_nonce("PK0")
        self.reconciler.track(accepted_tx("A", nonce=3, sender=sender))
        self.assertEqual(self.registry.get("PK0").nonce, 6)

        self.now = 161.0
        report = await self.reconciler.reconcile([], [])

        self.assertEqual(report.timed_out, ("A",))
        self.assertEqual(self.registry.get("PK0").nonce, 3)


class TestReconcilerLoop(unittest.IsolatedAsyncioTestCase):
    async def test_poll_reads_node(self):
        node = FakeNode()
        node.pending = [MempoolTx("A")]
        node.included = [MempoolTx("B")]
        reconciler = MempoolReconciler(node)
        tx = accepted_tx("B")
        reconciler.track(tx)
        report = await reconciler.poll()
        self.assertEqual(tx.status, TxState.CONFIRMED)
        self.assertEqual([t.tx_hash for t in report.pending], ["A"])
        self.assertIs(reconciler.last_report, report)

    async def test_run_survives_poll_errors(self):
        node = FakeNode()
        node.poll_errors = [ConnectionError("node down")]
        reconciler = MempoolReconciler(node)
        stop = asyncio.Event()
        reports = []

        task = asyncio.create_task(reconciler.run(stop, interval=0.01, on_report=reports.append))
        for _ in range(200):
            if len(reports) >= 2:
                break
            await asyncio.sleep(0.005)
        stop.set()
        reconciler.request_poll()
        await asyncio.wait_for(task, timeout=1)

        self.assertGreaterEqual(len(reports), 2)
        self.assertGreaterEqual(node.polls, 3)


if __name__ == "__main__":
    unittest.main()
