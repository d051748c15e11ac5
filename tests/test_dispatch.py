import asyncio
import unittest

from txbench.constants import FailReason, TxState
from txbench.dispatch import DispatchPipeline
from txbench.errors import NodeRejected, StaleSequence, TransportError
from txbench.models import TransactionIntent
from txbench.registry import WalletRegistry

from tests.fakes import FakeKeyStore, FakeNode, FakeSigner, make_keys, tx_hash_for, wallet


def intents_for(sender, nonces):
    return [TransactionIntent(sender=sender, recipient="PK1", amount=1, fee=10, nonce=n) for n in nonces]


async def wait_until(pred, tries=200):
    for _ in range(tries):
        if pred():
            return
        await asyncio.sleep(0.005)
    raise AssertionError("condition never became true")


class TestDispatchPipeline(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.node = FakeNode()
        self.sender = wallet("PK0", nonce=10)
        self.accepted = []
        self.pipeline = DispatchPipeline(self.node, FakeSigner(), on_accepted=self.accepted.append)

    async def test_all_accepted(self):
        summary = await self.pipeline.dispatch(intents_for(self.sender, [10, 11, 12]))
        self.assertEqual([t.intent.nonce for t in summary.accepted], [10, 11, 12])
        self.assertEqual(summary.failed, [])
        self.assertIsNone(summary.error)
        self.assertEqual({t.status for t in summary.accepted}, {TxState.ACCEPTED})
        self.assertEqual(len(self.accepted), 3)

    async def test_transport_error_fails_only_that_transaction(self):
        self.node.errors[tx_hash_for("PK0", 11)] = TransportError("connection reset")

        summary = await self.pipeline.dispatch(intents_for(self.sender, [10, 11, 12]))

        self.assertEqual([t.intent.nonce for t in summary.accepted], [10, 12])
        self.assertEqual(len(summary.failed), 1)
        failed = summary.failed[0]
        self.assertEqual((failed.status, failed.reason), (TxState.FAILED, FailReason.TRANSPORT))
        self.assertIn("connection reset", failed.error)
        self.assertEqual(summary.error.counts, {FailReason.TRANSPORT: 1})
        self.assertFalse(summary.error.all_failed)
        self.assertEqual([t.intent.nonce for t in self.accepted], [10, 12])

    async def test_every_intent_is_reported_once(self):
        self.node.errors[tx_hash_for("PK0", 10)] = NodeRejected("temBAD_FEE", engine_result="temBAD_FEE")
        seen = [tx async for tx in self.pipeline.send(intents_for(self.sender, range(10, 18)))]
        self.assertEqual(sorted(t.intent.nonce for t in seen), list(range(10, 18)))
        self.assertTrue(all(t.status in (TxState.ACCEPTED, TxState.FAILED) for t in seen))

    async def test_rejected(self):
        self.node.errors[tx_hash_for("PK0", 10)] = NodeRejected("temBAD_FEE", engine_result="temBAD_FEE")
        summary = await self.pipeline.dispatch(intents_for(self.sender, [10]))
        self.assertEqual(summary.failed[0].reason, FailReason.REJECTED)
        self.assertTrue(summary.error.all_failed)
        self.assertEqual(self.accepted, [])

    async def test_signing_failure_never_reaches_node(self):
        pipeline = DispatchPipeline(self.node, FakeSigner(fail_nonces={11}))
        summary = await pipeline.dispatch(intents_for(self.sender, [10, 11]))
        self.assertEqual(summary.failed[0].reason, FailReason.SIGNING)
        self.assertEqual([s.tx_hash for s in self.node.submitted], [tx_hash_for("PK0", 10)])

    async def test_submit_timeout(self):
        self.node.gates[tx_hash_for("PK0", 10)] = asyncio.Event()
        pipeline = DispatchPipeline(self.node, FakeSigner(), submit_timeout=0.05)
        summary = await pipeline.dispatch(intents_for(self.sender, [10]))
        self.assertEqual(summary.failed[0].reason, FailReason.TRANSPORT)
        self.assertEqual(summary.failed[0].error, "timeout")

    async def test_unexpected_error_is_a_transport_failure(self):
        self.node.errors[tx_hash_for("PK0", 10)] = RuntimeError("boom")
        summary = await self.pipeline.dispatch(intents_for(self.sender, [10]))
        self.assertEqual(summary.failed[0].reason, FailReason.TRANSPORT)
        self.assertEqual(summary.failed[0].error, "RuntimeError: boom")

    async def test_stale_sequence_refreshes_sender(self):
        node = FakeNode({"PK0": (1_000, 10)})
        registry = WalletRegistry(node, FakeKeyStore(make_keys(1)))
        await registry.load(initial=True)
        sender = registry.get("PK0")
        node.errors[tx_hash_for("PK0", 10)] = StaleSequence("tefPAST_SEQ", engine_result="tefPAST_SEQ")
        node.states["PK0"] = (1_000, 20)
        pipeline = DispatchPipeline(node, FakeSigner(), registry=registry)

        summary = await pipeline.dispatch(intents_for(sender, [10, 11]))

        self.assertEqual(summary.failed[0].reason, FailReason.STALE_SEQUENCE)
        self.assertEqual(node.fetches["PK0"], 2)
        self.assertEqual(registry.get("PK0").nonce, 20)

    async def test_sequence_gap_is_refilled_from_node(self):
        node = FakeNode({"PK0": (1_000, 10)})
        registry = WalletRegistry(node, FakeKeyStore(make_keys(1)))
        await registry.load(initial=True)
        sender = registry.get("PK0")
        start = await registry.alloc_nonce("PK0", 5)
        node.errors[tx_hash_for("PK0", 10)] = TransportError("connection reset")
        for n in range(11, 15):
            node.errors[tx_hash_for("PK0", n)] = StaleSequence("terPRE_SEQ", engine_result="terPRE_SEQ")
        pipeline = DispatchPipeline(node, FakeSigner(), registry=registry)

        summary = await pipeline.dispatch(intents_for(sender, range(start, start + 5)))

        self.assertEqual(summary.error.counts, {FailReason.TRANSPORT: 1, FailReason.STALE_SEQUENCE: 4})
        self.assertEqual(registry.get("PK0").nonce, 10)
        self.assertEqual(await registry.alloc_nonce("PK0", 5), 10)

    async def test_closed_pipeline_submits_nothing(self):
        self.pipeline.cancel()
        summary = await self.pipeline.dispatch(intents_for(self.sender, range(10, 13)))
        self.assertEqual(self.node.submitted, [])
        self.assertEqual([t.reason for t in summary.failed], [FailReason.CANCELLED] * 3)
        self.assertEqual(self.accepted, [])

        self.pipeline.reopen()
        summary = await self.pipeline.dispatch(intents_for(self.sender, [13]))
        self.assertEqual(len(summary.accepted), 1)
        self.assertEqual(len(self.node.submitted), 1)

    async def test_bounded_concurrency(self):
        node = FakeNode(delay=0.01)
        pipeline = DispatchPipeline(node, FakeSigner(), concurrency=2)
        summary = await pipeline.dispatch(intents_for(self.sender, range(10, 16)))
        self.assertEqual(len(summary.accepted), 6)
        self.assertEqual(node.max_active, 2)

    async def test_invalid_concurrency(self):
        with self.assertRaises(ValueError):
            DispatchPipeline(self.node, FakeSigner(), concurrency=0)

    async def test_cancel_mid_batch(self):
        for n in (13, 14):
            self.node.gates[tx_hash_for("PK0", n)] = asyncio.Event()

        task = asyncio.create_task(self.pipeline.dispatch(intents_for(self.sender, range(10, 15))))
        await wait_until(lambda: len(self.accepted) == 3 and len(self.node.submitted) == 5)
        self.assertEqual(self.pipeline.in_flight, 2)

        self.assertEqual(self.pipeline.cancel(), 2)
        summary = await task

        self.assertEqual([t.intent.nonce for t in summary.accepted], [10, 11, 12])
        self.assertEqual([t.intent.nonce for t in summary.failed], [13, 14])
        self.assertEqual({t.reason for t in summary.failed}, {FailReason.CANCELLED})
        self.assertEqual(summary.error.counts, {FailReason.CANCELLED: 2})
        self.assertEqual(self.pipeline.in_flight, 0)

    async def test_cancel_before_tasks_start(self):
        task = asyncio.create_task(self.pipeline.dispatch(intents_for(self.sender, range(10, 13))))
        await asyncio.sleep(0)  # dispatch has created its submit tasks, none has run yet
        self.assertEqual(self.pipeline.cancel(), 3)
        summary = await task
        self.assertEqual(summary.accepted, [])
        self.assertEqual([t.reason for t in summary.failed], [FailReason.CANCELLED] * 3)
        self.assertEqual(self.node.submitted, [])


if __name__ == "__main__":
    unittest.main()
