import asyncio
import logging
import time
from collections import Counter
from collections.abc import AsyncIterator, Callable

import txbench.constants as C
from txbench.constants import FailReason, TxState
from txbench.errors import BatchError, NodeRejected, SigningError, StaleSequence, TransportError
from txbench.models import BatchSummary, SentTransaction, TransactionIntent
from txbench.node import NodeClient, Signer
from txbench.registry import WalletRegistry

log = logging.getLogger("txbench.dispatch")


class DispatchPipeline:
    """Signs and submits intents concurrently, one outcome per intent.

    Submissions are capped by a semaphore and never retried: the point of
    the benchmark is the first-attempt outcome. Accepted transactions are
    handed to ``on_accepted`` (the reconciler) as soon as the node takes them.
    """

    def __init__(
        self,
        node: NodeClient,
        signer: Signer,
        *,
        registry: WalletRegistry | None = None,
        on_accepted: Callable[[SentTransaction], None] | None = None,
        concurrency: int = C.SUBMIT_CONCURRENCY,
        submit_timeout: float = C.SUBMIT_TIMEOUT,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.node = node
        self.signer = signer
        self.registry = registry
        self.on_accepted = on_accepted
        self.submit_timeout = submit_timeout
        self._sem = asyncio.Semaphore(concurrency)
        self._tasks: set[asyncio.Task] = set()
        self.closed = False

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def _submit_one(self, tx: SentTransaction, stale: set[str]) -> None:
        async with self._sem:
            try:
                signed = self.signer.sign(tx.intent, tx.intent.sender.private_key)
            except SigningError as e:
                log.warning("Signing failed for %s: %s", tx, e)
                tx.fail(FailReason.SIGNING, str(e))
                return
            tx.tx_hash = signed.tx_hash
            tx.submitted_at = time.time()

            try:
                tx_hash = await asyncio.wait_for(self.node.submit_transaction(signed), timeout=self.submit_timeout)
            except StaleSequence as e:
                log.warning("Stale sequence: %s (%s) - refreshing from node", tx, e.engine_result or e)
                tx.fail(FailReason.STALE_SEQUENCE, str(e))
                stale.add(tx.sender)
            except NodeRejected as e:
                log.warning("REJECTED: %s %s", tx, e)
                tx.fail(FailReason.REJECTED, str(e))
            except (TransportError, asyncio.TimeoutError) as e:
                log.error("submit error tx=%s: %s", tx.tx_hash, str(e) or "timeout")
                tx.fail(FailReason.TRANSPORT, str(e) or "timeout")
            except Exception as e:
                log.exception("Unexpected submit failure tx=%s", tx.tx_hash)
                tx.fail(FailReason.TRANSPORT, f"{type(e).__name__}: {e}")
            else:
                if tx.accept(tx_hash) and self.on_accepted is not None:
                    self.on_accepted(tx)

    async def send(self, intents: list[TransactionIntent]) -> AsyncIterator[SentTransaction]:
        """Yield each transaction once it is ACCEPTED or FAILED, in completion order."""
        if self.closed:
            log.info("Pipeline closed; %d intents reported cancelled without submitting", len(intents))
            for intent in intents:
                tx = SentTransaction(intent=intent)
                tx.fail(FailReason.CANCELLED, "session closed before submission")
                yield tx
            return

        done: asyncio.Queue[SentTransaction] = asyncio.Queue()
        stale: set[str] = set()

        def _finished(task: asyncio.Task, tx: SentTransaction) -> None:
            self._tasks.discard(task)
            if task.cancelled():
                # Also covers tasks cancelled before their first step ran.
                if tx.status == TxState.SUBMITTED:
                    tx.fail(FailReason.CANCELLED, "cancelled before the node answered")
            elif (exc := task.exception()) is not None:
                tx.fail(FailReason.TRANSPORT, f"{type(exc).__name__}: {exc}")
            done.put_nowait(tx)

        tasks = []
        for intent in intents:
            tx = SentTransaction(intent=intent)
            t = asyncio.create_task(self._submit_one(tx, stale), name=f"submit-{intent.sender.public_key[:8]}-{intent.nonce}")
            t.add_done_callback(lambda task, tx=tx: _finished(task, tx))
            self._tasks.add(t)
            tasks.append(t)

        try:
            for _ in range(len(tasks)):
                yield await done.get()
        finally:
            for t in tasks:
                if not t.done():
                    t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        if stale and self.registry is not None:
            try:
                await self.registry.resync(sorted(stale))
            except Exception:
                log.exception("Sequence resync after stale sequence failed")

    async def dispatch(self, intents: list[TransactionIntent]) -> BatchSummary:
        """Run a whole batch and summarize its submit-stage outcomes."""
        order = {id(i): n for n, i in enumerate(intents)}
        summary = BatchSummary()
        async for tx in self.send(intents):
            (summary.failed if tx.status == TxState.FAILED else summary.accepted).append(tx)

        summary.accepted.sort(key=lambda t: order[id(t.intent)])
        summary.failed.sort(key=lambda t: order[id(t.intent)])
        if summary.failed:
            summary.error = BatchError(Counter(t.reason for t in summary.failed), len(intents))
            log.warning("Batch of %d: %d accepted, %s", len(intents), len(summary.accepted), summary.error)
        else:
            log.info("Batch of %d: all accepted", len(intents))
        return summary

    def cancel(self) -> int:
        """Cancel every outstanding submission and refuse new ones until
        ``reopen``. Returns how many were cancelled."""
        self.closed = True
        pending = [t for t in self._tasks if not t.done()]
        for t in pending:
            t.cancel()
        if pending:
            log.info("Cancelling %d in-flight submissions", len(pending))
        return len(pending)

    def reopen(self) -> None:
        self.closed = False
