import asyncio
import logging
import time
from collections import Counter
from collections.abc import Callable

import txbench.constants as C
from txbench.constants import FailReason, TxState
from txbench.errors import ReconciliationTimeout
from txbench.models import MempoolTx, ReconciliationReport, SentTransaction
from txbench.node import NodeClient
from txbench.registry import WalletRegistry

log = logging.getLogger("txbench.reconciler")


class MempoolReconciler:
    """Compares accepted transactions against the node's pending and included sets.

    An accepted transaction that shows up in the included set is CONFIRMED;
    one that is in neither set once ``deadline`` seconds have passed since
    acceptance is FAILED(timeout). Terminal statuses are never revisited, so
    polling the same node snapshot twice changes nothing.
    """

    def __init__(
        self,
        node: NodeClient,
        *,
        registry: WalletRegistry | None = None,
        deadline: float = C.CONFIRMATION_DEADLINE,
        clock: Callable[[], float] = time.time,
    ):
        self.node = node
        self.registry = registry
        self.deadline = deadline
        self.clock = clock
        self.last_report: ReconciliationReport | None = None
        self._tracked: dict[str, SentTransaction] = {}
        self._poll_lock = asyncio.Lock()
        self._wake = asyncio.Event()

    def track(self, tx: SentTransaction) -> None:
        if tx.tx_hash is None:
            raise ValueError(f"cannot track a transaction without a hash: {tx}")
        self._tracked[tx.tx_hash] = tx

    def tracked(self) -> list[SentTransaction]:
        return list(self._tracked.values())

    def stats(self) -> dict[str, int]:
        by_state = Counter(
            f"{tx.status}({tx.reason})" if tx.reason else str(tx.status) for tx in self._tracked.values()
        )
        return {"total_tracked": len(self._tracked), **by_state}

    def clear(self) -> None:
        self._tracked.clear()
        self.last_report = None

    async def poll(self) -> ReconciliationReport:
        async with self._poll_lock:
            pending, included = await asyncio.gather(
                self.node.get_pending_transactions(),
                self.node.get_included_transactions(),
            )
            return await self.reconcile(pending, included)

    async def reconcile(self, pending: list[MempoolTx], included: list[MempoolTx]) -> ReconciliationReport:
        now = self.clock()
        pending_hashes = {t.tx_hash for t in pending}
        included_hashes = {t.tx_hash for t in included}

        confirmed_now: list[SentTransaction] = []
        timed_out_now: list[SentTransaction] = []
        for tx_hash, tx in self._tracked.items():
            if tx.status != TxState.ACCEPTED:
                continue
            if tx_hash in included_hashes:
                tx.confirm(at=now)
                confirmed_now.append(tx)
            elif tx_hash in pending_hashes:
                continue
            elif now - (tx.accepted_at or now) >= self.deadline:
                err = ReconciliationTimeout(tx_hash, now - tx.accepted_at)
                log.warning("EXPIRED: %s", err)
                tx.fail(FailReason.TIMEOUT, str(err), at=now)
                timed_out_now.append(tx)

        if confirmed_now:
            log.debug("%d transaction(s) confirmed", len(confirmed_now))
        if self.registry is not None:
            for tx in confirmed_now:
                await self.registry.observe_nonce(tx.sender, tx.intent.nonce + 1)
            if timed_out_now:
                try:
                    await self.registry.resync(sorted({tx.sender for tx in timed_out_now}))
                except Exception:
                    log.exception("Sequence resync after timeouts failed")

        report = self._report(pending, included, pending_hashes, included_hashes)
        if report.duplicates or report.late_included:
            log.warning("Anomalies: duplicates=%d late_included=%d", len(report.duplicates), len(report.late_included))
        self.last_report = report
        return report

    def _report(self, pending, included, pending_hashes, included_hashes) -> ReconciliationReport:
        seen = Counter(t.tx_hash for t in (*pending, *included))

        def hashes(pred) -> tuple[str, ...]:
            return tuple(sorted(h for h, tx in self._tracked.items() if pred(h, tx)))

        return ReconciliationReport(
            pending=tuple(pending),
            included=tuple(included),
            confirmed=hashes(lambda h, tx: tx.status == TxState.CONFIRMED),
            awaiting=hashes(lambda h, tx: tx.status == TxState.ACCEPTED and h in pending_hashes),
            missing=hashes(lambda h, tx: tx.status == TxState.ACCEPTED and h not in pending_hashes),
            timed_out=hashes(lambda h, tx: tx.reason == FailReason.TIMEOUT),
            duplicates=tuple(sorted(h for h, n in seen.items() if n > 1)),
            late_included=hashes(lambda h, tx: tx.status == TxState.FAILED and h in included_hashes),
        )

    def request_poll(self) -> None:
        """Wake the periodic loop now instead of at the end of its interval."""
        self._wake.set()

    async def run(
        self,
        stop: asyncio.Event,
        interval: float = C.POLL_INTERVAL,
        on_report: Callable[[ReconciliationReport], None] | None = None,
    ) -> None:
        while not stop.is_set():
            try:
                report = await self.poll()
                if on_report is not None:
                    on_report(report)
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("[reconciler] poll failed; continuing")

            try:
                await asyncio.wait_for(self._wake.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
        log.info("Reconciler loop stopped")
