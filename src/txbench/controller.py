"""Session controller: the only entry point for commands.

Commands come in as one of the dataclasses below and are dispatched with a
single ``match``; results go out as event dataclasses on ``events`` (an
``asyncio.Queue``) and into a bounded recent-event log.
"""

import asyncio
import contextlib
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any

import txbench.constants as C
from txbench.composer import BatchComposer
from txbench.dispatch import DispatchPipeline
from txbench.errors import BenchError
from txbench.models import (
    BatchSummary,
    MempoolTx,
    ReconciliationReport,
    SentTransaction,
    SessionConfig,
    Wallet,
)
from txbench.reconciler import MempoolReconciler
from txbench.registry import WalletRegistry

log = logging.getLogger("txbench.controller")


# ---- commands ----

@dataclass(frozen=True)
class Close:
    pass


@dataclass(frozen=True)
class GetWallets:
    initial_request: bool = False


@dataclass(frozen=True)
class ChangeTransactionBatch:
    size: int


@dataclass(frozen=True)
class SendTxs:
    pass


@dataclass(frozen=True)
class ToggleRandomWallet:
    pass


@dataclass(frozen=True)
class SelectWallet:
    wallet: Wallet | str


@dataclass(frozen=True)
class ChangeFee:
    amount: int


@dataclass(frozen=True)
class GetAllTxs:
    pass


Command = Close | GetWallets | ChangeTransactionBatch | SendTxs | ToggleRandomWallet | SelectWallet | ChangeFee | GetAllTxs


# ---- events ----

@dataclass(frozen=True)
class GetWalletsSuccess:
    wallets: list[dict[str, Any]]


@dataclass(frozen=True)
class UpdateWalletsSuccess:
    wallets: list[dict[str, Any]]


@dataclass(frozen=True)
class SendTxSynced:
    transactions: list[dict[str, Any]]


@dataclass(frozen=True)
class SendTxSuccess:
    transactions: list[SentTransaction] = field(default_factory=list)
    error: BenchError | None = None


@dataclass(frozen=True)
class GetAllTxsSuccess:
    mempool_txs: list[MempoolTx]
    included_txs: list[MempoolTx]
    report: ReconciliationReport | None = None


Event = GetWalletsSuccess | UpdateWalletsSuccess | SendTxSynced | SendTxSuccess | GetAllTxsSuccess


def event_to_dict(event: Event) -> dict[str, Any]:
    """JSON-friendly rendering of an event for the HTTP surface."""
    match event:
        case GetWalletsSuccess(wallets) | UpdateWalletsSuccess(wallets):
            body = {"wallets": wallets}
        case SendTxSynced(transactions):
            body = {"transactions": transactions}
        case SendTxSuccess(transactions, error):
            body = {"transactions": [t.to_dict() for t in transactions], "error": str(error) if error else None}
        case GetAllTxsSuccess(mempool_txs, included_txs, report):
            body = {
                "mempool_txs": [t.to_dict() for t in mempool_txs],
                "included_txs": [t.to_dict() for t in included_txs],
                "anomalies": {k: list(v) for k, v in report.anomalies.items()} if report else {},
            }
    return {"type": type(event).__name__, **body}


class SessionController:
    def __init__(
        self,
        registry: WalletRegistry,
        pipeline: DispatchPipeline,
        reconciler: MempoolReconciler,
        *,
        config: SessionConfig | None = None,
        composer: BatchComposer | None = None,
        poll_interval: float = C.POLL_INTERVAL,
        wallet_refresh_interval: float = C.WALLET_REFRESH_INTERVAL,
    ):
        self.registry = registry
        self.pipeline = pipeline
        self.reconciler = reconciler
        self.composer = composer or BatchComposer()
        self.config = config or SessionConfig(batch_size=C.DEFAULT_BATCH_SIZE, fee=C.DEFAULT_FEE, amount=C.DEFAULT_AMOUNT)
        self.registry.random_selection = self.config.random_wallet
        self.poll_interval = poll_interval
        self.wallet_refresh_interval = wallet_refresh_interval

        self.events: asyncio.Queue[Event] = asyncio.Queue()
        self.recent: deque[Event] = deque(maxlen=C.EVENT_LOG_SIZE)
        self.batches: deque[BatchSummary] = deque(maxlen=100)

        self._stop = asyncio.Event()
        self._loops: list[asyncio.Task] = []
        self._dispatches: set[asyncio.Task] = set()
        self.started = False

    def emit(self, event: Event) -> None:
        self.recent.append(event)
        self.events.put_nowait(event)

    async def start(self) -> None:
        if self.started:
            return
        self._stop.clear()
        self.pipeline.reopen()
        await self.handle(GetWallets(initial_request=True))
        self._loops = [
            asyncio.create_task(self.reconciler.run(self._stop, self.poll_interval), name="reconciler"),
            asyncio.create_task(self._refresh_wallets_loop(), name="wallet_refresh"),
        ]
        self.started = True
        log.info("Session started: %s", self.config.to_dict())

    async def _refresh_wallets_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.sleep(self.wallet_refresh_interval)
                await self.handle(GetWallets(initial_request=False))
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("[wallets] refresh failed; continuing")

    async def handle(self, command: Command) -> Any:
        match command:
            case Close():
                return await self.close()
            case GetWallets(initial_request=True):
                wallets = await self.registry.load(initial=True)
                if wallets and self.registry.selected() is None:
                    self.registry.select(wallets[0])
                self.config.selected_wallet = self.registry.selected()
                self.emit(GetWalletsSuccess([w.to_partial() for w in wallets]))
                return wallets
            case GetWallets():
                changed = await self.registry.load(initial=False)
                if changed:
                    self.emit(UpdateWalletsSuccess([w.to_dict() for w in self.registry.all()]))
                return changed
            case ChangeTransactionBatch(size):
                return self.change_batch_size(size)
            case ChangeFee(amount):
                return self.change_fee(amount)
            case ToggleRandomWallet():
                self.config.random_wallet = self.registry.toggle_random_selection()
                return self.config.random_wallet
            case SelectWallet(wallet):
                self.config.selected_wallet = self.registry.select(wallet)
                return self.config.selected_wallet
            case SendTxs():
                return await self.send_batch()
            case GetAllTxs():
                report = await self.reconciler.poll()
                self.emit(GetAllTxsSuccess(list(report.pending), list(report.included), report))
                return report
            case _:
                raise TypeError(f"unknown command: {command!r}")

    def change_batch_size(self, size: int) -> int:
        if isinstance(size, bool) or not isinstance(size, int) or size < 1:
            raise ValueError(f"batch size must be a positive integer, got {size!r}")
        self.config.batch_size = size
        return size

    def change_fee(self, amount: int) -> int:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise ValueError(f"fee must be a non-negative integer, got {amount!r}")
        self.config.fee = amount
        return amount

    async def send_batch(self) -> asyncio.Task | None:
        """Compose now, dispatch in the background.

        Composition failures are reported as a ``SendTxSuccess`` carrying the
        error. Returns the dispatch task so callers may await the summary.
        """
        try:
            intents = await self.composer.compose(self.config, self.registry)
        except BenchError as e:
            log.warning("Cannot compose batch: %s", e)
            self.emit(SendTxSuccess(error=e))
            return None

        self.emit(SendTxSynced([i.to_dict() for i in intents]))
        task = asyncio.create_task(self._dispatch(intents), name=f"dispatch-{len(intents)}")
        self._dispatches.add(task)
        task.add_done_callback(self._dispatches.discard)
        return task

    async def _dispatch(self, intents) -> BatchSummary:
        summary = await self.pipeline.dispatch(intents)
        self.batches.append(summary)
        self.emit(SendTxSuccess(transactions=summary.transactions, error=summary.error))
        return summary

    async def close(self) -> None:
        """Cancel in-flight submissions, stop the loops, drop all tracked state."""
        self._stop.set()
        self.reconciler.request_poll()
        self.pipeline.cancel()
        if self._dispatches:
            # Dispatches finish on their own; ones that had not started yet report every intent cancelled.
            await asyncio.gather(*self._dispatches, return_exceptions=True)
        for t in self._loops:
            t.cancel()
        for t in self._loops:
            with contextlib.suppress(asyncio.CancelledError):
                await t
        self._loops = []
        self.reconciler.clear()
        self.registry.clear()
        self.config.selected_wallet = None
        self.config.random_wallet = False
        self.started = False
        log.info("Session closed")

    def snapshot_stats(self) -> dict[str, Any]:
        return {
            "config": self.config.to_dict(),
            "wallets": len(self.registry),
            "eligible_wallets": len(self.registry.eligible()),
            "in_flight": self.pipeline.in_flight,
            "batches": len(self.batches),
            "tracked": self.reconciler.stats(),
        }
