import asyncio
import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import APIRouter, FastAPI, HTTPException
from pydantic import BaseModel, NonNegativeInt, PositiveInt

from txbench.composer import BatchComposer
from txbench.config import cfg
from txbench.controller import (
    ChangeFee,
    ChangeTransactionBatch,
    GetAllTxs,
    GetWallets,
    SelectWallet,
    SendTxs,
    SessionController,
    ToggleRandomWallet,
    event_to_dict,
)
from txbench.dispatch import DispatchPipeline
from txbench.errors import BenchError, InsufficientWallets, TransportError, WalletNotFound
from txbench.ledger_stream import ledger_listener
from txbench.logging_config import setup_logging
from txbench.models import SessionConfig
from txbench.node import JsonKeyStore, XrplNodeClient, XrplSigner
from txbench.reconciler import MempoolReconciler
from txbench.registry import WalletRegistry

setup_logging()
log = logging.getLogger("txbench.app")

RPC = cfg["node"]["rpc_url"]
WS = cfg["node"]["ws_url"]
PING_TIMEOUT = 3.0
OVERALL_STARTUP_TIMEOUT = cfg["timeout"]["startup"]


async def _wait_for_node(url: str, max_retries: int = 30, retry_delay: float = 2.0) -> str:
    """Poll ``server_info`` until the node answers. Returns its ``server_state``."""
    payload = {"method": "server_info", "params": [{}]}
    last_exc: Exception | None = None

    async with httpx.AsyncClient(timeout=PING_TIMEOUT) as http:
        for attempt in range(1, max_retries + 1):
            try:
                r = await http.post(url, json=payload)
                r.raise_for_status()
                state = r.json().get("result", {}).get("info", {}).get("server_state", "unknown")
                log.info("Node at %s is up (server_state=%s) after %d attempt(s)", url, state, attempt)
                return state
            except (httpx.HTTPError, ValueError) as e:
                last_exc = e
                log.info("Node not reachable yet [%d/%d]: %s", attempt, max_retries, type(e).__name__)
                if attempt < max_retries:
                    await asyncio.sleep(retry_delay)

    log.error("Node at %s never answered after %d attempts", url, max_retries)
    raise TransportError(f"node never answered: {last_exc}") from last_exc


def build_controller(conf: dict) -> SessionController:
    node = XrplNodeClient.from_url(
        conf["node"]["rpc_url"],
        included_window=conf["node"]["included_window"],
        rpc_timeout=conf["node"]["rpc_timeout"],
        submit_timeout=conf["dispatch"]["submit_timeout"],
    )
    registry = WalletRegistry(node, JsonKeyStore(conf["wallets"]["keys_file"]))
    reconciler = MempoolReconciler(node, registry=registry, deadline=conf["reconciler"]["confirmation_deadline"])
    pipeline = DispatchPipeline(
        node,
        XrplSigner(),
        registry=registry,
        on_accepted=reconciler.track,
        concurrency=conf["dispatch"]["concurrency"],
        submit_timeout=conf["dispatch"]["submit_timeout"],
    )
    s = conf["session"]
    return SessionController(
        registry,
        pipeline,
        reconciler,
        config=SessionConfig(batch_size=s["batch_size"], fee=s["fee"], amount=s["amount"], random_wallet=s["random_wallet"]),
        composer=BatchComposer(),
        poll_interval=conf["reconciler"]["interval"],
        wallet_refresh_interval=conf["wallets"]["refresh_interval"],
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    stop = asyncio.Event()

    async with asyncio.timeout(OVERALL_STARTUP_TIMEOUT):
        log.info("Waiting for RPC endpoint %s...", RPC)
        await _wait_for_node(RPC, max_retries=cfg["timeout"]["startup_retries"])

    controller = build_controller(cfg)
    app.state.controller = controller
    await controller.start()

    async with asyncio.TaskGroup() as tg:
        # Each closed ledger triggers a reconciliation pass on top of the interval.
        tg.create_task(
            ledger_listener(stop, WS, lambda _li: controller.reconciler.request_poll()),
            name="ledger_listener",
        )
        log.info("Ready. %d wallets loaded, %d eligible", len(controller.registry), len(controller.registry.eligible()))
        try:
            yield
        finally:
            log.info("Shutting down...")
            stop.set()
            await controller.close()

    log.info("Shutdown complete")


app = FastAPI(
    title="txbench",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Wallets", "description": "Benchmark wallets and selection"},
        {"name": "Config", "description": "Batch size, fee and wallet selection mode"},
        {"name": "Transactions", "description": "Send batches and inspect the mempool"},
        {"name": "State", "description": "Session state and events"},
    ],
)

r_wallets = APIRouter(prefix="/wallets", tags=["Wallets"])
r_config = APIRouter(prefix="/config", tags=["Config"])
r_txs = APIRouter(prefix="/txs", tags=["Transactions"])
r_state = APIRouter(prefix="/state", tags=["State"])


class GetWalletsReq(BaseModel):
    initial: bool = False


class SelectWalletReq(BaseModel):
    public_key: str


class BatchReq(BaseModel):
    size: PositiveInt


class FeeReq(BaseModel):
    amount: NonNegativeInt


def _http_error(e: BenchError) -> HTTPException:
    if isinstance(e, WalletNotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, InsufficientWallets):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, TransportError):
        return HTTPException(status_code=502, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


def _controller() -> SessionController:
    return app.state.controller


@app.get("/health")
def health():
    return {"status": "ok"}


@r_wallets.get("")
async def list_wallets():
    return [w.to_dict() for w in _controller().registry.all()]


@r_wallets.post("/refresh")
async def refresh_wallets(req: GetWalletsReq):
    wallets = await _controller().handle(GetWallets(initial_request=req.initial))
    return {"changed": [w.public_key for w in wallets]}


@r_wallets.post("/select")
async def select_wallet(req: SelectWalletReq):
    try:
        w = await _controller().handle(SelectWallet(req.public_key))
    except BenchError as e:
        raise _http_error(e)
    return w.to_dict()


@r_config.get("")
async def get_config():
    return _controller().config.to_dict()


@r_config.post("/batch")
async def change_batch(req: BatchReq):
    await _controller().handle(ChangeTransactionBatch(req.size))
    return _controller().config.to_dict()


@r_config.post("/fee")
async def change_fee(req: FeeReq):
    await _controller().handle(ChangeFee(req.amount))
    return _controller().config.to_dict()


@r_config.post("/random")
async def toggle_random():
    await _controller().handle(ToggleRandomWallet())
    return _controller().config.to_dict()


@r_txs.post("/send")
async def send_txs(wait: bool = False):
    """Compose and dispatch one batch. With ``wait`` the batch summary is returned."""
    c = _controller()
    task = await c.handle(SendTxs())
    if task is None:
        last = c.recent[-1] if c.recent else None
        raise HTTPException(status_code=409, detail=event_to_dict(last)["error"] if last else "compose failed")
    if wait:
        summary = await task
        return summary.to_dict()
    return {"queued": c.config.batch_size}


@r_txs.get("/mempool")
async def get_all_txs():
    try:
        report = await _controller().handle(GetAllTxs())
    except BenchError as e:
        raise _http_error(e)
    return report.to_dict()


@r_txs.get("/tracked")
async def tracked_txs():
    return [t.to_dict() for t in _controller().reconciler.tracked()]


@r_state.get("/summary")
async def state_summary():
    return _controller().snapshot_stats()


@r_state.get("/events")
async def recent_events(limit: int = 50):
    events = list(_controller().recent)[-limit:] if limit > 0 else []
    return [event_to_dict(e) for e in events]


app.include_router(r_wallets)
app.include_router(r_config)
app.include_router(r_txs)
app.include_router(r_state)
