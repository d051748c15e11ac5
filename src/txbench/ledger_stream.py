"""Ledger-close notifications from the node's WebSocket endpoint.

Each ``ledgerClosed`` message triggers a callback; the service uses it to run
a reconciliation pass as soon as a ledger is validated instead of waiting for
the next poll interval. The connection is re-established with exponential
backoff until ``stop`` is set.
"""
import asyncio
import contextlib
import json
import logging
from collections.abc import Callable

import websockets

log = logging.getLogger("txbench.ledger_stream")

BACKOFF_START = 1.0
BACKOFF_CAP = 10.0
ACK_TIMEOUT = 10.0

SUBSCRIBE = {"id": "txbench-ledger", "command": "subscribe", "streams": ["ledger"]}


def parse_ledger_closed(raw_msg: str | bytes) -> int | None:
    """Return the ledger index of a ``ledgerClosed`` message, else None."""
    try:
        obj = json.loads(raw_msg)
    except json.JSONDecodeError:
        log.debug("Ignoring non-JSON frame: %.200s", raw_msg)
        return None
    if not isinstance(obj, dict) or obj.get("type") != "ledgerClosed":
        return None
    return obj.get("ledger_index")


async def _subscribe(ws) -> None:
    await ws.send(json.dumps(SUBSCRIBE))
    try:
        ack = json.loads(await asyncio.wait_for(ws.recv(), timeout=ACK_TIMEOUT))
    except asyncio.TimeoutError:
        log.warning("No subscribe ack within %.0fs; reading the stream anyway", ACK_TIMEOUT)
        return
    if ack.get("status") != "success":
        raise RuntimeError(f"ledger subscribe refused: {ack}")


async def _pump(ws, stop: asyncio.Event, on_ledger_closed: Callable[[int], None]) -> None:
    # Closing the socket ends the ``async for`` once stop is set.
    async def close_on_stop():
        await stop.wait()
        await ws.close()

    watcher = asyncio.create_task(close_on_stop())
    try:
        async for raw in ws:
            ledger_index = parse_ledger_closed(raw)
            if ledger_index is not None:
                log.debug("Ledger %s closed", ledger_index)
                on_ledger_closed(ledger_index)
    finally:
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher


async def ledger_listener(
    stop: asyncio.Event,
    ws_url: str,
    on_ledger_closed: Callable[[int], None],
) -> None:
    """Call ``on_ledger_closed(ledger_index)`` for every closed ledger until ``stop`` is set."""
    delay = BACKOFF_START
    while not stop.is_set():
        try:
            async with websockets.connect(ws_url, ping_interval=20, ping_timeout=20, close_timeout=1) as ws:
                await _subscribe(ws)
                log.info("Subscribed to ledger stream at %s", ws_url)
                delay = BACKOFF_START
                await _pump(ws, stop, on_ledger_closed)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("Ledger stream error (%s): %s", type(e).__name__, e)

        if stop.is_set():
            break
        log.info("Reconnecting to %s in %.1fs", ws_url, delay)
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=delay)
        delay = min(delay * 2, BACKOFF_CAP)

    log.info("Ledger stream listener stopped")
