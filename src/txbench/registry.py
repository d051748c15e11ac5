import asyncio
import logging
from dataclasses import dataclass

import txbench.constants as C
from txbench.errors import WalletNotFound
from txbench.models import Wallet
from txbench.node import KeyStore, NodeClient

log = logging.getLogger("txbench.registry")


@dataclass
class AccountRecord:
    lock: asyncio.Lock
    wallet: Wallet


class WalletRegistry:
    """The benchmark wallets and their sequence counters.

    Every nonce mutation happens under the wallet's own lock, so two intents
    composed concurrently for one wallet never share a sequence number. Node
    queries always happen before a lock is taken, never while holding one.
    """

    def __init__(self, node: NodeClient, keystore: KeyStore, *, fetch_concurrency: int = C.SUBMIT_CONCURRENCY):
        self.node = node
        self.keystore = keystore
        self.random_selection = False
        self._records: dict[str, AccountRecord] = {}
        self._fetch_sem = asyncio.Semaphore(fetch_concurrency)

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, public_key: str) -> bool:
        return public_key in self._records

    def _record_for(self, public_key: str) -> AccountRecord:
        rec = self._records.get(public_key)
        if rec is None:
            raise WalletNotFound(public_key)
        return rec

    async def _fetch_one(self, public_key: str) -> tuple[int, int] | None:
        async with self._fetch_sem:
            try:
                return await self.node.get_wallet_balance_and_nonce(public_key)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning("Balance/nonce fetch failed for %s: %s", public_key[:10], e)
                return None

    async def _fetch_states(self, public_keys: list[str]) -> dict[str, tuple[int, int]]:
        results = await asyncio.gather(*(self._fetch_one(pk) for pk in public_keys))
        return {pk: r for pk, r in zip(public_keys, results) if r is not None}

    async def load(self, initial: bool) -> list[Wallet]:
        """Full reload from the key store when ``initial``, otherwise refresh
        known wallets and return only the ones that changed."""
        if not initial:
            return await self.refresh(list(self._records))

        keys = await self.keystore.list_keys()
        states = await self._fetch_states([k.public_key for k in keys])
        prev = self.selected()
        records = {}
        for k in keys:
            balance, nonce = states.get(k.public_key, (0, 0))
            rec = self._records.get(k.public_key)
            if rec is None:
                w = Wallet(public_key=k.public_key, private_key=k.private_key, balance=balance, nonce=nonce)
                rec = AccountRecord(lock=asyncio.Lock(), wallet=w)
            else:
                # Sequences already handed out stay consumed.
                async with rec.lock:
                    rec.wallet.private_key = k.private_key
                    rec.wallet.balance = balance
                    rec.wallet.nonce = max(rec.wallet.nonce, nonce)
            rec.wallet.selected = prev is not None and prev.public_key == k.public_key
            records[k.public_key] = rec
        self._records = records
        log.info("Loaded %d wallets (%d with balance)", len(records), len(self.eligible()))
        return self.all()

    async def upsert(self, wallets: list[Wallet]) -> list[Wallet]:
        """Merge balance and nonce into registered wallets. Returns those that changed."""
        changed = []
        for w in wallets:
            rec = self._records.get(w.public_key)
            if rec is None:
                added = Wallet(public_key=w.public_key, private_key=w.private_key, balance=w.balance, nonce=w.nonce)
                self._records[w.public_key] = AccountRecord(lock=asyncio.Lock(), wallet=added)
                changed.append(added)
                continue
            async with rec.lock:
                cur = rec.wallet
                before = (cur.balance, cur.nonce)
                cur.balance = w.balance
                if w.nonce < cur.nonce:
                    log.debug("Keeping local nonce %d for %s (node reports %d)", cur.nonce, cur.public_key[:10], w.nonce)
                cur.nonce = max(cur.nonce, w.nonce)
                if (cur.balance, cur.nonce) != before:
                    changed.append(cur)
        return changed

    async def refresh(self, public_keys: list[str]) -> list[Wallet]:
        """Re-read node truth for the given wallets."""
        states = await self._fetch_states([pk for pk in public_keys if pk in self._records])
        updates = [
            Wallet(public_key=pk, private_key=self._records[pk].wallet.private_key, balance=bal, nonce=nonce)
            for pk, (bal, nonce) in states.items()
            if pk in self._records  # may have been cleared while fetching
        ]
        return await self.upsert(updates)

    async def resync(self, public_keys: list[str]) -> list[Wallet]:
        """Take the node's sequence as-is, even when it is behind ours.

        Used after the node refused a sequence: whatever was handed out past
        the node's value never made it on chain and must be reissued.
        """
        states = await self._fetch_states([pk for pk in public_keys if pk in self._records])
        synced = []
        for pk, (balance, nonce) in states.items():
            rec = self._records.get(pk)
            if rec is None:
                continue
            async with rec.lock:
                if rec.wallet.nonce != nonce:
                    log.info("Sequence for %s reset %d -> %d from node", pk[:10], rec.wallet.nonce, nonce)
                rec.wallet.balance = balance
                rec.wallet.nonce = nonce
            synced.append(rec.wallet)
        return synced

    async def alloc_nonce(self, public_key: str, count: int = 1) -> int:
        """Reserve ``count`` consecutive sequences; returns the first."""
        rec = self._record_for(public_key)
        async with rec.lock:
            s = rec.wallet.nonce
            rec.wallet.nonce += count
            return s

    async def release_nonces(self, public_key: str, start: int, count: int) -> bool:
        """Give back a reservation, only if nothing was allocated after it."""
        rec = self._records.get(public_key)
        if rec is None:
            return False
        async with rec.lock:
            if rec.wallet.nonce != start + count:
                return False
            rec.wallet.nonce = start
            return True

    async def observe_nonce(self, public_key: str, next_nonce: int) -> bool:
        """Move a wallet's nonce forward to ``next_nonce`` if it is behind."""
        rec = self._records.get(public_key)
        if rec is None:
            return False
        async with rec.lock:
            if next_nonce <= rec.wallet.nonce:
                return False
            log.info("Nonce for %s corrected %d -> %d", public_key[:10], rec.wallet.nonce, next_nonce)
            rec.wallet.nonce = next_nonce
            return True

    def select(self, wallet: Wallet | str) -> Wallet:
        public_key = wallet if isinstance(wallet, str) else wallet.public_key
        target = self._record_for(public_key).wallet
        for rec in self._records.values():
            rec.wallet.selected = rec.wallet is target
        return target

    def toggle_random_selection(self) -> bool:
        self.random_selection = not self.random_selection
        return self.random_selection

    def get(self, public_key: str) -> Wallet:
        return self._record_for(public_key).wallet

    def selected(self) -> Wallet | None:
        return next((r.wallet for r in self._records.values() if r.wallet.selected), None)

    def all(self) -> list[Wallet]:
        return [r.wallet for r in self._records.values()]

    def eligible(self) -> list[Wallet]:
        return [r.wallet for r in self._records.values() if r.wallet.balance > 0]

    def clear(self) -> None:
        self._records.clear()
        self.random_selection = False
