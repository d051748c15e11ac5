import logging
import random
from collections import Counter

from txbench.errors import BenchError, InsufficientWallets
from txbench.models import SessionConfig, TransactionIntent, Wallet
from txbench.registry import WalletRegistry

log = logging.getLogger("txbench.composer")


class BatchComposer:
    def __init__(self, rng: random.Random | None = None):
        self.rng = rng or random.Random()

    def _pick_recipient(self, sender: Wallet, wallets: list[Wallet]) -> str:
        others = [w for w in wallets if w.public_key != sender.public_key]
        return self.rng.choice(others).public_key if others else sender.public_key

    def _senders(self, config: SessionConfig, registry: WalletRegistry) -> list[Wallet]:
        eligible = registry.eligible()
        if config.random_wallet:
            if not eligible:
                raise InsufficientWallets("no wallet with a spendable balance")
            return [self.rng.choice(eligible) for _ in range(config.batch_size)]

        if config.selected_wallet is None:
            raise InsufficientWallets("no wallet selected and random selection is off")
        sender = registry.get(config.selected_wallet.public_key)
        if sender.balance <= 0:
            raise InsufficientWallets(f"selected wallet {sender.public_key[:10]} has no balance")
        return [sender] * config.batch_size

    @staticmethod
    async def _reserve(registry: WalletRegistry, senders: list[Wallet]) -> dict[str, int]:
        """One contiguous block of sequences per sender, all or nothing."""
        counts = Counter(s.public_key for s in senders)
        reserved: dict[str, int] = {}
        try:
            for pk, n in counts.items():
                reserved[pk] = await registry.alloc_nonce(pk, n)
        except BenchError:
            for pk, start in reserved.items():
                if not await registry.release_nonces(pk, start, counts[pk]):
                    log.warning("Could not return sequences %d.. of %s; later ones were already taken", start, pk[:10])
            raise
        return reserved

    async def compose(self, config: SessionConfig, registry: WalletRegistry) -> list[TransactionIntent]:
        """Build ``config.batch_size`` intents, consuming one nonce per intent.

        Fee and amount are read from ``config`` now; later config changes
        never touch intents already built.
        """
        senders = self._senders(config, registry)
        wallets = registry.all()
        next_nonce = await self._reserve(registry, senders)
        intents = []
        for sender in senders:
            nonce = next_nonce[sender.public_key]
            next_nonce[sender.public_key] += 1
            intents.append(
                TransactionIntent(
                    sender=sender,
                    recipient=self._pick_recipient(sender, wallets),
                    amount=config.amount,
                    fee=config.fee,
                    nonce=nonce,
                )
            )
        log.debug("Composed %d intents from %d wallet(s)", len(intents), len({i.sender.public_key for i in intents}))
        return intents
