"""Benchmark data structures: wallets, intents, tracked transactions, reports."""

import time
from dataclasses import dataclass, field
from typing import Any

from txbench.constants import FailReason, TxState, TERMINAL_STATE
from txbench.errors import BatchError


@dataclass(slots=True)
class Wallet:
    public_key: str
    private_key: str
    balance: int = 0
    nonce: int = 0
    selected: bool = False

    def to_partial(self) -> dict[str, Any]:
        """Record shape used when wallets are first fetched."""
        return {
            "public_key": self.public_key,
            "private_key": self.private_key,
            "balance": self.balance,
            "nonce": self.nonce,
        }

    def to_dict(self) -> dict[str, Any]:
        return {**self.to_partial(), "selected": self.selected}

    def __str__(self):
        return f"{self.public_key[:10]} bal={self.balance} nonce={self.nonce}"


@dataclass(frozen=True, slots=True)
class WalletKeys:
    public_key: str
    private_key: str


@dataclass(frozen=True, slots=True)
class TransactionIntent:
    sender: Wallet
    recipient: str
    amount: int
    fee: int
    nonce: int
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sender": self.sender.public_key,
            "recipient": self.recipient,
            "amount": self.amount,
            "fee": self.fee,
            "nonce": self.nonce,
            "created_at": self.created_at,
        }


@dataclass(frozen=True, slots=True)
class SignedTransaction:
    tx_hash: str
    blob: str


@dataclass(slots=True)
class SentTransaction:
    intent: TransactionIntent
    status: TxState = TxState.SUBMITTED
    reason: FailReason | None = None
    error: str | None = None
    tx_hash: str | None = None
    submitted_at: float = field(default_factory=time.time)
    accepted_at: float | None = None
    finalized_at: float | None = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATE

    @property
    def sender(self) -> str:
        return self.intent.sender.public_key

    def accept(self, tx_hash: str, at: float | None = None) -> bool:
        if self.status != TxState.SUBMITTED:
            return False
        self.tx_hash = tx_hash
        self.status = TxState.ACCEPTED
        self.accepted_at = time.time() if at is None else at
        return True

    def confirm(self, at: float | None = None) -> bool:
        if self.status != TxState.ACCEPTED:
            return False
        self.status = TxState.CONFIRMED
        self.finalized_at = time.time() if at is None else at
        return True

    def fail(self, reason: FailReason, error: str | None = None, at: float | None = None) -> bool:
        if self.terminal:
            return False
        self.status = TxState.FAILED
        self.reason = reason
        self.error = error
        self.finalized_at = time.time() if at is None else at
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.intent.to_dict(),
            "tx_hash": self.tx_hash,
            "status": self.status.value,
            "reason": self.reason.value if self.reason else None,
            "error": self.error,
            "submitted_at": self.submitted_at,
            "accepted_at": self.accepted_at,
            "finalized_at": self.finalized_at,
        }

    def __str__(self):
        label = f"{self.status}({self.reason})" if self.reason else str(self.status)
        return f"{self.sender[:10]} nonce={self.intent.nonce} -- {label}"


@dataclass(frozen=True, slots=True)
class MempoolTx:
    """A transaction as the node reports it, tracked by us or not."""

    tx_hash: str
    sender: str | None = None
    recipient: str | None = None
    amount: int | None = None
    fee: int | None = None
    nonce: int | None = None
    ledger_index: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "sender": self.sender,
            "recipient": self.recipient,
            "amount": self.amount,
            "fee": self.fee,
            "nonce": self.nonce,
            "ledger_index": self.ledger_index,
        }


@dataclass(frozen=True, slots=True)
class ReconciliationReport:
    pending: tuple[MempoolTx, ...] = ()
    included: tuple[MempoolTx, ...] = ()
    confirmed: tuple[str, ...] = ()
    awaiting: tuple[str, ...] = ()
    missing: tuple[str, ...] = ()
    timed_out: tuple[str, ...] = ()
    duplicates: tuple[str, ...] = ()
    late_included: tuple[str, ...] = ()

    @property
    def anomalies(self) -> dict[str, tuple[str, ...]]:
        return {
            "missing": self.missing,
            "timed_out": self.timed_out,
            "duplicates": self.duplicates,
            "late_included": self.late_included,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "pending": [t.to_dict() for t in self.pending],
            "included": [t.to_dict() for t in self.included],
            "confirmed": list(self.confirmed),
            "awaiting": list(self.awaiting),
            **{k: list(v) for k, v in self.anomalies.items()},
        }


@dataclass(slots=True)
class BatchSummary:
    accepted: list[SentTransaction] = field(default_factory=list)
    failed: list[SentTransaction] = field(default_factory=list)
    error: BatchError | None = None

    @property
    def transactions(self) -> list[SentTransaction]:
        return [*self.accepted, *self.failed]

    def to_dict(self) -> dict[str, Any]:
        return {
            "accepted": [t.to_dict() for t in self.accepted],
            "failed": [t.to_dict() for t in self.failed],
            "error": str(self.error) if self.error else None,
        }


@dataclass(slots=True)
class SessionConfig:
    batch_size: int
    fee: int
    amount: int
    random_wallet: bool = False
    selected_wallet: Wallet | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_size": self.batch_size,
            "fee": self.fee,
            "amount": self.amount,
            "random_wallet": self.random_wallet,
            "selected_wallet": self.selected_wallet.public_key if self.selected_wallet else None,
        }
