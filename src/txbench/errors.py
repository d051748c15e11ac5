"""Error taxonomy for the benchmark harness.

Per-transaction errors (signing, transport, stale sequence, rejection) are
recorded on the transaction they belong to and never abort sibling
submissions. Nothing here is retried automatically.
"""

from collections import Counter


class BenchError(Exception):
    """Base class for all harness errors."""


class InsufficientWallets(BenchError):
    """No wallet is eligible to send."""


class WalletNotFound(BenchError):
    def __init__(self, public_key: str):
        super().__init__(f"wallet not registered: {public_key}")
        self.public_key = public_key


class TransportError(BenchError):
    """Submission failed at the network layer."""


class StaleSequence(BenchError):
    """Node refused the transaction because its sequence number did not match."""

    def __init__(self, message: str, *, engine_result: str | None = None):
        super().__init__(message)
        self.engine_result = engine_result


class NodeRejected(BenchError):
    """Node refused the transaction for a reason other than its sequence."""

    def __init__(self, message: str, *, engine_result: str | None = None):
        super().__init__(message)
        self.engine_result = engine_result


class SigningError(BenchError):
    """Signing failed; fatal for that intent only."""


class ReconciliationTimeout(BenchError):
    """Accepted transaction is neither pending nor included after the deadline."""

    def __init__(self, tx_hash: str, waited: float):
        super().__init__(f"{tx_hash} neither pending nor included after {waited:.1f}s")
        self.tx_hash = tx_hash
        self.waited = waited


class BatchError(BenchError):
    """Aggregate of the per-transaction failures of one batch."""

    def __init__(self, counts: Counter, total: int):
        failed = sum(counts.values())
        detail = ", ".join(f"{reason}={n}" for reason, n in sorted(counts.items()))
        super().__init__(f"{failed}/{total} transactions failed ({detail})")
        self.counts = counts
        self.total = total

    @property
    def all_failed(self) -> bool:
        return sum(self.counts.values()) == self.total
