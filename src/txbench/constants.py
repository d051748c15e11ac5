from typing import Final
from enum import StrEnum


class TxState(StrEnum):
    SUBMITTED = "SUBMITTED"
    ACCEPTED  = "ACCEPTED"
    CONFIRMED = "CONFIRMED"
    FAILED    = "FAILED"


class FailReason(StrEnum):
    TRANSPORT      = "transport"
    STALE_SEQUENCE = "stale_sequence"
    REJECTED       = "rejected"
    SIGNING        = "signing"
    TIMEOUT        = "timeout"
    CANCELLED      = "cancelled"


TERMINAL_STATE: Final = frozenset({TxState.CONFIRMED, TxState.FAILED})

# Engine results meaning the sequence number did not match the account's
STALE_SEQ_RESULTS: Final = frozenset({"tefPAST_SEQ", "terPRE_SEQ"})

DEFAULT_BATCH_SIZE = 5
DEFAULT_FEE = 10  # drops
DEFAULT_AMOUNT = 1  # drops
SUBMIT_CONCURRENCY = 16
CONFIRMATION_DEADLINE = 60.0  # seconds from acceptance
POLL_INTERVAL = 5.0
WALLET_REFRESH_INTERVAL = 10.0
INCLUDED_WINDOW = 5  # validated ledgers scanned for included txns
RPC_TIMEOUT = 2.0
SUBMIT_TIMEOUT = 20.0
EVENT_LOG_SIZE = 500

__all__ = [
    "CONFIRMATION_DEADLINE",
    "DEFAULT_AMOUNT",
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_FEE",
    "EVENT_LOG_SIZE",
    "INCLUDED_WINDOW",
    "POLL_INTERVAL",
    "RPC_TIMEOUT",
    "STALE_SEQ_RESULTS",
    "SUBMIT_CONCURRENCY",
    "SUBMIT_TIMEOUT",
    "WALLET_REFRESH_INTERVAL",

    ######
    "FailReason",
    "TERMINAL_STATE",
    "TxState",
]
