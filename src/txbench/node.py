"""Collaborators the harness talks to: the node, the signer and the key store.

The core only depends on the protocols at the top of this module. The XRPL
implementations below them are what the service wires up by default.
"""

import asyncio
import hashlib
import json
import logging
from pathlib import Path
from typing import Protocol

import xrpl
from xrpl.asyncio.clients import AsyncJsonRpcClient
from xrpl.core.binarycodec import encode, encode_for_signing
from xrpl.core.keypairs import derive_classic_address, sign
from xrpl.models.requests import AccountInfo, Ledger, SubmitOnly
from xrpl.wallet import Wallet as XrplWallet

import txbench.constants as C
from txbench.errors import NodeRejected, SigningError, StaleSequence, TransportError
from txbench.models import MempoolTx, SignedTransaction, TransactionIntent, WalletKeys

log = logging.getLogger("txbench.node")


class NodeClient(Protocol):
    async def submit_transaction(self, signed: SignedTransaction) -> str: ...
    async def get_pending_transactions(self) -> list[MempoolTx]: ...
    async def get_included_transactions(self) -> list[MempoolTx]: ...
    async def get_wallet_balance_and_nonce(self, public_key: str) -> tuple[int, int]: ...


class Signer(Protocol):
    def sign(self, intent: TransactionIntent, private_key: str) -> SignedTransaction: ...


class KeyStore(Protocol):
    async def list_keys(self) -> list[WalletKeys]: ...


def _sha512half(b: bytes) -> bytes:
    return hashlib.sha512(b).digest()[:32]


def txid_from_signed_blob_hex(signed_blob_hex: str) -> str:
    # XRPL txid = SHA512Half(0x54584E00 || signed_bytes)
    return _sha512half(bytes.fromhex("54584E00") + bytes.fromhex(signed_blob_hex)).hex().upper()


def _int_or_none(v) -> int | None:
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


def parse_ledger_tx(entry: dict | str, ledger_index: int | None = None) -> MempoolTx:
    """Normalize an expanded ledger transaction (API v1 or v2 shape)."""
    if isinstance(entry, str):
        return MempoolTx(tx_hash=entry, ledger_index=ledger_index)
    tx = entry.get("tx_json", entry)
    amount = tx.get("Amount")
    return MempoolTx(
        tx_hash=entry.get("hash") or tx.get("hash"),
        sender=tx.get("Account"),
        recipient=tx.get("Destination"),
        amount=_int_or_none(amount) if isinstance(amount, str) else None,  # IOU amounts are dicts
        fee=_int_or_none(tx.get("Fee")),
        nonce=_int_or_none(tx.get("Sequence")),
        ledger_index=ledger_index,
    )


class XrplNodeClient:
    def __init__(self, client: AsyncJsonRpcClient, *, included_window: int = C.INCLUDED_WINDOW,
                 rpc_timeout: float = C.RPC_TIMEOUT, submit_timeout: float = C.SUBMIT_TIMEOUT):
        self.client = client
        self.included_window = max(1, included_window)
        self.rpc_timeout = rpc_timeout
        self.submit_timeout = submit_timeout

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "XrplNodeClient":
        return cls(AsyncJsonRpcClient(url), **kwargs)

    async def _rpc(self, req, *, t: float | None = None):
        try:
            return await asyncio.wait_for(self.client.request(req), timeout=t or self.rpc_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise TransportError(f"{req.method}: {type(e).__name__}: {e}") from e

    async def submit_transaction(self, signed: SignedTransaction) -> str:
        resp = await self._rpc(SubmitOnly(tx_blob=signed.blob), t=self.submit_timeout)
        res = resp.result
        if not resp.is_successful():
            raise NodeRejected(res.get("error_message") or res.get("error") or "submit failed")

        er = res.get("engine_result")
        if er in C.STALE_SEQ_RESULTS:
            raise StaleSequence(res.get("engine_result_message") or er, engine_result=er)
        if isinstance(er, str) and er.startswith(("tem", "tef")):
            raise NodeRejected(res.get("engine_result_message") or er, engine_result=er)
        if isinstance(er, str) and er.startswith("tel"):
            # Held locally; it either shows up in a ledger or times out in reconciliation.
            log.warning("tel* on submit (tracking until deadline): %s %s", er, signed.tx_hash)

        srv_txid = res.get("tx_json", {}).get("hash")
        return srv_txid or signed.tx_hash

    async def _ledger_txs(self, ledger_index: int | str) -> list[MempoolTx]:
        resp = await self._rpc(Ledger(ledger_index=ledger_index, transactions=True, expand=True))
        if not resp.is_successful():
            raise TransportError(f"ledger {ledger_index}: {resp.result.get('error')}")
        ledger = resp.result.get("ledger", {})
        li = _int_or_none(ledger.get("ledger_index")) or _int_or_none(resp.result.get("ledger_index"))
        return [parse_ledger_tx(t, li) for t in ledger.get("transactions", [])]

    async def _latest_validated_ledger(self) -> int:
        resp = await self._rpc(Ledger(ledger_index="validated"))
        if not resp.is_successful():
            raise TransportError(f"latest validated ledger: {resp.result.get('error')}")
        return int(resp.result["ledger_index"])

    async def get_pending_transactions(self) -> list[MempoolTx]:
        # The open ledger holds everything accepted but not yet closed.
        return await self._ledger_txs("current")

    async def get_included_transactions(self) -> list[MempoolTx]:
        latest = await self._latest_validated_ledger()
        first = max(1, latest - self.included_window + 1)
        per_ledger = await asyncio.gather(*(self._ledger_txs(li) for li in range(first, latest + 1)))
        return [t for txs in per_ledger for t in txs]

    async def get_wallet_balance_and_nonce(self, public_key: str) -> tuple[int, int]:
        address = derive_classic_address(public_key)
        resp = await self._rpc(AccountInfo(account=address, ledger_index="current"))
        if not resp.is_successful():
            if resp.result.get("error") == "actNotFound":
                log.debug("Account %s not funded yet", address)
                return 0, 0
            raise TransportError(f"account_info {address}: {resp.result.get('error')}")
        data = resp.result["account_data"]
        return int(data["Balance"]), int(data["Sequence"])


class XrplSigner:
    """Signs Payment intents locally; the node only ever sees the blob."""

    def sign(self, intent: TransactionIntent, private_key: str) -> SignedTransaction:
        try:
            tx = {
                "TransactionType": "Payment",
                "Account": derive_classic_address(intent.sender.public_key),
                "Destination": derive_classic_address(intent.recipient),
                "Amount": str(intent.amount),
                "Fee": str(intent.fee),
                "Sequence": intent.nonce,
                "SigningPubKey": intent.sender.public_key,
            }
            signing_blob = encode_for_signing(tx)
            to_sign = signing_blob if isinstance(signing_blob, str) else signing_blob.hex()
            tx["TxnSignature"] = sign(to_sign, private_key)
            signed_blob_hex = encode(tx)
        except Exception as e:
            raise SigningError(f"{type(e).__name__}: {e}") from e
        return SignedTransaction(tx_hash=txid_from_signed_blob_hex(signed_blob_hex), blob=signed_blob_hex)


class JsonKeyStore:
    """Benchmark keypairs from a JSON list of ``{"seed", "algorithm"}`` or
    ``{"public_key", "private_key"}`` entries."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    async def list_keys(self) -> list[WalletKeys]:
        entries = json.loads(self.path.read_text())
        keys = []
        for entry in entries:
            if "seed" in entry:
                alg = entry.get("algorithm")
                kw = {"algorithm": xrpl.CryptoAlgorithm(alg)} if alg else {}
                w = XrplWallet.from_seed(entry["seed"], **kw)
                keys.append(WalletKeys(public_key=w.public_key, private_key=w.private_key))
            else:
                keys.append(WalletKeys(public_key=entry["public_key"], private_key=entry["private_key"]))
        log.debug("Loaded %d keypairs from %s", len(keys), self.path)
        return keys


def generate_keys(path: str | Path, n: int, algorithm: str = "secp256k1") -> list[str]:
    """Write ``n`` fresh seeds to ``path``. Returns the classic addresses to fund."""
    alg = xrpl.CryptoAlgorithm(algorithm)
    wallets = [XrplWallet.create(algorithm=alg) for _ in range(n)]
    Path(path).write_text(json.dumps([{"seed": w.seed, "algorithm": alg.value} for w in wallets], indent=2))
    return [w.address for w in wallets]
