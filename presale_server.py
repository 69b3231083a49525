import argparse
import asyncio
import base64
import contextlib
import json
import logging
import os
import signal
import sqlite3
import struct
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import aiohttp
import base58
from aiohttp import web
from dotenv import load_dotenv
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.transaction import Transaction
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    create_associated_token_account,
    get_associated_token_address,
    transfer,
)
from spl.token.models import TransferParams

logger = logging.getLogger(__name__)

DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"
TOKEN_DECIMALS = 9
NATIVE_DECIMALS = 9
STABLE_DECIMALS = 6

SYSTEM_TRANSFER_INDEX = 2
SPL_TRANSFER = 3
SPL_TRANSFER_CHECKED = 12


class Currency(str, Enum):
    NATIVE = "NATIVE"
    STABLE = "STABLE"


class PurchaseStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


CURRENCY_ALIASES = {
    "NATIVE": Currency.NATIVE,
    "SOL": Currency.NATIVE,
    "STABLE": Currency.STABLE,
    "USDT": Currency.STABLE,
}

# payment units per presale token
PRICE_TABLE = {
    Currency.STABLE: Decimal("0.001"),
    Currency.NATIVE: Decimal("0.000005"),
}

PAYMENT_DECIMALS = {
    Currency.NATIVE: NATIVE_DECIMALS,
    Currency.STABLE: STABLE_DECIMALS,
}


def parse_currency(value: Any) -> Optional[Currency]:
    if not isinstance(value, str):
        return None
    return CURRENCY_ALIASES.get(value.strip().upper())


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ValueError(f"amount must be numeric, got: {value!r}")
    try:
        out = Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"amount must be numeric, got: {value!r}") from e
    if not out.is_finite():
        raise ValueError(f"amount must be finite, got: {value!r}")
    return out


def to_base_units(amount: Any, decimals: int) -> Optional[int]:
    """Convert a UI amount to integer base units, or None if it is not exact."""
    scaled = to_decimal(amount) * (Decimal(10) ** decimals)
    if scaled != scaled.to_integral_value():
        return None
    return int(scaled)


def token_quantity(amount: Any, currency: Currency) -> int:
    price = PRICE_TABLE[currency]
    raw = to_decimal(amount) / price * (Decimal(10) ** TOKEN_DECIMALS)
    return int(raw.to_integral_value(rounding=ROUND_FLOOR))


def new_intent_id() -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:12]}"


class PresaleError(Exception):
    pass


class ConfigError(PresaleError):
    pass


class NotFound(PresaleError):
    pass


class InvalidPayment(PresaleError):
    pass


class AlreadyProcessed(PresaleError):
    pass


class DisbursementError(PresaleError):
    pass


@dataclass
class AppConfig:
    rpc_url: str
    token_mint: str
    presale_wallet_private_key: str
    api_host: str
    api_port: int
    cors_allow_origins: List[str]
    store_mode: str
    sqlite_path: str
    pending_ttl_sec: int
    sweep_interval_sec: int
    progress_path: str
    rpc_timeout_sec: int
    max_rpc_retries: int
    confirm_timeout_sec: int
    log_level: str


def _parse_origins(raw: Any) -> List[str]:
    if isinstance(raw, str):
        return [x.strip().rstrip("/") for x in raw.split(",") if x and x.strip()]
    if isinstance(raw, list):
        return [str(x).strip().rstrip("/") for x in raw if str(x).strip()]
    return []


def _int_option(raw: Dict[str, Any], key: str, default: int, minimum: int = 0) -> int:
    try:
        value = int(raw.get(key, default))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{key} must be integer") from e
    if value < minimum:
        raise ConfigError(f"{key} must be >= {minimum}")
    return value


def load_config(
    path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None
) -> AppConfig:
    """Build the runtime config.

    Values come from the optional JSON file at ``path`` (upper-case keys) and
    are overridden by ``environ`` (defaults to ``os.environ``).
    """
    raw: Dict[str, Any] = {}
    if path and Path(path).exists():
        with open(path, "r", encoding="utf-8") as f:
            try:
                raw = json.load(f)
            except json.JSONDecodeError as e:
                raise ConfigError(f"invalid config file {path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"config file {path} must contain a JSON object")
    env = os.environ if environ is None else environ
    for key in (
        "RPC_URL",
        "TOKEN_MINT",
        "PRESALE_WALLET_PRIVATE_KEY",
        "API_HOST",
        "PORT",
        "CORS_ALLOW_ORIGINS",
        "STORE_MODE",
        "SQLITE_PATH",
        "PENDING_TTL_SEC",
        "SWEEP_INTERVAL_SEC",
        "PROGRESS_PATH",
        "RPC_TIMEOUT_SEC",
        "MAX_RPC_RETRIES",
        "CONFIRM_TIMEOUT_SEC",
        "LOG_LEVEL",
    ):
        if env.get(key):
            raw[key] = env[key]

    token_mint = str(raw.get("TOKEN_MINT", "")).strip()
    if not token_mint:
        raise ConfigError("TOKEN_MINT is not defined")
    try:
        Pubkey.from_string(token_mint)
    except Exception as e:
        raise ConfigError(f"TOKEN_MINT is not a valid public key: {token_mint}") from e

    store_mode = str(raw.get("STORE_MODE", "memory")).lower()
    if store_mode not in {"memory", "sqlite"}:
        raise ConfigError("STORE_MODE only supports memory or sqlite")

    cors_raw = raw.get("CORS_ALLOW_ORIGINS", "*")
    if isinstance(cors_raw, str) and cors_raw.strip().startswith("["):
        with contextlib.suppress(json.JSONDecodeError):
            cors_raw = json.loads(cors_raw)

    return AppConfig(
        rpc_url=str(raw.get("RPC_URL", DEFAULT_RPC_URL)).strip(),
        token_mint=token_mint,
        presale_wallet_private_key=str(raw.get("PRESALE_WALLET_PRIVATE_KEY", "")).strip(),
        api_host=str(raw.get("API_HOST", "0.0.0.0")),
        api_port=_int_option(raw, "PORT", 3000, minimum=1),
        cors_allow_origins=_parse_origins(cors_raw),
        store_mode=store_mode,
        sqlite_path=str(raw.get("SQLITE_PATH", "./data/presale.db")),
        pending_ttl_sec=_int_option(raw, "PENDING_TTL_SEC", 86400),
        sweep_interval_sec=_int_option(raw, "SWEEP_INTERVAL_SEC", 60, minimum=1),
        progress_path=str(raw.get("PROGRESS_PATH", "progress.json")),
        rpc_timeout_sec=_int_option(raw, "RPC_TIMEOUT_SEC", 30, minimum=1),
        max_rpc_retries=_int_option(raw, "MAX_RPC_RETRIES", 1, minimum=1),
        confirm_timeout_sec=_int_option(raw, "CONFIRM_TIMEOUT_SEC", 60, minimum=1),
        log_level=str(raw.get("LOG_LEVEL", "info")).lower(),
    )


@dataclass
class WalletLoadResult:
    keypair: Optional[Keypair] = None
    error: Optional[ConfigError] = None

    @property
    def ok(self) -> bool:
        return self.keypair is not None


def load_presale_wallet(secret: Optional[str]) -> WalletLoadResult:
    if not secret:
        return WalletLoadResult(error=ConfigError("PRESALE_WALLET_PRIVATE_KEY is not defined"))
    try:
        keypair = Keypair.from_bytes(base58.b58decode(secret.strip()))
    except Exception as e:
        return WalletLoadResult(
            error=ConfigError(f"PRESALE_WALLET_PRIVATE_KEY could not be decoded: {e}")
        )
    return WalletLoadResult(keypair=keypair)


class RPCClient:
    def __init__(self, url: str, max_retries: int = 1, timeout_sec: int = 30):
        self.url = url
        self.max_retries = max_retries
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session: Optional[aiohttp.ClientSession] = None
        self._id = 1

    async def __aenter__(self) -> "RPCClient":
        self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()

    async def call(self, method: str, params: List[Any]) -> Any:
        if not self._session:
            raise RuntimeError("RPC session is not initialized")
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        self._id += 1

        backoff = 0.5
        for attempt in range(1, self.max_retries + 1):
            try:
                async with self._session.post(self.url, json=payload) as resp:
                    data = await resp.json(content_type=None)
                if "error" in data:
                    raise RuntimeError(f"RPC error: {data['error']}")
                return data.get("result")
            except Exception:
                if attempt >= self.max_retries:
                    raise
                await asyncio.sleep(backoff)
                backoff *= 2


class SolanaRPC(RPCClient):
    async def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        return await self.call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "json",
                    "commitment": "confirmed",
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )

    async def get_account_info(self, address: str) -> Optional[Dict[str, Any]]:
        result = await self.call(
            "getAccountInfo", [address, {"encoding": "base64", "commitment": "confirmed"}]
        )
        return (result or {}).get("value")

    async def get_latest_blockhash(self) -> str:
        result = await self.call("getLatestBlockhash", [{"commitment": "confirmed"}])
        return result["value"]["blockhash"]

    async def send_transaction(self, raw_tx: bytes) -> str:
        encoded = base64.b64encode(raw_tx).decode("ascii")
        return await self.call(
            "sendTransaction",
            [encoded, {"encoding": "base64", "preflightCommitment": "confirmed"}],
        )

    async def get_signature_status(self, signature: str) -> Optional[Dict[str, Any]]:
        result = await self.call("getSignatureStatuses", [[signature]])
        values = (result or {}).get("value") or [None]
        return values[0]


def _instruction_program(message: Dict[str, Any], ix: Dict[str, Any]) -> Optional[str]:
    if "programId" in ix:
        return str(ix["programId"])
    keys = message.get("accountKeys") or []
    index = ix.get("programIdIndex")
    if index is None or index >= len(keys):
        return None
    key = keys[index]
    return key.get("pubkey") if isinstance(key, dict) else str(key)


def decode_transfer_amount(program_id: str, data: bytes) -> Optional[int]:
    """Return the amount field of a System or SPL Token transfer, if any."""
    if program_id == str(SYSTEM_PROGRAM_ID):
        index, lamports = struct.unpack_from("<IQ", data, 0)
        return lamports if index == SYSTEM_TRANSFER_INDEX else None
    if program_id == str(TOKEN_PROGRAM_ID):
        if data[0] not in (SPL_TRANSFER, SPL_TRANSFER_CHECKED):
            return None
        (amount,) = struct.unpack_from("<Q", data, 1)
        return amount
    return None


class PaymentVerifier:
    def __init__(self, rpc: SolanaRPC):
        self.rpc = rpc

    async def verify(self, tx_reference: str, expected_amount: Any, currency: Any) -> bool:
        try:
            cur = parse_currency(currency)
            if cur is None:
                logger.warning(f"unsupported payment currency: {currency!r}")
                return False
            expected = to_base_units(expected_amount, PAYMENT_DECIMALS[cur])
            if expected is None:
                return False

            tx = await self.rpc.get_transaction(tx_reference)
            if not tx:
                return False
            err = (tx.get("meta") or {}).get("err")
            if err is not None:
                logger.warning(f"payment {tx_reference} failed on chain: {err}")
                return False

            program_id = str(SYSTEM_PROGRAM_ID if cur is Currency.NATIVE else TOKEN_PROGRAM_ID)
            message = tx["transaction"]["message"]
            # only the first instruction aimed at the program is inspected
            for ix in message.get("instructions", []):
                if _instruction_program(message, ix) != program_id:
                    continue
                amount = decode_transfer_amount(program_id, base58.b58decode(ix["data"]))
                return amount is not None and amount == expected
            return False
        except Exception:
            logger.exception(f"payment verification failed for {tx_reference}")
            return False


class TokenDisburser:
    def __init__(
        self,
        rpc: SolanaRPC,
        presale_keypair: Keypair,
        token_mint: str,
        confirm_timeout_sec: int = 60,
        poll_interval_sec: float = 1.0,
    ):
        self.rpc = rpc
        self.presale_keypair = presale_keypair
        self.token_mint = Pubkey.from_string(token_mint)
        self.confirm_timeout_sec = confirm_timeout_sec
        self.poll_interval_sec = poll_interval_sec

    async def build_instructions(self, buyer: Pubkey, amount: int) -> list:
        owner = self.presale_keypair.pubkey()
        buyer_ata = get_associated_token_address(buyer, self.token_mint)
        presale_ata = get_associated_token_address(owner, self.token_mint)

        instructions = []
        if await self.rpc.get_account_info(str(buyer_ata)) is None:
            instructions.append(
                create_associated_token_account(payer=owner, owner=buyer, mint=self.token_mint)
            )
        instructions.append(
            transfer(
                TransferParams(
                    program_id=TOKEN_PROGRAM_ID,
                    source=presale_ata,
                    dest=buyer_ata,
                    owner=owner,
                    amount=amount,
                )
            )
        )
        return instructions

    async def wait_for_confirmation(self, signature: str) -> None:
        deadline = time.monotonic() + self.confirm_timeout_sec
        while True:
            status = await self.rpc.get_signature_status(signature)
            if status:
                if status.get("err") is not None:
                    raise DisbursementError(f"transaction {signature} failed: {status['err']}")
                if status.get("confirmationStatus") in {"confirmed", "finalized"}:
                    return
            if time.monotonic() >= deadline:
                raise DisbursementError(f"transaction {signature} was not confirmed in time")
            await asyncio.sleep(self.poll_interval_sec)

    async def send_tokens(self, buyer_address: str, amount: int) -> str:
        try:
            buyer = Pubkey.from_string(str(buyer_address))
            instructions = await self.build_instructions(buyer, amount)
            blockhash = Hash.from_string(await self.rpc.get_latest_blockhash())
            message = Message.new_with_blockhash(
                instructions, self.presale_keypair.pubkey(), blockhash
            )
            tx = Transaction([self.presale_keypair], message, blockhash)
            signature = await self.rpc.send_transaction(bytes(tx))
            logger.info(f"token transfer submitted: {signature} ({amount} units to {buyer})")
            await self.wait_for_confirmation(signature)
        except DisbursementError:
            raise
        except Exception as e:
            raise DisbursementError(f"token transfer failed: {e}") from e
        logger.info(f"token transfer confirmed: {signature}")
        return signature


@dataclass
class PurchaseIntent:
    id: str
    buyer_address: Any
    amount: Any
    currency: Any
    status: PurchaseStatus = PurchaseStatus.PENDING
    created_at: int = field(default_factory=lambda: int(time.time()))
    updated_at: int = 0
    token_signature: Optional[str] = None
    payment_signature: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transactionId": self.id,
            "buyerAddress": self.buyer_address,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status.value,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at or self.created_at,
            "tokenSignature": self.token_signature,
            "paymentSignature": self.payment_signature,
        }


class PurchaseStore(ABC):
    """Owner of all purchase intents and of the accepted payment references.

    Every method is synchronous so a call can never interleave with another
    coroutine on the event loop.
    """

    @abstractmethod
    def get(self, intent_id: str) -> Optional[PurchaseIntent]:
        ...

    @abstractmethod
    def put(self, intent: PurchaseIntent) -> None:
        ...

    @abstractmethod
    def compare_and_swap_status(
        self,
        intent_id: str,
        expected: PurchaseStatus,
        new: PurchaseStatus,
        **fields: Any,
    ) -> bool:
        ...

    @abstractmethod
    def claim_payment(self, signature: str, intent_id: str) -> bool:
        """Bind a payment reference to one intent; False if another owns it."""

    @abstractmethod
    def release_payment(self, signature: str, intent_id: str) -> None:
        ...

    @abstractmethod
    def delete_pending_older_than(self, cutoff_ts: int) -> int:
        ...

    @abstractmethod
    def count_by_status(self) -> Dict[str, int]:
        ...

    def close(self) -> None:
        pass


class MemoryPurchaseStore(PurchaseStore):
    def __init__(self) -> None:
        self._items: Dict[str, PurchaseIntent] = {}
        self._payments: Dict[str, str] = {}

    def get(self, intent_id: str) -> Optional[PurchaseIntent]:
        return self._items.get(intent_id)

    def claim_payment(self, signature: str, intent_id: str) -> bool:
        owner = self._payments.setdefault(signature, intent_id)
        return owner == intent_id

    def release_payment(self, signature: str, intent_id: str) -> None:
        if self._payments.get(signature) == intent_id:
            del self._payments[signature]

    def put(self, intent: PurchaseIntent) -> None:
        self._items[intent.id] = intent

    def compare_and_swap_status(self, intent_id, expected, new, **fields) -> bool:
        intent = self._items.get(intent_id)
        if intent is None or intent.status != expected:
            return False
        for key, value in fields.items():
            setattr(intent, key, value)
        intent.status = new
        intent.updated_at = int(time.time())
        return True

    def delete_pending_older_than(self, cutoff_ts: int) -> int:
        stale = [
            k
            for k, v in self._items.items()
            if v.status == PurchaseStatus.PENDING and v.created_at < cutoff_ts
        ]
        for k in stale:
            del self._items[k]
        return len(stale)

    def count_by_status(self) -> Dict[str, int]:
        out = {s.value: 0 for s in PurchaseStatus}
        for v in self._items.values():
            out[v.status.value] += 1
        return out


class SqlitePurchaseStore(PurchaseStore):
    UPDATABLE_FIELDS = {"token_signature", "payment_signature"}

    def __init__(self, db_path: str):
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(db_path)
        self.conn.row_factory = sqlite3.Row
        self._init_schema()

    def close(self) -> None:
        self.conn.close()

    def _init_schema(self) -> None:
        cur = self.conn.cursor()
        cur.executescript(
            """
            PRAGMA journal_mode=WAL;
            PRAGMA synchronous=NORMAL;

            CREATE TABLE IF NOT EXISTS purchases (
                id TEXT PRIMARY KEY,
                buyer_address TEXT,
                amount TEXT,
                currency TEXT,
                status TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                token_signature TEXT,
                payment_signature TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_purchases_status_created
                ON purchases(status, created_at);

            CREATE TABLE IF NOT EXISTS payments (
                signature TEXT PRIMARY KEY,
                intent_id TEXT NOT NULL,
                claimed_at INTEGER NOT NULL
            );
            """
        )
        self.conn.commit()
        stuck = self.conn.execute(
            "SELECT COUNT(1) AS c FROM purchases WHERE status = ?",
            (PurchaseStatus.IN_PROGRESS.value,),
        ).fetchone()
        if stuck and stuck["c"]:
            # in-progress rows are never released automatically
            logger.warning(f"{stuck['c']} purchases are still in progress from a previous run")

    def _row_to_intent(self, row: sqlite3.Row) -> PurchaseIntent:
        return PurchaseIntent(
            id=row["id"],
            buyer_address=json.loads(row["buyer_address"]),
            amount=json.loads(row["amount"]),
            currency=json.loads(row["currency"]),
            status=PurchaseStatus(row["status"]),
            created_at=int(row["created_at"]),
            updated_at=int(row["updated_at"]),
            token_signature=row["token_signature"],
            payment_signature=row["payment_signature"],
        )

    def get(self, intent_id: str) -> Optional[PurchaseIntent]:
        row = self.conn.execute("SELECT * FROM purchases WHERE id = ?", (intent_id,)).fetchone()
        return self._row_to_intent(row) if row else None

    def put(self, intent: PurchaseIntent) -> None:
        self.conn.execute(
            """
            INSERT OR REPLACE INTO purchases (
                id, buyer_address, amount, currency, status,
                created_at, updated_at, token_signature, payment_signature
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                intent.id,
                json.dumps(intent.buyer_address),
                json.dumps(intent.amount),
                json.dumps(intent.currency),
                intent.status.value,
                intent.created_at,
                intent.updated_at or intent.created_at,
                intent.token_signature,
                intent.payment_signature,
            ),
        )
        self.conn.commit()

    def compare_and_swap_status(self, intent_id, expected, new, **fields) -> bool:
        unknown = set(fields) - self.UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update fields: {', '.join(sorted(unknown))}")
        assignments = ["status = ?", "updated_at = ?"] + [f"{k} = ?" for k in fields]
        params = [new.value, int(time.time())] + list(fields.values())
        cur = self.conn.execute(
            f"UPDATE purchases SET {', '.join(assignments)} WHERE id = ? AND status = ?",
            params + [intent_id, expected.value],
        )
        self.conn.commit()
        return cur.rowcount == 1

    def claim_payment(self, signature: str, intent_id: str) -> bool:
        self.conn.execute(
            "INSERT OR IGNORE INTO payments (signature, intent_id, claimed_at) VALUES (?, ?, ?)",
            (signature, intent_id, int(time.time())),
        )
        self.conn.commit()
        row = self.conn.execute(
            "SELECT intent_id FROM payments WHERE signature = ?", (signature,)
        ).fetchone()
        return row is not None and row["intent_id"] == intent_id

    def release_payment(self, signature: str, intent_id: str) -> None:
        self.conn.execute(
            "DELETE FROM payments WHERE signature = ? AND intent_id = ?",
            (signature, intent_id),
        )
        self.conn.commit()

    def delete_pending_older_than(self, cutoff_ts: int) -> int:
        cur = self.conn.execute(
            "DELETE FROM purchases WHERE status = ? AND created_at < ?",
            (PurchaseStatus.PENDING.value, cutoff_ts),
        )
        self.conn.commit()
        return cur.rowcount

    def count_by_status(self) -> Dict[str, int]:
        out = {s.value: 0 for s in PurchaseStatus}
        rows = self.conn.execute(
            "SELECT status, COUNT(1) AS c FROM purchases GROUP BY status"
        ).fetchall()
        for row in rows:
            out[row["status"]] = int(row["c"])
        return out


class PurchaseService:
    def __init__(
        self,
        store: PurchaseStore,
        verifier: PaymentVerifier,
        disburser: TokenDisburser,
        pending_ttl_sec: int = 0,
    ):
        self.store = store
        self.verifier = verifier
        self.disburser = disburser
        self.pending_ttl_sec = pending_ttl_sec

    def initiate(self, buyer_address: Any, amount: Any, currency: Any) -> str:
        intent = PurchaseIntent(
            id=new_intent_id(),
            buyer_address=buyer_address,
            amount=amount,
            currency=currency,
        )
        self.store.put(intent)
        logger.info(f"purchase {intent.id} initiated: {amount} {currency} by {buyer_address}")
        return intent.id

    def _claim(self, intent_id: str) -> PurchaseIntent:
        intent = self.store.get(intent_id)
        if intent is None:
            raise NotFound("Transaction not found")
        if not self.store.compare_and_swap_status(
            intent_id, PurchaseStatus.PENDING, PurchaseStatus.IN_PROGRESS
        ):
            current = self.store.get(intent_id)
            if current is None:
                raise NotFound("Transaction not found")
            if current.status == PurchaseStatus.COMPLETED:
                raise AlreadyProcessed("Transaction already completed")
            raise AlreadyProcessed("Transaction is being processed")
        return intent

    def _release(self, intent_id: str) -> None:
        self.store.compare_and_swap_status(
            intent_id, PurchaseStatus.IN_PROGRESS, PurchaseStatus.PENDING
        )

    async def confirm(self, intent_id: str, tx_reference: str) -> PurchaseIntent:
        intent = self._claim(intent_id)
        payment_claimed = False
        try:
            if not self.store.claim_payment(tx_reference, intent_id):
                raise InvalidPayment("Payment already used")
            payment_claimed = True

            valid = await self.verifier.verify(tx_reference, intent.amount, intent.currency)
            if not valid:
                raise InvalidPayment("Invalid payment")

            amount = token_quantity(intent.amount, parse_currency(intent.currency))
            try:
                token_signature = await self.disburser.send_tokens(intent.buyer_address, amount)
            except DisbursementError:
                raise
            except Exception as e:
                raise DisbursementError(str(e)) from e
        except BaseException:
            if payment_claimed:
                self.store.release_payment(tx_reference, intent_id)
            self._release(intent_id)
            raise

        self.store.compare_and_swap_status(
            intent_id,
            PurchaseStatus.IN_PROGRESS,
            PurchaseStatus.COMPLETED,
            token_signature=token_signature,
            payment_signature=tx_reference,
        )
        logger.info(f"purchase {intent_id} completed: {token_signature}")
        return self.store.get(intent_id)

    def sweep_expired(self, now: Optional[int] = None) -> int:
        if self.pending_ttl_sec <= 0:
            return 0
        now = int(time.time()) if now is None else now
        removed = self.store.delete_pending_older_than(now - self.pending_ttl_sec)
        if removed:
            logger.info(f"expired {removed} pending purchases")
        return removed


class PresaleServer:
    def __init__(
        self,
        cfg: AppConfig,
        presale_keypair: Keypair,
        rpc: Optional[SolanaRPC] = None,
        store: Optional[PurchaseStore] = None,
    ):
        self.cfg = cfg
        self.presale_keypair = presale_keypair
        self.cors_allow_origins = {
            str(x).strip().rstrip("/") for x in cfg.cors_allow_origins if str(x).strip()
        }
        self.rpc = rpc or SolanaRPC(
            cfg.rpc_url, max_retries=cfg.max_rpc_retries, timeout_sec=cfg.rpc_timeout_sec
        )
        if store is None:
            store = (
                SqlitePurchaseStore(cfg.sqlite_path)
                if cfg.store_mode == "sqlite"
                else MemoryPurchaseStore()
            )
        self.store = store
        self.service = PurchaseService(
            store,
            PaymentVerifier(self.rpc),
            TokenDisburser(
                self.rpc,
                presale_keypair,
                cfg.token_mint,
                confirm_timeout_sec=cfg.confirm_timeout_sec,
            ),
            pending_ttl_sec=cfg.pending_ttl_sec,
        )
        self.stop_event = asyncio.Event()
        self.tasks: List[asyncio.Task] = []

    async def __aenter__(self) -> "PresaleServer":
        await self.rpc.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()
        await self.rpc.__aexit__(exc_type, exc, tb)
        self.store.close()

    async def sweep_loop(self) -> None:
        while not self.stop_event.is_set():
            await asyncio.sleep(self.cfg.sweep_interval_sec)
            try:
                self.service.sweep_expired()
            except Exception:
                logger.exception("pending purchase sweep failed")

    async def initiate_purchase_handler(self, request: web.Request) -> web.Response:
        try:
            payload = await request.json()
        except Exception:
            return web.json_response({"error": "invalid json body"}, status=400)
        try:
            transaction_id = self.service.initiate(
                payload.get("buyerAddress"), payload.get("amount"), payload.get("currency")
            )
        except Exception as e:
            return web.json_response({"error": str(e)}, status=500)
        return web.json_response({"transactionId": transaction_id})

    async def confirm_payment_handler(self, request: web.Request) -> web.Response:
        try:
            payload = await request.json()
        except Exception:
            return web.json_response({"error": "invalid json body"}, status=400)
        try:
            intent = await self.service.confirm(
                str(payload.get("transactionId", "")), str(payload.get("signature", ""))
            )
        except NotFound as e:
            return web.json_response({"error": str(e)}, status=404)
        except InvalidPayment as e:
            return web.json_response({"error": str(e)}, status=400)
        except AlreadyProcessed as e:
            return web.json_response({"error": str(e)}, status=409)
        except Exception as e:
            logger.error(f"payment confirmation failed: {e}")
            return web.json_response({"error": str(e)}, status=500)
        return web.json_response({"success": True, "signature": intent.token_signature})

    async def purchase_detail_handler(self, request: web.Request) -> web.Response:
        transaction_id = str(request.match_info.get("transaction_id", "")).strip()
        intent = self.store.get(transaction_id)
        if intent is None:
            return web.json_response({"error": "Transaction not found"}, status=404)
        return web.json_response(intent.to_dict())

    async def save_progress_handler(self, request: web.Request) -> web.Response:
        data = await request.json()
        with open(self.cfg.progress_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        return web.Response(text="Progress saved")

    async def health_handler(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "ok": True,
                "presaleWallet": str(self.presale_keypair.pubkey()),
                "tokenMint": self.cfg.token_mint,
                "storeMode": self.cfg.store_mode,
                "purchases": self.store.count_by_status(),
            }
        )

    def resolve_cors_origin(self, request_origin: Optional[str]) -> Optional[str]:
        if not request_origin or not self.cors_allow_origins:
            return None
        origin = str(request_origin).strip().rstrip("/")
        if not origin:
            return None
        if "*" in self.cors_allow_origins:
            return "*"
        if origin in self.cors_allow_origins:
            return origin
        return None

    async def create_api_app(self) -> web.Application:
        @web.middleware
        async def cors_middleware(request: web.Request, handler):
            allow_origin = self.resolve_cors_origin(request.headers.get("Origin"))
            if request.method == "OPTIONS":
                response: web.StreamResponse = web.Response(status=204)
            else:
                try:
                    response = await handler(request)
                except web.HTTPException as ex:
                    response = ex

            if allow_origin:
                response.headers["Access-Control-Allow-Origin"] = allow_origin
                response.headers["Vary"] = "Origin"
                response.headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
                response.headers["Access-Control-Allow-Headers"] = "Content-Type"
            return response

        middlewares = [cors_middleware] if self.cors_allow_origins else []
        app = web.Application(middlewares=middlewares)
        app.router.add_post("/api/initiate-purchase", self.initiate_purchase_handler)
        app.router.add_post("/api/confirm-payment", self.confirm_payment_handler)
        app.router.add_get("/api/purchases/{transaction_id}", self.purchase_detail_handler)
        app.router.add_post("/save-progress", self.save_progress_handler)
        app.router.add_get("/health", self.health_handler)
        return app

    async def run(self) -> None:
        if self.cfg.pending_ttl_sec > 0:
            self.tasks.append(asyncio.create_task(self.sweep_loop()))

        app = await self.create_api_app()
        runner = web.AppRunner(app)
        await runner.setup()
        try:
            site = web.TCPSite(runner, host=self.cfg.api_host, port=self.cfg.api_port)
            await site.start()
            logger.info(f"Server running on port {self.cfg.api_port}")

            while not self.stop_event.is_set():
                await asyncio.sleep(1)
        finally:
            # waits for in-flight handlers before the RPC session is closed
            await runner.cleanup()

    async def shutdown(self) -> None:
        self.stop_event.set()
        for t in self.tasks:
            t.cancel()
        for t in self.tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await t


async def main_async(cfg: AppConfig, wallet: WalletLoadResult) -> None:
    async with PresaleServer(cfg, wallet.keypair) as server:
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        def _on_stop() -> None:
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, _on_stop)

        run_task = asyncio.create_task(server.run())
        wait_task = asyncio.create_task(stop_event.wait())

        await asyncio.wait(
            {run_task, wait_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        wait_task.cancel()
        server.stop_event.set()
        # run() returns once its runner is cleaned up
        await run_task
        await server.shutdown()


def main() -> None:
    parser = argparse.ArgumentParser(description="Token presale payment broker")
    parser.add_argument(
        "--config",
        default="./config.json",
        help="optional config file path (default: ./config.json)",
    )
    args = parser.parse_args()

    load_dotenv()
    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        raise SystemExit(f"Configuration error: {e}") from e

    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    wallet = load_presale_wallet(cfg.presale_wallet_private_key)
    if not wallet.ok:
        logger.error(f"Error initializing presale wallet: {wallet.error}")
        raise SystemExit(1)
    logger.info(f"Presale wallet loaded successfully: {wallet.keypair.pubkey()}")

    try:
        asyncio.run(main_async(cfg, wallet))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
