"""
Shared fixtures: an in-memory ledger, a controllable clock and wired-up
settlement components.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest
from solders.hash import Hash
from solders.keypair import Keypair

from solpay_gateway.payments.assets import AssetRegistry, USDC_MINT
from solpay_gateway.payments.exceptions import LedgerTransportError
from solpay_gateway.payments.ledger import SignatureRef
from solpay_gateway.payments.reconciler import SettlementReconciler
from solpay_gateway.payments.service import PaymentService
from solpay_gateway.payments.store import InMemoryPaymentSessionStore
from solpay_gateway.payments.transaction_builder import FeeSettings, TransactionBuilder


def new_address() -> str:
    return str(Keypair().pubkey())


class FakeClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeLedger:
    """Ledger access backed by dictionaries; history is kept newest-first."""

    def __init__(self) -> None:
        self.accounts: Dict[str, Dict[str, Any]] = {}
        self.failing_accounts: set = set()
        self.history: Dict[str, List[SignatureRef]] = {}
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.history_error: Optional[Exception] = None
        self.transaction_error: Optional[Exception] = None
        self.blockhash_calls = 0
        self.history_calls = 0
        self.account_lookups: List[str] = []
        self.fetched: List[str] = []
        self.timeouts: List[Optional[float]] = []

    # LedgerAccess ------------------------------------------------------------

    def get_account_info(self, address, timeout=None):
        self.account_lookups.append(address)
        if address in self.failing_accounts:
            raise LedgerTransportError(f"lookup failed for {address}")
        return self.accounts.get(address)

    def get_latest_blockhash(self, timeout=None):
        self.blockhash_calls += 1
        return str(Hash(self.blockhash_calls.to_bytes(32, "big")))

    def get_signatures_for_address(self, address, limit=20, timeout=None):
        self.history_calls += 1
        self.timeouts.append(timeout)
        if self.history_error is not None:
            raise self.history_error
        return list(self.history.get(address, []))[:limit]

    def get_transaction(self, signature, timeout=None):
        self.fetched.append(signature)
        self.timeouts.append(timeout)
        if self.transaction_error is not None:
            raise self.transaction_error
        return self.transactions.get(signature)

    # Helpers -----------------------------------------------------------------

    def add_account(self, address: str) -> None:
        self.accounts[str(address)] = {"lamports": 2039280, "owner": "token", "data": ["", "base64"]}

    def record(
        self,
        recipient: str,
        signature: str,
        tx: Optional[Dict[str, Any]],
        block_time: Optional[int],
        slot: int = 1,
        err: Any = None,
    ) -> None:
        """Record a transaction as the newest entry in ``recipient``'s history."""
        self.history.setdefault(recipient, []).insert(
            0, SignatureRef(signature=signature, slot=slot, block_time=block_time, err=err)
        )
        if tx is not None:
            tx.setdefault("slot", slot)
            tx.setdefault("blockTime", block_time)
            self.transactions[signature] = tx


def native_transfer_tx(payer: str, recipient: str, delta: int, err: Any = None) -> Dict[str, Any]:
    return {
        "meta": {
            "err": err,
            "fee": 5000,
            "preBalances": [10_000_000_000, 1_000_000, 1],
            "postBalances": [10_000_000_000 - delta - 5000, 1_000_000 + delta, 1],
            "preTokenBalances": [],
            "postTokenBalances": [],
        },
        "transaction": {
            "message": {
                "accountKeys": [
                    {"pubkey": payer, "signer": True, "writable": True},
                    {"pubkey": recipient, "signer": False, "writable": True},
                    {"pubkey": "11111111111111111111111111111111", "signer": False, "writable": False},
                ]
            }
        },
    }


def token_transfer_tx(
    payer: str,
    recipient: str,
    delta: int,
    mint: str = USDC_MINT,
    pre_amount: Optional[int] = 250_000,
) -> Dict[str, Any]:
    pre_balances = []
    if pre_amount is not None:
        pre_balances.append(
            {"accountIndex": 2, "mint": mint, "owner": recipient, "uiTokenAmount": {"amount": str(pre_amount)}}
        )
    base = pre_amount or 0
    return {
        "meta": {
            "err": None,
            "preBalances": [1, 1, 1],
            "postBalances": [1, 1, 1],
            "preTokenBalances": pre_balances
            + [{"accountIndex": 1, "mint": mint, "owner": payer, "uiTokenAmount": {"amount": "9000000"}}],
            "postTokenBalances": [
                {"accountIndex": 1, "mint": mint, "owner": payer, "uiTokenAmount": {"amount": str(9_000_000 - delta)}},
                {"accountIndex": 2, "mint": mint, "owner": recipient, "uiTokenAmount": {"amount": str(base + delta)}},
            ],
        },
        "transaction": {"message": {"accountKeys": [payer, new_address(), new_address()]}},
    }


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry() -> AssetRegistry:
    return AssetRegistry.default()


@pytest.fixture
def store(registry, clock) -> InMemoryPaymentSessionStore:
    return InMemoryPaymentSessionStore(registry, ttl_seconds=1800, clock=clock)


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def recipient() -> str:
    return new_address()


@pytest.fixture
def payer() -> str:
    return new_address()


@pytest.fixture
def fee_collector() -> str:
    return new_address()


@pytest.fixture
def fee(fee_collector) -> FeeSettings:
    return FeeSettings(collector=fee_collector, amount=Decimal("1.0"), asset="USDC")


@pytest.fixture
def builder(ledger, registry, fee) -> TransactionBuilder:
    return TransactionBuilder(ledger, registry, fee=fee)


@pytest.fixture
def reconciler(store, registry, ledger) -> SettlementReconciler:
    return SettlementReconciler(store, registry, ledger)


@pytest.fixture
def service(store, registry, builder, reconciler) -> PaymentService:
    return PaymentService(
        store=store,
        registry=registry,
        builder=builder,
        reconciler=reconciler,
        base_url="https://pay.example.com/api",
        icon_url="https://pay.example.com/icon.svg",
        verify_timeout=5.0,
    )


def block_time_after(session, seconds: int = 5) -> int:
    return int(session.created_at.timestamp()) + seconds
