import logging
from typing import Any, Dict, List, Optional

from .addresses import is_valid_address
from .assets import AssetRegistry
from .exceptions import ConflictError, ExpiredError, NotFoundError, ValidationError
from .ledger import LedgerAccess
from .models import MatchResult, PaymentSession, PaymentStatus
from .reconciler import SettlementReconciler
from .request_uri import transaction_request_uri, transfer_request_uri
from .solana_rpc import SolanaRpcClient
from .store import InMemoryPaymentSessionStore, PaymentSessionStore
from .transaction_builder import FeeSettings, TransactionBuilder

logger = logging.getLogger(__name__)


class PaymentService:
    """
    Entry point for payment operations, independent of the transport layer.
    """

    def __init__(
        self,
        store: PaymentSessionStore,
        registry: AssetRegistry,
        builder: TransactionBuilder,
        reconciler: SettlementReconciler,
        base_url: str,
        icon_url: Optional[str] = None,
        verify_timeout: Optional[float] = None,
        build_timeout: Optional[float] = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._builder = builder
        self._reconciler = reconciler
        self._base_url = base_url
        self._icon_url = icon_url
        self._verify_timeout = verify_timeout
        self._build_timeout = build_timeout

    @classmethod
    def from_config(cls, config, ledger: Optional[LedgerAccess] = None) -> "PaymentService":
        registry = AssetRegistry.from_config(config.assets)
        if ledger is None:
            ledger = SolanaRpcClient(
                endpoint=config.solana.rpc_url,
                timeout=config.solana.timeout_sec,
                max_retries=config.solana.max_retries,
                backoff_factor=config.solana.backoff_factor,
                commitment=config.solana.commitment,
            )
        store = InMemoryPaymentSessionStore(
            registry, ttl_seconds=config.settlement.session_ttl_sec
        )
        fee = None
        if config.fees.is_enabled:
            fee = FeeSettings(
                collector=config.fees.wallet,
                amount=config.fees.amount,
                asset=config.fees.asset,
            )
        builder = TransactionBuilder(ledger, registry, fee=fee)
        reconciler = SettlementReconciler(
            store,
            registry,
            ledger,
            history_limit=config.settlement.history_limit,
            native_tolerance_floor=config.settlement.native_tolerance_floor,
            native_tolerance_ratio=config.settlement.native_tolerance_ratio,
        )
        return cls(
            store=store,
            registry=registry,
            builder=builder,
            reconciler=reconciler,
            base_url=config.server.base_url,
            icon_url=config.server.icon_url,
            verify_timeout=config.settlement.verify_timeout_sec,
            build_timeout=config.solana.timeout_sec,
        )

    @property
    def store(self) -> PaymentSessionStore:
        return self._store

    @property
    def registry(self) -> AssetRegistry:
        return self._registry

    def create_payment(
        self,
        recipient: str,
        amount: Any,
        asset: str,
        label: Optional[str] = None,
        message: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not recipient or amount is None or not asset:
            raise ValidationError("Missing required fields")
        if not is_valid_address(recipient):
            raise ValidationError("Invalid recipient address")
        if not self._registry.is_supported(asset):
            raise ValidationError("Token not supported")

        session = self._store.create(recipient, amount, asset, label=label, message=message)
        data = session.to_dict()
        data["payment_url"] = transaction_request_uri(self._base_url, session.id)
        data["transfer_url"] = transfer_request_uri(session, self._registry)
        return data

    def get_payment(self, session_id: str) -> PaymentSession:
        session = self._store.get(session_id)
        if session is None:
            raise NotFoundError("Payment not found")
        return session

    def transaction_metadata(self, session_id: str) -> Dict[str, Any]:
        session = self.get_payment(session_id)
        if session.status is PaymentStatus.EXPIRED:
            raise ExpiredError("Payment expired")
        return {"label": session.display_label, "icon": self._icon_url}

    def create_transaction(self, session_id: str, account: Any) -> Dict[str, Any]:
        session = self.get_payment(session_id)
        if session.status is PaymentStatus.COMPLETED:
            raise ConflictError("Payment already completed")
        if session.status is not PaymentStatus.PENDING:
            raise ExpiredError(f"Payment {session.status.value}")

        built = self._builder.build(account, session, timeout=self._build_timeout)
        logger.info(
            "Transaction created for payment=%s payer=%s size=%d bytes instructions=%d",
            session_id,
            account,
            built.size,
            built.instruction_count,
        )
        return {
            "transaction": built.to_base64(),
            "message": session.message or f"Pay {session.amount} {session.asset}",
        }

    def verify_payment(self, session_id: str, signature: Optional[str] = None) -> MatchResult:
        session = self.get_payment(session_id)
        if signature:
            result = self._reconciler.verify_signature(
                session, signature, timeout=self._verify_timeout
            )
        else:
            result = self._reconciler.reconcile(session, timeout=self._verify_timeout)

        if result.matched:
            logger.info("Payment verified successfully: %s", session_id)
        else:
            logger.info("Payment verification pending for %s: %s", session_id, result.error)
        return result

    def payment_status(self, session_id: str) -> Dict[str, Any]:
        return self.get_payment(session_id).to_dict()

    def stats(self) -> Dict[str, int]:
        return self._store.stats()

    def supported_assets(self) -> List[str]:
        return self._registry.symbols()
