"""
Solana Pay settlement core: session lifecycle, transaction building and
on-chain reconciliation.
"""

from .assets import AssetInfo, AssetRegistry  # noqa: F401
from .exceptions import (  # noqa: F401
    ConfigError,
    ConflictError,
    ExpiredError,
    GatewayError,
    InvalidPayerError,
    LedgerError,
    LedgerTimeoutError,
    LedgerTransportError,
    NotFoundError,
    ValidationError,
)
from .models import MatchResult, PaymentSession, PaymentStatus  # noqa: F401
from .reconciler import SettlementReconciler  # noqa: F401
from .service import PaymentService  # noqa: F401
from .solana_rpc import SolanaRpcClient  # noqa: F401
from .store import InMemoryPaymentSessionStore, PaymentSessionStore  # noqa: F401
from .transaction_builder import BuiltTransaction, FeeSettings, TransactionBuilder  # noqa: F401
