import logging
import time
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

from .assets import AssetInfo, AssetRegistry
from .exceptions import LedgerTimeoutError, LedgerTransportError, NotFoundError
from .ledger import LedgerAccess, SignatureRef
from .models import MatchResult, PaymentSession, PaymentStatus
from .store import PaymentSessionStore

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 20
DEFAULT_NATIVE_TOLERANCE_FLOOR = 1000
DEFAULT_NATIVE_TOLERANCE_RATIO = Decimal("0.01")


def _account_key(entry: Any) -> Optional[str]:
    # jsonParsed encoding wraps keys as {"pubkey": ..., "signer": ..., ...}.
    if isinstance(entry, dict):
        return entry.get("pubkey")
    return entry


def _token_amount(balance: Dict[str, Any]) -> int:
    return int((balance.get("uiTokenAmount") or {}).get("amount") or 0)


class _Deadline:
    def __init__(self, timeout: Optional[float]) -> None:
        self._expires = None if timeout is None else time.monotonic() + timeout

    def remaining(self) -> Optional[float]:
        if self._expires is None:
            return None
        left = self._expires - time.monotonic()
        if left <= 0:
            raise LedgerTimeoutError("Reconciliation deadline elapsed")
        return left


class SettlementReconciler:
    """
    Match payment sessions against the recipient's recent ledger history.

    Candidates are examined newest-first and the first matching transaction
    settles the session. Native SOL deltas are compared within a tolerance;
    token deltas must match exactly.
    """

    def __init__(
        self,
        store: PaymentSessionStore,
        registry: AssetRegistry,
        ledger: LedgerAccess,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        native_tolerance_floor: int = DEFAULT_NATIVE_TOLERANCE_FLOOR,
        native_tolerance_ratio: Decimal = DEFAULT_NATIVE_TOLERANCE_RATIO,
    ) -> None:
        self._store = store
        self._registry = registry
        self._ledger = ledger
        self._history_limit = history_limit
        self._native_tolerance_floor = native_tolerance_floor
        self._native_tolerance_ratio = Decimal(native_tolerance_ratio)

    def reconcile(self, session: PaymentSession, timeout: Optional[float] = None) -> MatchResult:
        current = self._current(session.id)
        if current.status is not PaymentStatus.PENDING:
            return self._short_circuit(current)

        asset = self._registry.get(current.asset)
        expected = asset.to_minor_units(current.amount)
        if expected <= 0:
            return self._no_match(current.id, "Payment amount is below the smallest transferable unit")
        since = int(current.created_at.timestamp())
        deadline = _Deadline(timeout)

        try:
            refs = self._ledger.get_signatures_for_address(
                current.recipient,
                limit=self._history_limit,
                timeout=deadline.remaining(),
            )
            logger.debug(
                "Found %d recent transactions for recipient=%s session=%s",
                len(refs),
                current.recipient,
                current.id,
            )
            for position, ref in enumerate(refs):
                if not self._is_candidate(ref, since):
                    continue
                tx = self._ledger.get_transaction(ref.signature, timeout=deadline.remaining())
                if not tx or (tx.get("meta") or {}).get("err") is not None:
                    logger.debug(
                        "Skipping signature=%s session=%s: missing or failed on-chain",
                        ref.signature,
                        current.id,
                    )
                    continue

                if self.transaction_matches(tx, current.recipient, asset, expected):
                    return self._settle(current, ref.signature, tx, ref, position)
        except LedgerTransportError as exc:
            logger.warning("Reconciliation for session=%s interrupted: %s", current.id, exc)
            return self._no_match(current.id, str(exc))

        logger.debug(
            "No matching transaction for session=%s expected=%s %s",
            current.id,
            expected,
            asset.symbol,
        )
        return self._no_match(current.id, "No matching transaction found")

    def verify_signature(
        self,
        session: PaymentSession,
        signature: str,
        timeout: Optional[float] = None,
    ) -> MatchResult:
        """
        Settle a session against a transaction signature reported by the payer.
        """
        current = self._current(session.id)
        if current.status is not PaymentStatus.PENDING:
            return self._short_circuit(current)

        asset = self._registry.get(current.asset)
        expected = asset.to_minor_units(current.amount)
        if expected <= 0:
            return self._no_match(current.id, "Payment amount is below the smallest transferable unit")
        try:
            tx = self._ledger.get_transaction(signature, timeout=timeout)
        except LedgerTransportError as exc:
            logger.warning("Signature verification for session=%s failed: %s", current.id, exc)
            return self._no_match(current.id, str(exc))

        if not tx:
            return self._no_match(current.id, "Transaction not found")
        if (tx.get("meta") or {}).get("err") is not None:
            return self._no_match(current.id, "Transaction failed")
        if not self.transaction_matches(tx, current.recipient, asset, expected):
            return self._no_match(current.id, "Transaction does not match payment")

        ref = SignatureRef(signature=signature, slot=tx.get("slot"), block_time=tx.get("blockTime"))
        return self._settle(current, signature, tx, ref, position=None)

    # Match evaluation -----------------------------------------------------

    def transaction_matches(
        self,
        tx: Dict[str, Any],
        recipient: str,
        asset: AssetInfo,
        expected: int,
    ) -> bool:
        meta = tx.get("meta") or {}
        if asset.is_native:
            message = (tx.get("transaction") or {}).get("message") or {}
            return self._native_matches(
                message.get("accountKeys") or [],
                meta.get("preBalances") or [],
                meta.get("postBalances") or [],
                recipient,
                expected,
            )
        return self._token_matches(
            meta.get("preTokenBalances") or [],
            meta.get("postTokenBalances") or [],
            recipient,
            asset.mint,
            expected,
        )

    def native_tolerance(self, expected: int) -> int:
        return max(self._native_tolerance_floor, int(expected * self._native_tolerance_ratio))

    def _native_matches(
        self,
        account_keys: Iterable[Any],
        pre_balances: list,
        post_balances: list,
        recipient: str,
        expected: int,
    ) -> bool:
        tolerance = self.native_tolerance(expected)
        for index, entry in enumerate(account_keys):
            if _account_key(entry) != recipient:
                continue
            if index >= len(pre_balances) or index >= len(post_balances):
                continue
            delta = post_balances[index] - pre_balances[index]
            logger.debug(
                "SOL balance change for recipient: %s lamports (expected: %s, tolerance: %s)",
                delta,
                expected,
                tolerance,
            )
            if abs(delta - expected) <= tolerance:
                return True
        return False

    @staticmethod
    def _token_matches(
        pre_token_balances: list,
        post_token_balances: list,
        recipient: str,
        mint: Optional[str],
        expected: int,
    ) -> bool:
        pre_by_index = {
            balance.get("accountIndex"): balance for balance in pre_token_balances
        }
        for post in post_token_balances:
            if post.get("mint") != mint or post.get("owner") != recipient:
                continue
            pre = pre_by_index.get(post.get("accountIndex"))
            delta = _token_amount(post) - (_token_amount(pre) if pre else 0)
            logger.debug("Token balance change for recipient: %s (expected: %s)", delta, expected)
            if delta == expected:
                return True
        return False

    # Internal helpers -----------------------------------------------------

    def _current(self, session_id: str) -> PaymentSession:
        current = self._store.get(session_id)
        if current is None:
            raise NotFoundError(f"Payment not found: {session_id}")
        return current

    @staticmethod
    def _is_candidate(ref: SignatureRef, since: int) -> bool:
        if ref.err is not None:
            return False
        return ref.block_time is None or ref.block_time >= since

    def _settle(
        self,
        session: PaymentSession,
        signature: str,
        tx: Dict[str, Any],
        ref: SignatureRef,
        position: Optional[int],
    ) -> MatchResult:
        won = self._store.update_status(session.id, PaymentStatus.COMPLETED, signature)
        # The record may already be evicted; a won update is still authoritative.
        settled = self._store.get(session.id)
        if not won:
            if settled is None or settled.status is not PaymentStatus.COMPLETED:
                return self._no_match(session.id, "Payment can no longer be completed")
            logger.info(
                "Session=%s already settled elsewhere; keeping signature=%s",
                session.id,
                settled.signature,
            )
            return self._short_circuit(settled)

        logger.info(
            "Matching transaction found signature=%s session=%s position=%s",
            signature,
            session.id,
            position,
        )
        return MatchResult(
            matched=True,
            session_id=session.id,
            status=PaymentStatus.COMPLETED,
            signature=signature,
            block_time=ref.block_time if ref.block_time is not None else tx.get("blockTime"),
            slot=ref.slot if ref.slot is not None else tx.get("slot"),
            position=position,
            verified_at=settled.verified_at if settled is not None else None,
        )

    def _short_circuit(self, session: PaymentSession) -> MatchResult:
        if session.status is PaymentStatus.COMPLETED:
            return MatchResult(
                matched=True,
                session_id=session.id,
                status=session.status,
                signature=session.signature,
                verified_at=session.verified_at,
            )
        return MatchResult(
            matched=False,
            session_id=session.id,
            status=session.status,
            error=f"Payment is {session.status.value}",
        )

    def _no_match(self, session_id: str, error: str) -> MatchResult:
        # Re-read so callers see a lazily applied expiry or a concurrent settlement.
        session = self._store.get(session_id)
        status = session.status if session is not None else PaymentStatus.EXPIRED
        return MatchResult(matched=False, session_id=session_id, status=status, error=error)
