import abc
import dataclasses
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from .addresses import parse_address
from .assets import AssetRegistry, parse_amount
from .exceptions import ValidationError
from .models import ALLOWED_TRANSITIONS, PaymentSession, PaymentStatus

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL_SEC = 30 * 60
DEFAULT_SWEEP_INTERVAL_SEC = 5 * 60


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentSessionStore(abc.ABC):
    """
    Owner of payment session records and their lifecycle transitions.

    Callers only ever receive immutable snapshots; every change goes through
    :meth:`update_status` so that backends can serialize writes per record.
    """

    def __init__(self) -> None:
        self._sweeper: Optional[threading.Thread] = None
        self._sweeper_stop = threading.Event()

    @abc.abstractmethod
    def create(
        self,
        recipient: str,
        amount: Any,
        asset: str,
        label: Optional[str] = None,
        message: Optional[str] = None,
    ) -> PaymentSession:
        ...

    @abc.abstractmethod
    def get(self, session_id: str) -> Optional[PaymentSession]:
        ...

    @abc.abstractmethod
    def update_status(
        self,
        session_id: str,
        new_status: PaymentStatus,
        signature: Optional[str] = None,
    ) -> bool:
        ...

    @abc.abstractmethod
    def sweep(self) -> int:
        ...

    @abc.abstractmethod
    def stats(self) -> Dict[str, int]:
        ...

    # Background eviction ---------------------------------------------------

    def start_sweeper(self, interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SEC) -> None:
        if self._sweeper and self._sweeper.is_alive():
            raise RuntimeError("Sweeper already running")

        self._sweeper_stop.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop,
            args=(interval_seconds,),
            name="payment-session-sweeper",
            daemon=True,
        )
        self._sweeper.start()
        logger.info("Started payment session sweeper interval=%ss", interval_seconds)

    def stop_sweeper(self, timeout: float = 1.0) -> None:
        if not self._sweeper:
            return
        self._sweeper_stop.set()
        self._sweeper.join(timeout=timeout)
        self._sweeper = None
        logger.info("Stopped payment session sweeper")

    def _sweep_loop(self, interval_seconds: float) -> None:
        while not self._sweeper_stop.wait(interval_seconds):
            try:
                self.sweep()
            except Exception:  # pylint: disable=broad-except
                logger.exception("Payment session sweep failed")


class InMemoryPaymentSessionStore(PaymentSessionStore):
    def __init__(
        self,
        registry: AssetRegistry,
        ttl_seconds: int = DEFAULT_SESSION_TTL_SEC,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        super().__init__()
        self._registry = registry
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._sessions: Dict[str, PaymentSession] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def create(
        self,
        recipient: str,
        amount: Any,
        asset: str,
        label: Optional[str] = None,
        message: Optional[str] = None,
    ) -> PaymentSession:
        parsed_amount = parse_amount(amount)
        if not self._registry.is_supported(asset):
            raise ValidationError(f"Token not supported: {asset}")
        parse_address(recipient, "recipient address")
        # Sessions must settle a non-zero transfer that fits on-chain.
        self._registry.get(asset).checked_minor_units(parsed_amount)

        created = self._clock()
        session = PaymentSession(
            id=self._generate_session_id(),
            recipient=recipient,
            amount=parsed_amount,
            asset=asset,
            created_at=created,
            expires_at=created + self._ttl,
            label=label,
            message=message,
        )
        with self._lock:
            if session.id in self._sessions:
                raise RuntimeError(f"Payment session id collision: {session.id}")
            self._sessions[session.id] = session

        logger.info(
            "Created payment session id=%s amount=%s asset=%s recipient=%s expires_at=%s",
            session.id,
            session.amount,
            session.asset,
            session.recipient,
            session.expires_at.isoformat(),
        )
        return session

    def get(self, session_id: str) -> Optional[PaymentSession]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                logger.debug("Payment session not found id=%s", session_id)
                return None

            if session.status is PaymentStatus.PENDING and session.is_past_expiry(self._clock()):
                session = dataclasses.replace(session, status=PaymentStatus.EXPIRED)
                self._sessions[session_id] = session
                logger.info("Payment session expired id=%s", session_id)
            return session

    def update_status(
        self,
        session_id: str,
        new_status: PaymentStatus,
        signature: Optional[str] = None,
    ) -> bool:
        new_status = PaymentStatus(new_status)
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                logger.debug("Cannot update unknown payment session id=%s", session_id)
                return False

            current = session.effective_status(self._clock())
            if new_status not in ALLOWED_TRANSITIONS[current]:
                logger.warning(
                    "Rejected payment status transition id=%s from=%s to=%s",
                    session_id,
                    current.value,
                    new_status.value,
                )
                return False

            changes: Dict[str, Any] = {"status": new_status}
            if signature:
                changes["signature"] = signature
                changes["verified_at"] = self._clock()
            self._sessions[session_id] = dataclasses.replace(session, **changes)

        logger.info(
            "Payment status updated id=%s %s -> %s signature=%s",
            session_id,
            current.value,
            new_status.value,
            signature,
        )
        return True

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [
                session_id
                for session_id, session in self._sessions.items()
                if session.is_past_expiry(now)
            ]
            for session_id in stale:
                del self._sessions[session_id]

        if stale:
            logger.info("Cleaned up %d expired payment sessions", len(stale))
        return len(stale)

    def stats(self) -> Dict[str, int]:
        now = self._clock()
        with self._lock:
            sessions = list(self._sessions.values())

        counts = {status.value: 0 for status in PaymentStatus}
        for session in sessions:
            counts[session.effective_status(now).value] += 1
        counts["total"] = len(sessions)
        logger.debug("Payment stats: %s", counts)
        return counts

    def all_sessions(self) -> List[PaymentSession]:
        with self._lock:
            return list(self._sessions.values())

    @staticmethod
    def _generate_session_id() -> str:
        return f"pay_{uuid4().hex}"
