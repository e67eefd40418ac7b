from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"
    FAILED = "failed"


# pending is the only state with outgoing transitions.
ALLOWED_TRANSITIONS = {
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.COMPLETED, PaymentStatus.EXPIRED, PaymentStatus.FAILED}
    ),
    PaymentStatus.COMPLETED: frozenset(),
    PaymentStatus.EXPIRED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
}


class AccountPresence(str, Enum):
    EXISTS = "exists"
    ABSENT = "absent"
    UNKNOWN = "unknown"

    @property
    def needs_creation(self) -> bool:
        return self is not AccountPresence.EXISTS


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class PaymentSession:
    id: str
    recipient: str
    amount: Decimal
    asset: str
    created_at: datetime
    expires_at: datetime
    status: PaymentStatus = PaymentStatus.PENDING
    label: Optional[str] = None
    message: Optional[str] = None
    signature: Optional[str] = None
    verified_at: Optional[datetime] = None

    def is_past_expiry(self, now: Optional[datetime] = None) -> bool:
        return (now or _utcnow()) >= self.expires_at

    def effective_status(self, now: Optional[datetime] = None) -> PaymentStatus:
        """
        Status as observed at ``now``: a pending session past its window reads
        as expired even before the store has written the transition.
        """
        if self.status is PaymentStatus.PENDING and self.is_past_expiry(now):
            return PaymentStatus.EXPIRED
        return self.status

    @property
    def display_label(self) -> str:
        return self.label or f"Pay {self.amount} {self.asset}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "recipient": self.recipient,
            "amount": str(self.amount),
            "asset": self.asset,
            "label": self.label,
            "message": self.message,
            "signature": self.signature,
            "createdAt": _isoformat(self.created_at),
            "verifiedAt": _isoformat(self.verified_at),
            "expiresAt": _isoformat(self.expires_at),
        }


@dataclass(frozen=True)
class MatchResult:
    matched: bool
    session_id: str
    status: PaymentStatus
    signature: Optional[str] = None
    block_time: Optional[int] = None
    slot: Optional[int] = None
    position: Optional[int] = None
    verified_at: Optional[datetime] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": self.matched,
            "id": self.session_id,
            "status": self.status.value,
        }
        if self.matched:
            payload.update(
                {
                    "signature": self.signature,
                    "blockTime": self.block_time,
                    "slot": self.slot,
                    "position": self.position,
                    "verifiedAt": _isoformat(self.verified_at),
                }
            )
        if self.error:
            payload["error"] = self.error
        return payload
