from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol


@dataclass(frozen=True)
class SignatureRef:
    signature: str
    slot: Optional[int] = None
    block_time: Optional[int] = None
    err: Any = None

    @classmethod
    def from_rpc(cls, entry: Dict[str, Any]) -> "SignatureRef":
        return cls(
            signature=entry["signature"],
            slot=entry.get("slot"),
            block_time=entry.get("blockTime"),
            err=entry.get("err"),
        )


class LedgerAccess(Protocol):
    """
    Ledger operations the settlement engine depends on.

    ``None`` results mean "not found"; transport failures raise
    :class:`~solpay_gateway.payments.exceptions.LedgerTransportError`.
    """

    def get_account_info(
        self, address: str, timeout: Optional[float] = None
    ) -> Optional[Dict[str, Any]]:
        ...

    def get_latest_blockhash(self, timeout: Optional[float] = None) -> str:
        ...

    def get_signatures_for_address(
        self, address: str, limit: int = 20, timeout: Optional[float] = None
    ) -> List[SignatureRef]:
        ...

    def get_transaction(
        self, signature: str, timeout: Optional[float] = None
    ) -> Optional[Dict[str, Any]]:
        ...
