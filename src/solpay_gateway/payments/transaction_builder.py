import base64
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Tuple

from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID
from spl.token.instructions import (
    get_associated_token_address,
    transfer_checked,
)
from spl.token.models import TransferCheckedParams

from .addresses import parse_address
from .assets import AssetInfo, AssetRegistry
from .exceptions import InvalidPayerError, LedgerError, LedgerTransportError, ValidationError
from .ledger import LedgerAccess
from .models import AccountPresence, PaymentSession

logger = logging.getLogger(__name__)

# Associated token account program: CreateIdempotent succeeds when the account exists.
_ATA_CREATE_IDEMPOTENT = bytes([1])

KIND_CREATE_ACCOUNT = "create_token_account"
KIND_NATIVE_TRANSFER = "native_transfer"
KIND_TOKEN_TRANSFER = "token_transfer"
KIND_FEE_NATIVE_TRANSFER = "fee_native_transfer"
KIND_FEE_TOKEN_TRANSFER = "fee_token_transfer"


@dataclass(frozen=True)
class FeeSettings:
    collector: str
    amount: Decimal
    asset: str


@dataclass(frozen=True)
class BuiltTransaction:
    transaction: Transaction
    instruction_kinds: Tuple[str, ...]
    blockhash: str

    @property
    def instruction_count(self) -> int:
        return len(self.instruction_kinds)

    @property
    def serialized(self) -> bytes:
        return bytes(self.transaction)

    @property
    def size(self) -> int:
        return len(self.serialized)

    def to_base64(self) -> str:
        return base64.b64encode(self.serialized).decode("ascii")


def create_associated_token_account_idempotent(
    payer: Pubkey, owner: Pubkey, mint: Pubkey
) -> Instruction:
    associated = get_associated_token_address(owner, mint)
    return Instruction(
        program_id=ASSOCIATED_TOKEN_PROGRAM_ID,
        data=_ATA_CREATE_IDEMPOTENT,
        accounts=[
            AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
            AccountMeta(pubkey=associated, is_signer=False, is_writable=True),
            AccountMeta(pubkey=owner, is_signer=False, is_writable=False),
            AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
            AccountMeta(pubkey=SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(pubkey=TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        ],
    )


class _InstructionPlan:
    """Account-creation instructions ahead of transfers, creations de-duplicated."""

    def __init__(self) -> None:
        self._creations: List[Tuple[str, Instruction]] = []
        self._transfers: List[Tuple[str, Instruction]] = []
        self._created: set = set()

    def add_creation(self, account: Pubkey, instruction: Instruction) -> None:
        if account in self._created:
            return
        self._created.add(account)
        self._creations.append((KIND_CREATE_ACCOUNT, instruction))

    def add_transfer(self, kind: str, instruction: Instruction) -> None:
        self._transfers.append((kind, instruction))

    @property
    def entries(self) -> List[Tuple[str, Instruction]]:
        return self._creations + self._transfers


class TransactionBuilder:
    """
    Compose the unsigned transaction a wallet signs to settle a session.

    The transaction carries the main transfer to the session recipient and,
    when a platform fee is configured, a second transfer of the fee asset to
    the fee collector. Token accounts that may be missing are created by the
    payer in the same transaction.
    """

    def __init__(
        self,
        ledger: LedgerAccess,
        registry: AssetRegistry,
        fee: Optional[FeeSettings] = None,
    ) -> None:
        self._ledger = ledger
        self._registry = registry
        self._fee = fee
        if fee is not None:
            self._fee_asset = self._registry.get(fee.asset)
            self._fee_minor_units = self._fee_asset.checked_minor_units(Decimal(fee.amount))
            self._fee_collector = parse_address(fee.collector, "fee collector")

    @property
    def fee(self) -> Optional[FeeSettings]:
        return self._fee

    def build(
        self,
        payer_address: str,
        session: PaymentSession,
        timeout: Optional[float] = None,
    ) -> BuiltTransaction:
        try:
            payer = parse_address(payer_address, "payer address")
        except ValidationError as exc:
            raise InvalidPayerError(str(exc)) from exc
        recipient = parse_address(session.recipient, "recipient address")

        plan = _InstructionPlan()
        asset = self._registry.get(session.asset)
        self._add_transfer(
            plan,
            payer,
            recipient,
            asset,
            asset.checked_minor_units(session.amount),
            is_fee=False,
            timeout=timeout,
        )

        if self._fee is not None:
            self._add_transfer(
                plan,
                payer,
                self._fee_collector,
                self._fee_asset,
                self._fee_minor_units,
                is_fee=True,
                timeout=timeout,
            )

        blockhash = self._latest_blockhash(timeout)
        entries = plan.entries
        message = Message.new_with_blockhash(
            [instruction for _, instruction in entries], payer, blockhash
        )
        built = BuiltTransaction(
            transaction=Transaction.new_unsigned(message),
            instruction_kinds=tuple(kind for kind, _ in entries),
            blockhash=str(blockhash),
        )

        logger.info(
            "Built payment transaction session=%s payer=%s instructions=%d size=%d blockhash=%s",
            session.id,
            payer_address,
            built.instruction_count,
            built.size,
            built.blockhash,
        )
        return built

    def account_presence(self, address: Pubkey, timeout: Optional[float] = None) -> AccountPresence:
        try:
            info = self._ledger.get_account_info(str(address), timeout=timeout)
        except LedgerError as exc:
            logger.warning(
                "Account lookup failed for %s, assuming it must be created: %s",
                address,
                exc,
            )
            return AccountPresence.UNKNOWN
        return AccountPresence.EXISTS if info else AccountPresence.ABSENT

    # Internal helpers -----------------------------------------------------

    def _add_transfer(
        self,
        plan: _InstructionPlan,
        payer: Pubkey,
        destination: Pubkey,
        asset: AssetInfo,
        minor_units: int,
        is_fee: bool,
        timeout: Optional[float],
    ) -> None:
        if asset.is_native:
            logger.debug("Adding SOL transfer: %s lamports to %s", minor_units, destination)
            plan.add_transfer(
                KIND_FEE_NATIVE_TRANSFER if is_fee else KIND_NATIVE_TRANSFER,
                transfer(
                    TransferParams(
                        from_pubkey=payer,
                        to_pubkey=destination,
                        lamports=minor_units,
                    )
                ),
            )
            return

        mint = Pubkey.from_string(asset.mint)
        source_account = get_associated_token_address(payer, mint)
        destination_account = get_associated_token_address(destination, mint)

        presence = self.account_presence(destination_account, timeout)
        if presence.needs_creation:
            logger.debug(
                "Adding token account creation owner=%s mint=%s presence=%s",
                destination,
                asset.symbol,
                presence.value,
            )
            plan.add_creation(
                destination_account,
                create_associated_token_account_idempotent(payer, destination, mint),
            )

        logger.debug("Adding %s transfer: %s minor units to %s", asset.symbol, minor_units, destination)
        plan.add_transfer(
            KIND_FEE_TOKEN_TRANSFER if is_fee else KIND_TOKEN_TRANSFER,
            transfer_checked(
                TransferCheckedParams(
                    program_id=TOKEN_PROGRAM_ID,
                    source=source_account,
                    mint=mint,
                    dest=destination_account,
                    owner=payer,
                    amount=minor_units,
                    decimals=asset.decimals,
                    signers=[],
                )
            ),
        )

    def _latest_blockhash(self, timeout: Optional[float]) -> Hash:
        recent_blockhash = self._ledger.get_latest_blockhash(timeout=timeout)
        try:
            return Hash.from_string(str(recent_blockhash))
        except ValueError as exc:
            raise LedgerTransportError("Invalid blockhash value from RPC.") from exc
