"""
Tests for the unsigned payment transaction builder.

Transactions are built with the real solders/spl stack and inspected at the
compiled-message level.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.transaction import Transaction
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID
from spl.token.instructions import get_associated_token_address

from solpay_gateway.payments.assets import USDC_MINT, USDT_MINT
from solpay_gateway.payments.exceptions import InvalidPayerError, ValidationError
from solpay_gateway.payments.models import AccountPresence, PaymentSession
from solpay_gateway.payments.transaction_builder import (
    KIND_CREATE_ACCOUNT,
    KIND_FEE_NATIVE_TRANSFER,
    KIND_FEE_TOKEN_TRANSFER,
    KIND_NATIVE_TRANSFER,
    KIND_TOKEN_TRANSFER,
    FeeSettings,
    TransactionBuilder,
)

_TRANSFER_CHECKED = 12


def _ata(owner: str, mint: str) -> Pubkey:
    return get_associated_token_address(Pubkey.from_string(owner), Pubkey.from_string(mint))


def _program_ids(transaction: Transaction):
    message = transaction.message
    return [message.account_keys[ix.program_id_index] for ix in message.instructions]


def _token_transfer_amounts(transaction: Transaction):
    message = transaction.message
    amounts = []
    for ix in message.instructions:
        data = bytes(ix.data)
        if message.account_keys[ix.program_id_index] == TOKEN_PROGRAM_ID and data[0] == _TRANSFER_CHECKED:
            amounts.append((int.from_bytes(data[1:9], "little"), data[9]))
    return amounts


def _lamport_transfers(transaction: Transaction):
    message = transaction.message
    return [
        int.from_bytes(bytes(ix.data)[4:12], "little")
        for ix in message.instructions
        if message.account_keys[ix.program_id_index] == SYSTEM_PROGRAM_ID
    ]


class TestTokenPayment:
    def test_usdc_session_with_fee_and_missing_accounts(self, builder, store, ledger, payer, recipient):
        session = store.create(recipient, "2.0", "USDC")

        built = builder.build(payer, session)

        assert built.instruction_kinds == (
            KIND_CREATE_ACCOUNT,
            KIND_CREATE_ACCOUNT,
            KIND_TOKEN_TRANSFER,
            KIND_FEE_TOKEN_TRANSFER,
        )
        assert _program_ids(built.transaction) == [
            ASSOCIATED_TOKEN_PROGRAM_ID,
            ASSOCIATED_TOKEN_PROGRAM_ID,
            TOKEN_PROGRAM_ID,
            TOKEN_PROGRAM_ID,
        ]
        assert _token_transfer_amounts(built.transaction) == [(2_000_000, 6), (1_000_000, 6)]
        assert built.instruction_count == 4

    def test_existing_accounts_are_not_recreated(self, builder, store, ledger, payer, recipient, fee_collector):
        ledger.add_account(_ata(recipient, USDC_MINT))
        ledger.add_account(_ata(fee_collector, USDC_MINT))
        session = store.create(recipient, "2.0", "USDC")

        built = builder.build(payer, session)

        assert built.instruction_kinds == (KIND_TOKEN_TRANSFER, KIND_FEE_TOKEN_TRANSFER)
        assert set(ledger.account_lookups) == {
            str(_ata(recipient, USDC_MINT)),
            str(_ata(fee_collector, USDC_MINT)),
        }

    def test_failed_existence_check_falls_back_to_creation(self, builder, store, ledger, payer, recipient, fee_collector):
        recipient_ata = _ata(recipient, USDC_MINT)
        ledger.add_account(recipient_ata)
        ledger.failing_accounts.add(str(recipient_ata))
        ledger.add_account(_ata(fee_collector, USDC_MINT))
        session = store.create(recipient, "5", "USDC")

        built = builder.build(payer, session)

        assert built.instruction_kinds == (
            KIND_CREATE_ACCOUNT,
            KIND_TOKEN_TRANSFER,
            KIND_FEE_TOKEN_TRANSFER,
        )
        create_ix = built.transaction.message.instructions[0]
        keys = built.transaction.message.account_keys
        # Idempotent creation targets the recipient's token account.
        assert bytes(create_ix.data) == bytes([1])
        assert keys[create_ix.accounts[1]] == recipient_ata

    def test_transfer_moves_between_associated_accounts(self, builder, store, ledger, payer, recipient, fee_collector):
        ledger.add_account(_ata(recipient, USDC_MINT))
        ledger.add_account(_ata(fee_collector, USDC_MINT))
        session = store.create(recipient, "1", "USDC")

        built = builder.build(payer, session)
        message = built.transaction.message
        main_transfer = message.instructions[0]
        accounts = [message.account_keys[index] for index in main_transfer.accounts]

        assert accounts[0] == _ata(payer, USDC_MINT)
        assert accounts[1] == Pubkey.from_string(USDC_MINT)
        assert accounts[2] == _ata(recipient, USDC_MINT)
        assert accounts[3] == Pubkey.from_string(payer)

    def test_floor_conversion(self, builder, store, ledger, payer, recipient):
        session = store.create(recipient, "1.0000005", "USDT")
        built = builder.build(payer, session)
        assert _token_transfer_amounts(built.transaction)[0] == (1_000_000, 6)

    def test_collector_equal_to_recipient_creates_account_once(self, ledger, registry, store, payer, recipient):
        builder = TransactionBuilder(
            ledger, registry, fee=FeeSettings(collector=recipient, amount=Decimal("0.5"), asset="USDC")
        )
        session = store.create(recipient, "3", "USDC")

        built = builder.build(payer, session)

        assert built.instruction_kinds.count(KIND_CREATE_ACCOUNT) == 1
        assert _token_transfer_amounts(built.transaction) == [(3_000_000, 6), (500_000, 6)]


class TestNativePayment:
    def test_sol_transfer_plus_token_fee(self, builder, store, ledger, payer, recipient):
        session = store.create(recipient, "1.5", "SOL")

        built = builder.build(payer, session)

        assert built.instruction_kinds == (
            KIND_CREATE_ACCOUNT,
            KIND_NATIVE_TRANSFER,
            KIND_FEE_TOKEN_TRANSFER,
        )
        assert _lamport_transfers(built.transaction) == [1_500_000_000]
        assert _token_transfer_amounts(built.transaction) == [(1_000_000, 6)]

    def test_without_fee(self, ledger, registry, store, payer, recipient):
        builder = TransactionBuilder(ledger, registry)
        session = store.create(recipient, "0.000000001", "SOL")

        built = builder.build(payer, session)

        assert built.instruction_kinds == (KIND_NATIVE_TRANSFER,)
        assert _lamport_transfers(built.transaction) == [1]
        assert ledger.account_lookups == []

    def test_native_fee_asset(self, ledger, registry, store, payer, recipient, fee_collector):
        builder = TransactionBuilder(
            ledger, registry, fee=FeeSettings(collector=fee_collector, amount=Decimal("0.01"), asset="SOL")
        )
        session = store.create(recipient, "2", "SOL")

        built = builder.build(payer, session)

        assert built.instruction_kinds == (KIND_NATIVE_TRANSFER, KIND_FEE_NATIVE_TRANSFER)
        assert _lamport_transfers(built.transaction) == [2_000_000_000, 10_000_000]


class TestTransactionEnvelope:
    def test_payer_is_fee_payer_and_unsigned(self, builder, store, payer, recipient):
        session = store.create(recipient, "2.0", "USDC")
        built = builder.build(payer, session)

        message = built.transaction.message
        assert message.account_keys[0] == Pubkey.from_string(payer)
        assert message.header.num_required_signatures == 1
        assert all(signature == Signature.default() for signature in built.transaction.signatures)
        assert built.size == len(built.serialized)
        assert Transaction.from_bytes(built.serialized) == built.transaction

    def test_blockhash_fetched_per_build(self, builder, store, ledger, payer, recipient):
        session = store.create(recipient, "2.0", "USDC")

        first = builder.build(payer, session)
        second = builder.build(payer, session)

        assert ledger.blockhash_calls == 2
        assert first.blockhash != second.blockhash
        assert str(second.transaction.message.recent_blockhash) == second.blockhash


class TestValidation:
    def test_invalid_payer(self, builder, store, ledger, recipient):
        session = store.create(recipient, "2.0", "USDC")
        with pytest.raises(InvalidPayerError):
            builder.build("not-a-wallet", session)
        assert ledger.blockhash_calls == 0

    @pytest.mark.parametrize(
        "amount, asset",
        [("0.0000001", "USDC"), ("0.0000000001", "SOL"), ("1e30", "SOL"), ("18446744073709.551616", "USDT")],
    )
    def test_untransferable_amount_rejected(self, builder, ledger, clock, payer, recipient, amount, asset):
        session = PaymentSession(
            id="pay_direct",
            recipient=recipient,
            amount=Decimal(amount),
            asset=asset,
            created_at=clock.now,
            expires_at=clock.now + timedelta(minutes=30),
        )
        with pytest.raises(ValidationError):
            builder.build(payer, session)
        assert ledger.blockhash_calls == 0

    def test_largest_transferable_amount(self, builder, store, payer, recipient):
        session = store.create(recipient, "18446744073709.551615", "USDT")
        built = builder.build(payer, session)
        assert _token_transfer_amounts(built.transaction)[0] == (2 ** 64 - 1, 6)

    def test_fee_asset_must_be_registered(self, ledger, registry, fee_collector):
        with pytest.raises(ValidationError):
            TransactionBuilder(
                ledger, registry, fee=FeeSettings(collector=fee_collector, amount=Decimal("1"), asset="EUR")
            )

    @pytest.mark.parametrize("amount", ["0.0000001", "1e30"])
    def test_fee_amount_must_be_transferable(self, ledger, registry, fee_collector, amount):
        with pytest.raises(ValidationError):
            TransactionBuilder(
                ledger, registry, fee=FeeSettings(collector=fee_collector, amount=Decimal(amount), asset="USDC")
            )


class TestAccountPresence:
    def test_three_valued_lookup(self, builder, ledger, recipient):
        present = _ata(recipient, USDC_MINT)
        missing = _ata(recipient, USDT_MINT)
        broken = Pubkey.from_string(recipient)
        ledger.add_account(present)
        ledger.failing_accounts.add(str(broken))

        assert builder.account_presence(present) is AccountPresence.EXISTS
        assert builder.account_presence(missing) is AccountPresence.ABSENT
        assert builder.account_presence(broken) is AccountPresence.UNKNOWN
        assert not AccountPresence.EXISTS.needs_creation
        assert AccountPresence.ABSENT.needs_creation
        assert AccountPresence.UNKNOWN.needs_creation
