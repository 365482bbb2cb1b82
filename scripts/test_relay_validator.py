from __future__ import annotations

import logging
import unittest

from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction

from paymaster.relay import RelayError, TransactionValidator

from relay_fixtures import (
    BLOCKHASH,
    CLIENT,
    FEE_PAYER,
    build_transaction,
    fake_network,
    token_transfer_ix,
)


def _fee_payer_only_ix() -> Instruction:
    return Instruction(Pubkey.new_unique(), b"\x01", [AccountMeta(Pubkey.new_unique(), False, True)])


def _extra_signer_ix(signer: Keypair) -> Instruction:
    return Instruction(Pubkey.new_unique(), b"", [AccountMeta(signer.pubkey(), True, False)])


class TransactionValidatorTests(unittest.IsolatedAsyncioTestCase):
    def _validator(self, network, *, max_signatures: int = 2, fee_ceiling: int = 10_000) -> TransactionValidator:
        return TransactionValidator(
            network=network,
            fee_payer=FEE_PAYER,
            max_signatures=max_signatures,
            fee_ceiling=fee_ceiling,
            logger=logging.getLogger("test.validator"),
        )

    async def _assert_rejected(self, validator: TransactionValidator, transaction: Transaction, kind: str) -> None:
        with self.assertRaises(RelayError) as ctx:
            await validator.validate(transaction)
        self.assertEqual(ctx.exception.kind, kind)

    async def test_valid_transaction_is_co_signed_and_verifies(self) -> None:
        network = fake_network()
        transaction = build_transaction([token_transfer_ix()])

        signed = await self._validator(network).validate(transaction)

        self.assertTrue(all(signed.transaction.verify_with_results()))
        self.assertEqual(signed.signature, str(signed.transaction.signatures[0]))
        self.assertEqual(signed.transaction.signatures[1], transaction.signatures[1])
        self.assertEqual(signed.raw, bytes(signed.transaction))
        network.get_latest_blockhash.assert_not_awaited()

    async def test_foreign_fee_payer_is_rejected_before_any_network_call(self) -> None:
        network = fake_network()
        transaction = build_transaction([token_transfer_ix()], payer=CLIENT.pubkey())

        await self._assert_rejected(self._validator(network), transaction, "INVALID_FEE_PAYER")
        network.get_fee_for_message.assert_not_awaited()

    async def test_missing_blockhash_is_rejected(self) -> None:
        transaction = build_transaction([token_transfer_ix()], signers=(), blockhash=Hash.default())

        await self._assert_rejected(self._validator(fake_network()), transaction, "MISSING_BLOCKHASH")

    async def test_fee_above_ceiling_is_rejected(self) -> None:
        transaction = build_transaction([token_transfer_ix()])

        await self._assert_rejected(
            self._validator(fake_network(fee=10_001)),
            transaction,
            "FEE_TOO_HIGH",
        )

    async def test_fee_equal_to_ceiling_is_accepted(self) -> None:
        transaction = build_transaction([token_transfer_ix()])

        signed = await self._validator(fake_network(fee=10_000)).validate(transaction)

        self.assertTrue(signed.signature)

    async def test_signature_count_wins_over_fee_ceiling(self) -> None:
        network = fake_network(fee=50_000)
        extra = Keypair()
        transaction = build_transaction(
            [token_transfer_ix(), _extra_signer_ix(extra)],
            signers=(CLIENT, extra),
        )

        await self._assert_rejected(self._validator(network), transaction, "TOO_MANY_SIGNATURES")
        network.get_fee_for_message.assert_not_awaited()

    async def test_no_signature_slots_is_rejected(self) -> None:
        message = build_transaction([_fee_payer_only_ix()], signers=()).message
        transaction = Transaction.populate(message, [])

        await self._assert_rejected(self._validator(fake_network()), transaction, "NO_SIGNATURES")

    async def test_pre_signed_fee_payer_slot_is_rejected(self) -> None:
        transaction = build_transaction([token_transfer_ix()], signers=(FEE_PAYER, CLIENT))

        await self._assert_rejected(
            self._validator(fake_network()),
            transaction,
            "INVALID_FEE_PAYER_SIGNATURE",
        )

    async def test_unsigned_client_slot_is_rejected(self) -> None:
        transaction = build_transaction([token_transfer_ix()], signers=())

        await self._assert_rejected(self._validator(fake_network()), transaction, "MISSING_SIGNATURE")

    async def test_signature_slot_without_account_key_is_rejected(self) -> None:
        message = build_transaction([_fee_payer_only_ix()], signers=()).message
        extra_slots = [Signature.new_unique() for _ in range(len(message.account_keys))]
        populated = Transaction.populate(message, [Signature.default(), *extra_slots])
        transaction = Transaction.from_bytes(bytes(populated))
        self.assertEqual(len(transaction.signatures), len(message.account_keys) + 1)

        await self._assert_rejected(
            self._validator(fake_network(), max_signatures=len(transaction.signatures)),
            transaction,
            "MISSING_PUBLIC_KEY",
        )

    async def test_slot_check_rejects_foreign_primary_signer(self) -> None:
        transaction = build_transaction([token_transfer_ix()], payer=CLIENT.pubkey())

        with self.assertRaises(RelayError) as ctx:
            self._validator(fake_network())._check_signature_slots(transaction)
        self.assertEqual(ctx.exception.kind, "INVALID_FEE_PAYER_PUBKEY")

    async def test_forged_client_signature_fails_verification(self) -> None:
        unsigned = build_transaction([token_transfer_ix()], signers=())
        transaction = Transaction.populate(unsigned.message, [Signature.default(), Signature.new_unique()])

        await self._assert_rejected(self._validator(fake_network()), transaction, "INVALID_SIGNATURE")

    async def test_unknown_blockhash_is_refreshed_once(self) -> None:
        network = fake_network()
        fresh = Hash.new_unique()
        network.get_latest_blockhash.return_value = fresh
        network.get_fee_for_message.side_effect = [None, 5_000]
        transaction = build_transaction([_fee_payer_only_ix()], signers=())

        signed = await self._validator(network).validate(transaction)

        self.assertEqual(signed.transaction.message.recent_blockhash, fresh)
        self.assertTrue(all(signed.transaction.verify_with_results()))
        network.get_latest_blockhash.assert_awaited_once()
        self.assertEqual(network.get_fee_for_message.await_count, 2)

    async def test_refresh_invalidates_existing_client_signatures(self) -> None:
        network = fake_network()
        network.get_fee_for_message.side_effect = [None, 5_000]
        transaction = build_transaction([token_transfer_ix()])

        await self._assert_rejected(self._validator(network), transaction, "INVALID_SIGNATURE")

    async def test_blockhash_still_unknown_after_refresh_is_rejected(self) -> None:
        network = fake_network(fee=None)
        transaction = build_transaction([token_transfer_ix()])

        await self._assert_rejected(self._validator(network), transaction, "BLOCKHASH_NOT_FOUND")
        network.get_latest_blockhash.assert_awaited_once()

    async def test_original_blockhash_is_kept_when_fee_is_known(self) -> None:
        signed = await self._validator(fake_network()).validate(build_transaction([token_transfer_ix()]))

        self.assertEqual(signed.transaction.message.recent_blockhash, BLOCKHASH)


if __name__ == "__main__":
    unittest.main()
