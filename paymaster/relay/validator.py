from __future__ import annotations

import logging

from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.transaction import Transaction

from paymaster.common import log_event

from .types import (
    REJECT_BLOCKHASH_NOT_FOUND,
    REJECT_FEE_TOO_HIGH,
    REJECT_INVALID_FEE_PAYER,
    REJECT_INVALID_FEE_PAYER_PUBKEY,
    REJECT_INVALID_FEE_PAYER_SIGNATURE,
    REJECT_INVALID_SIGNATURE,
    REJECT_MISSING_BLOCKHASH,
    REJECT_MISSING_PUBLIC_KEY,
    REJECT_MISSING_SIGNATURE,
    REJECT_NO_SIGNATURES,
    REJECT_TOO_MANY_SIGNATURES,
    RelayError,
    RelayNetwork,
    SignedTransaction,
)
from .wire import encode_signature, fee_payer_of, signature_slots


def with_blockhash(transaction: Transaction, blockhash: Hash) -> Transaction:
    message = transaction.message
    header = message.header
    refreshed = Message.new_with_compiled_instructions(
        header.num_required_signatures,
        header.num_readonly_signed_accounts,
        header.num_readonly_unsigned_accounts,
        message.account_keys,
        blockhash,
        message.instructions,
    )
    return Transaction.populate(refreshed, transaction.signatures)


class TransactionValidator:
    """Structural and fee checks, then the fee payer co-signature.

    The fee ceiling is expressed in lamports for the whole message, so the same
    validator serves token-fee and native-fee relays.
    """

    def __init__(
        self,
        *,
        network: RelayNetwork,
        fee_payer: Keypair,
        max_signatures: int,
        fee_ceiling: int,
        logger: logging.Logger,
    ) -> None:
        self._network = network
        self._fee_payer = fee_payer
        self._max_signatures = max(1, int(max_signatures))
        self._fee_ceiling = max(0, int(fee_ceiling))
        self._logger = logger

    async def validate(self, transaction: Transaction) -> SignedTransaction:
        fee_payer = self._fee_payer.pubkey()

        if fee_payer_of(transaction.message) != fee_payer:
            raise RelayError(REJECT_INVALID_FEE_PAYER)
        if transaction.message.recent_blockhash == Hash.default():
            raise RelayError(REJECT_MISSING_BLOCKHASH)

        self._check_signature_count(transaction)
        transaction = await self._check_fee(transaction)
        self._check_signature_slots(transaction)

        return self._sign(transaction)

    async def _check_fee(self, transaction: Transaction) -> Transaction:
        fee = await self._network.get_fee_for_message(transaction.message)
        if fee is None:
            blockhash = await self._network.get_latest_blockhash()
            log_event(
                self._logger,
                level="info",
                event="blockhash_refreshed",
                message="Fee quote was unavailable; retrying with a fresh blockhash",
                stale_blockhash=str(transaction.message.recent_blockhash),
                blockhash=str(blockhash),
            )
            transaction = with_blockhash(transaction, blockhash)
            fee = await self._network.get_fee_for_message(transaction.message)
            if fee is None:
                raise RelayError(REJECT_BLOCKHASH_NOT_FOUND)

        if fee > self._fee_ceiling:
            raise RelayError(REJECT_FEE_TOO_HIGH, f"fee {fee} exceeds ceiling {self._fee_ceiling}")
        return transaction

    def _check_signature_count(self, transaction: Transaction) -> None:
        count = len(transaction.signatures)
        if count == 0:
            raise RelayError(REJECT_NO_SIGNATURES)
        if count > self._max_signatures:
            raise RelayError(
                REJECT_TOO_MANY_SIGNATURES,
                f"{count} signature slots exceeds limit {self._max_signatures}",
            )

    def _check_signature_slots(self, transaction: Transaction) -> None:
        self._check_signature_count(transaction)
        (primary_pubkey, primary_signature), *secondary = signature_slots(transaction)

        # validate() already rejects a foreign account_keys[0]; this keeps the slot check self-contained
        if primary_pubkey != self._fee_payer.pubkey():
            raise RelayError(REJECT_INVALID_FEE_PAYER_PUBKEY)
        if primary_signature is not None:
            raise RelayError(REJECT_INVALID_FEE_PAYER_SIGNATURE)

        for pubkey, signature in secondary:
            if pubkey is None:
                raise RelayError(REJECT_MISSING_PUBLIC_KEY)
            if signature is None:
                raise RelayError(REJECT_MISSING_SIGNATURE, f"slot for {pubkey} is unsigned")

    def _sign(self, transaction: Transaction) -> SignedTransaction:
        message = transaction.message
        fee_payer_signature = self._fee_payer.sign_message(bytes(message))
        signatures = list(transaction.signatures)
        signatures[0] = fee_payer_signature
        signed = Transaction.populate(message, signatures)

        results = signed.verify_with_results()
        if not results or not all(results):
            invalid = [str(message.account_keys[index]) for index, ok in enumerate(results) if not ok]
            raise RelayError(REJECT_INVALID_SIGNATURE, f"signatures failed to verify for {invalid}")

        return SignedTransaction(
            transaction=signed,
            signature=encode_signature(fee_payer_signature),
            raw=bytes(signed),
        )

