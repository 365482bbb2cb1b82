from __future__ import annotations

import hashlib
from typing import Any

import base58
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction

from .types import REJECT_MALFORMED_REQUEST, RelayError


def decode_transaction(serialized: Any) -> Transaction:
    """Decode a base58 wire-encoded legacy transaction from a request body."""
    if not isinstance(serialized, str) or not serialized.strip():
        raise RelayError(REJECT_MALFORMED_REQUEST, message="request should contain transaction")

    try:
        return Transaction.from_bytes(base58.b58decode(serialized.strip()))
    except Exception as error:
        raise RelayError(REJECT_MALFORMED_REQUEST, f"can't decode transaction: {error}") from error


def encode_signature(signature: Signature) -> str:
    return str(signature)


def message_digest(message: Message) -> str:
    # signatures are not part of the message, so re-signed copies collide
    return base58.b58encode(hashlib.sha256(bytes(message)).digest()).decode("ascii")


def fee_payer_of(message: Message) -> Pubkey | None:
    account_keys = message.account_keys
    if not account_keys:
        return None
    return account_keys[0]


def is_signed(signature: Signature | None) -> bool:
    return signature is not None and signature != Signature.default()


def signature_slots(transaction: Transaction) -> list[tuple[Pubkey | None, Signature | None]]:
    account_keys = transaction.message.account_keys
    slots: list[tuple[Pubkey | None, Signature | None]] = []
    for index, signature in enumerate(transaction.signatures):
        pubkey = account_keys[index] if index < len(account_keys) else None
        slots.append((pubkey, signature if is_signed(signature) else None))
    return slots


def account_flags(message: Message, index: int) -> tuple[bool, bool]:
    """Return ``(is_signer, is_writable)`` for the account at ``index``."""
    header = message.header
    total = len(message.account_keys)
    required = header.num_required_signatures
    is_signer = index < required
    if is_signer:
        is_writable = index < required - header.num_readonly_signed_accounts
    else:
        is_writable = index < total - header.num_readonly_unsigned_accounts
    return is_signer, is_writable
