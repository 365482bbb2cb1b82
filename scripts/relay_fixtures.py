from __future__ import annotations

import struct
from typing import Sequence
from unittest.mock import AsyncMock

from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from paymaster.relay import TokenFee
from paymaster.relay.transfer import SYSTEM_PROGRAM_ID, TOKEN_PROGRAM_ID

FEE_PAYER = Keypair()
CLIENT = Keypair()
MINT = Pubkey.new_unique()
RELAY_TOKEN_ACCOUNT = Pubkey.new_unique()
SOURCE_TOKEN_ACCOUNT = Pubkey.new_unique()
RELAY_NATIVE_ACCOUNT = Pubkey.new_unique()
BLOCKHASH = Hash.new_unique()

TOKEN_FEE = TokenFee(mint=MINT, account=RELAY_TOKEN_ACCOUNT, decimals=6, fee=10_000)


def token_transfer_ix(
    *,
    source: Pubkey = SOURCE_TOKEN_ACCOUNT,
    destination: Pubkey = RELAY_TOKEN_ACCOUNT,
    owner: Pubkey | None = None,
    amount: int = 10_000,
) -> Instruction:
    return Instruction(
        TOKEN_PROGRAM_ID,
        bytes([3]) + struct.pack("<Q", amount),
        [
            AccountMeta(source, False, True),
            AccountMeta(destination, False, True),
            AccountMeta(owner or CLIENT.pubkey(), True, False),
        ],
    )


def token_transfer_checked_ix(
    *,
    mint: Pubkey = MINT,
    decimals: int = 6,
    amount: int = 10_000,
) -> Instruction:
    return Instruction(
        TOKEN_PROGRAM_ID,
        bytes([12]) + struct.pack("<Q", amount) + bytes([decimals]),
        [
            AccountMeta(SOURCE_TOKEN_ACCOUNT, False, True),
            AccountMeta(mint, False, False),
            AccountMeta(RELAY_TOKEN_ACCOUNT, False, True),
            AccountMeta(CLIENT.pubkey(), True, False),
        ],
    )


def system_transfer_ix(*, destination: Pubkey = RELAY_NATIVE_ACCOUNT, lamports: int = 5_000) -> Instruction:
    return Instruction(
        SYSTEM_PROGRAM_ID,
        struct.pack("<I", 2) + struct.pack("<Q", lamports),
        [
            AccountMeta(CLIENT.pubkey(), True, True),
            AccountMeta(destination, False, True),
        ],
    )


def token_account_data(
    *,
    mint: Pubkey = MINT,
    owner: Pubkey | None = None,
    amount: int = 1_000_000,
    state: int = 1,
) -> bytes:
    data = bytearray(165)
    data[0:32] = bytes(mint)
    data[32:64] = bytes(owner or CLIENT.pubkey())
    data[64:72] = struct.pack("<Q", amount)
    data[108] = state
    return bytes(data)


def build_transaction(
    instructions: Sequence[Instruction],
    *,
    payer: Pubkey | None = None,
    signers: Sequence[Keypair] = (CLIENT,),
    blockhash: Hash = BLOCKHASH,
) -> Transaction:
    message = Message.new_with_blockhash(list(instructions), payer or FEE_PAYER.pubkey(), blockhash)
    transaction = Transaction.new_unsigned(message)
    if signers:
        transaction.partial_sign(list(signers), blockhash)
    return transaction


def fake_network(*, fee: int | None = 5_000, account_data: bytes | None = None) -> AsyncMock:
    network = AsyncMock()
    network.get_fee_for_message.return_value = fee
    network.get_latest_blockhash.return_value = Hash.new_unique()
    network.get_account_data.return_value = (TOKEN_PROGRAM_ID, account_data or token_account_data())
    network.simulate.return_value = None
    network.submit_and_confirm.return_value = "confirmed-signature"
    return network
