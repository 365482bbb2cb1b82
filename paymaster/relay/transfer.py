from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Sequence

from solders.instruction import CompiledInstruction
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from .types import (
    REJECT_TRANSFER_VALIDATION_FAILED,
    NativeFee,
    RelayError,
    RelayNetwork,
    TokenFee,
    TransferResult,
)
from .wire import account_flags

SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
TOKEN_2022_PROGRAM_ID = Pubkey.from_string("TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb")
TOKEN_PROGRAM_IDS = (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID)

SYSTEM_TRANSFER_TAG = 2
TOKEN_TRANSFER_TAG = 3
TOKEN_TRANSFER_CHECKED_TAG = 12

TOKEN_ACCOUNT_MIN_SIZE = 165
TOKEN_ACCOUNT_STATE_OFFSET = 108
TOKEN_ACCOUNT_STATE_INITIALIZED = 1
TOKEN_ACCOUNT_STATE_FROZEN = 2


def _reject(detail: str) -> RelayError:
    return RelayError(REJECT_TRANSFER_VALIDATION_FAILED, detail)


@dataclass(slots=True, frozen=True)
class AccountRef:
    pubkey: Pubkey
    is_signer: bool
    is_writable: bool


@dataclass(slots=True, frozen=True)
class TokenAccountState:
    mint: Pubkey
    owner: Pubkey
    amount: int
    state: int

    @classmethod
    def from_bytes(cls, data: bytes) -> "TokenAccountState":
        if len(data) < TOKEN_ACCOUNT_MIN_SIZE:
            raise _reject(f"token account data is {len(data)} bytes")
        return cls(
            mint=Pubkey.from_bytes(data[0:32]),
            owner=Pubkey.from_bytes(data[32:64]),
            amount=struct.unpack_from("<Q", data, 64)[0],
            state=data[TOKEN_ACCOUNT_STATE_OFFSET],
        )


def _account_refs(message: Message, instruction: CompiledInstruction) -> list[AccountRef]:
    refs: list[AccountRef] = []
    for index in instruction.accounts:
        is_signer, is_writable = account_flags(message, index)
        refs.append(AccountRef(message.account_keys[index], is_signer, is_writable))
    return refs


def _client_signer(transaction: Transaction) -> Pubkey:
    # slot 0 belongs to the fee payer; the paying owner must hold slot 1
    if len(transaction.signatures) < 2:
        raise _reject("transfer owner has no signature slot")
    return transaction.message.account_keys[1]


class FeeTransferValidator:
    """Checks that the first instruction pays the relay and resolves its source.

    Token fees are SPL ``Transfer``/``TransferChecked`` into an allow-listed
    account; the native fee is a system ``Transfer`` of lamports.
    """

    def __init__(
        self,
        *,
        allowed_tokens: Sequence[TokenFee] = (),
        native_fee: NativeFee | None = None,
    ) -> None:
        self._allowed_tokens = tuple(allowed_tokens)
        self._native_fee = native_fee

    async def __call__(self, network: RelayNetwork, transaction: Transaction) -> TransferResult:
        message = transaction.message
        if not message.instructions:
            raise _reject("missing instructions")

        first = message.instructions[0]
        program_id = message.account_keys[first.program_id_index]
        data = bytes(first.data)

        if program_id in TOKEN_PROGRAM_IDS and data[:1] in (
            bytes([TOKEN_TRANSFER_TAG]),
            bytes([TOKEN_TRANSFER_CHECKED_TAG]),
        ):
            return await self._validate_token_transfer(
                network,
                transaction,
                program_id=program_id,
                refs=_account_refs(message, first),
                data=data,
            )

        if program_id == SYSTEM_PROGRAM_ID and self._native_fee is not None:
            return self._validate_native_transfer(
                transaction,
                refs=_account_refs(message, first),
                data=data,
            )

        raise _reject(f"first instruction of program {program_id} is not a fee transfer")

    async def _validate_token_transfer(
        self,
        network: RelayNetwork,
        transaction: Transaction,
        *,
        program_id: Pubkey,
        refs: list[AccountRef],
        data: bytes,
    ) -> TransferResult:
        checked = data[0] == TOKEN_TRANSFER_CHECKED_TAG
        if checked:
            if len(data) < 10 or len(refs) < 4:
                raise _reject("malformed TransferChecked instruction")
            source, mint_ref, destination, owner = refs[:4]
            decimals = data[9]
        else:
            if len(data) < 9 or len(refs) < 3:
                raise _reject("malformed Transfer instruction")
            source, destination, owner = refs[:3]
            mint_ref = None
            decimals = None
        amount = struct.unpack_from("<Q", data, 1)[0]

        fetched = await network.get_account_data(source.pubkey)
        if fetched is None:
            raise _reject(f"source account {source.pubkey} not found")
        account_program, account_data = fetched
        if account_program != program_id:
            raise _reject("source account is not owned by the token program")
        account = TokenAccountState.from_bytes(account_data)

        if account.owner != owner.pubkey:
            raise _reject("source invalid owner")
        if account.state == TOKEN_ACCOUNT_STATE_FROZEN:
            raise _reject("source frozen")
        if account.state != TOKEN_ACCOUNT_STATE_INITIALIZED:
            raise _reject("source not initialized")
        if account.amount < amount:
            raise _reject("source insufficient balance")

        token = next((item for item in self._allowed_tokens if item.mint == account.mint), None)
        if token is None:
            raise _reject(f"invalid token {account.mint}")
        if amount < token.fee:
            raise _reject(f"invalid amount {amount} < {token.fee}")

        if not source.is_writable:
            raise _reject("source not writable")
        if source.is_signer:
            raise _reject("source is signer")

        if destination.pubkey != token.account:
            raise _reject("invalid destination")
        if not destination.is_writable:
            raise _reject("destination not writable")
        if destination.is_signer:
            raise _reject("destination is signer")

        if owner.pubkey != _client_signer(transaction):
            raise _reject("owner missing signature")
        if owner.is_writable:
            raise _reject("owner is writable")
        if not owner.is_signer:
            raise _reject("owner not signer")

        if checked:
            if mint_ref is None or mint_ref.pubkey != token.mint:
                raise _reject("invalid mint")
            if mint_ref.is_writable:
                raise _reject("mint is writable")
            if mint_ref.is_signer:
                raise _reject("mint is signer")
            if decimals != token.decimals:
                raise _reject("invalid decimals")

        return TransferResult(
            instruction="transferChecked" if checked else "transfer",
            source=source.pubkey,
            destination=destination.pubkey,
            owner=owner.pubkey,
            amount=amount,
            mint=token.mint,
        )

    def _validate_native_transfer(
        self,
        transaction: Transaction,
        *,
        refs: list[AccountRef],
        data: bytes,
    ) -> TransferResult:
        native_fee = self._native_fee
        if native_fee is None:
            raise _reject("native fee is not configured")
        if len(data) < 12 or struct.unpack_from("<I", data, 0)[0] != SYSTEM_TRANSFER_TAG:
            raise _reject("first system instruction is not a transfer")
        if len(refs) < 2:
            raise _reject("malformed system transfer")

        source, destination = refs[:2]
        lamports = struct.unpack_from("<Q", data, 4)[0]

        if destination.pubkey != native_fee.account:
            raise _reject("invalid destination")
        if lamports < native_fee.lamports:
            raise _reject(f"invalid amount {lamports} < {native_fee.lamports}")
        if source.pubkey != _client_signer(transaction):
            raise _reject("source missing signature")
        if not source.is_signer or not source.is_writable:
            raise _reject("source must be a writable signer")

        return TransferResult(
            instruction="systemTransfer",
            source=source.pubkey,
            destination=destination.pubkey,
            owner=source.pubkey,
            amount=lamports,
        )
