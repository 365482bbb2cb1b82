from __future__ import annotations

from solders.pubkey import Pubkey
from solders.transaction import Transaction

from .types import REJECT_INSTRUCTION_VALIDATION_FAILED, RelayError
from .wire import account_flags


async def validate_instructions(transaction: Transaction, fee_payer: Pubkey) -> None:
    """Reject instructions that could spend from or sign as the fee payer."""
    message = transaction.message
    account_keys = message.account_keys

    for position, instruction in enumerate(message.instructions):
        if account_keys[instruction.program_id_index] == fee_payer:
            raise RelayError(
                REJECT_INSTRUCTION_VALIDATION_FAILED,
                f"instruction {position} invokes the fee payer as a program",
            )
        for index in instruction.accounts:
            if account_keys[index] != fee_payer:
                continue
            is_signer, is_writable = account_flags(message, index)
            if is_signer or is_writable:
                raise RelayError(
                    REJECT_INSTRUCTION_VALIDATION_FAILED,
                    f"instruction {position} uses the fee payer as a signer or writable account",
                )
