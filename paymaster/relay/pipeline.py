from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Mapping, TypeVar

from solders.keypair import Keypair
from solders.transaction import Transaction

from paymaster.common import log_event
from paymaster.storage.helpers import now_epoch_ms

from .guards import DEFAULT_SAME_SOURCE_TIMEOUT_MS, DuplicateTransactionGuard, SourceLockoutGuard
from .instructions import validate_instructions
from .types import (
    REJECT_ANTI_SPAM_CHECK_FAILED,
    REJECT_DEPENDENCY_UNAVAILABLE,
    REJECT_INSTRUCTION_VALIDATION_FAILED,
    REJECT_SIMULATION_FAILED,
    REJECT_SUBMISSION_FAILED,
    REJECT_TRANSFER_VALIDATION_FAILED,
    InstructionValidator,
    RelayCache,
    RelayError,
    RelayNetwork,
    RelayOutcome,
    ReturnSignatureGate,
    SignedTransaction,
    TransferResult,
    TransferValidator,
)
from .validator import TransactionValidator
from .wire import message_digest

T = TypeVar("T")

STAGE_RECEIVED = "received"
STAGE_DIGEST_CHECKED = "digest_checked"
STAGE_STRUCTURALLY_VALID = "structurally_valid"
STAGE_INSTRUCTIONS_VALID = "instructions_valid"
STAGE_TRANSFER_VALID = "transfer_valid"
STAGE_LOCKOUT_CLEAR = "lockout_clear"
STAGE_ANTI_SPAM = "anti_spam"
STAGE_SUBMITTED = "submitted"


class RelayPipeline:
    """Runs one client transaction through every check before co-signing.

    Cache markers written by an earlier stage stay in place when a later stage
    rejects the request.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        cache: RelayCache,
        network: RelayNetwork,
        fee_payer: Keypair,
        transfer_validator: TransferValidator,
        max_signatures: int,
        fee_ceiling: int,
        same_source_timeout_ms: int = DEFAULT_SAME_SOURCE_TIMEOUT_MS,
        instruction_validator: InstructionValidator = validate_instructions,
        return_signature_gate: ReturnSignatureGate | None = None,
        transaction_prefix: str = "transaction",
        transfer_prefix: str = "transfer/lastSignature",
        transaction_ttl_seconds: int = 0,
        clock: Callable[[], int] = now_epoch_ms,
    ) -> None:
        self._logger = logger
        self._network = network
        self._fee_payer = fee_payer
        self._transfer_validator = transfer_validator
        self._instruction_validator = instruction_validator
        self._return_signature_gate = return_signature_gate
        self._same_source_timeout_ms = max(0, int(same_source_timeout_ms))
        self._validator = TransactionValidator(
            network=network,
            fee_payer=fee_payer,
            max_signatures=max_signatures,
            fee_ceiling=fee_ceiling,
            logger=logger,
        )
        self._duplicate_guard = DuplicateTransactionGuard(
            cache=cache,
            logger=logger,
            key_prefix=transaction_prefix,
            ttl_seconds=transaction_ttl_seconds,
        )
        self._lockout_guard = SourceLockoutGuard(
            cache=cache,
            logger=logger,
            key_prefix=transfer_prefix,
            clock=clock,
        )

    @property
    def returns_signature(self) -> bool:
        return self._return_signature_gate is not None

    async def relay(self, transaction: Transaction, payload: Mapping[str, Any] | None = None) -> RelayOutcome:
        signed, transfer = await self.sign(transaction)
        source = str(transfer.source)

        if self._return_signature_gate is not None:
            gate = self._return_signature_gate
            allowed = await self._stage(
                STAGE_ANTI_SPAM,
                REJECT_ANTI_SPAM_CHECK_FAILED,
                lambda: gate.allows(payload or {}),
                signature=signed.signature,
            )
            if not allowed:
                error = RelayError(REJECT_ANTI_SPAM_CHECK_FAILED)
                self._rejected(STAGE_ANTI_SPAM, error, signature=signed.signature)
                raise error
            return RelayOutcome(signature=signed.signature, submitted=False, source=source)

        confirmed = await self._stage(
            STAGE_SUBMITTED,
            REJECT_SUBMISSION_FAILED,
            lambda: self._network.submit_and_confirm(signed.raw),
            signature=signed.signature,
        )
        log_event(
            self._logger,
            level="info",
            event="relay_submitted",
            message="Relayed transaction confirmed",
            signature=confirmed,
            source=source,
        )
        return RelayOutcome(signature=confirmed, submitted=True, source=source)

    async def sign(self, transaction: Transaction) -> tuple[SignedTransaction, TransferResult]:
        digest = message_digest(transaction.message)

        await self._stage(
            STAGE_RECEIVED,
            REJECT_DEPENDENCY_UNAVAILABLE,
            lambda: self._duplicate_guard.check_and_mark(digest),
            digest=digest,
        )
        signed = await self._stage(
            STAGE_DIGEST_CHECKED,
            REJECT_DEPENDENCY_UNAVAILABLE,
            lambda: self._validator.validate(transaction),
            digest=digest,
        )
        await self._stage(
            STAGE_STRUCTURALLY_VALID,
            REJECT_INSTRUCTION_VALIDATION_FAILED,
            lambda: self._instruction_validator(signed.transaction, self._fee_payer.pubkey()),
            digest=digest,
        )
        transfer = await self._stage(
            STAGE_INSTRUCTIONS_VALID,
            REJECT_TRANSFER_VALIDATION_FAILED,
            lambda: self._transfer_validator(self._network, signed.transaction),
            digest=digest,
        )
        await self._stage(
            STAGE_TRANSFER_VALID,
            REJECT_DEPENDENCY_UNAVAILABLE,
            lambda: self._lockout_guard.check_and_lock(str(transfer.source), self._same_source_timeout_ms),
            digest=digest,
            source=str(transfer.source),
        )
        await self._stage(
            STAGE_LOCKOUT_CLEAR,
            REJECT_SIMULATION_FAILED,
            lambda: self._network.simulate(signed.transaction),
            digest=digest,
        )

        log_event(
            self._logger,
            level="info",
            event="relay_accepted",
            message="Transaction validated, simulated and co-signed",
            digest=digest,
            signature=signed.signature,
            source=str(transfer.source),
            amount=transfer.amount,
            mint=str(transfer.mint) if transfer.mint is not None else None,
        )
        return signed, transfer

    async def _stage(
        self,
        stage: str,
        kind: str,
        action: Callable[[], Awaitable[T]],
        **fields: Any,
    ) -> T:
        try:
            return await action()
        except asyncio.CancelledError:
            raise
        except RelayError as error:
            self._rejected(stage, error, **fields)
            raise
        except Exception as error:
            wrapped = RelayError(kind, f"{type(error).__name__}: {error}")
            self._rejected(stage, wrapped, **fields)
            raise wrapped from error

    def _rejected(self, stage: str, error: RelayError, **fields: Any) -> None:
        log_event(
            self._logger,
            level="info",
            event="relay_rejected",
            message="Relay request rejected",
            stage=stage,
            kind=error.kind,
            detail=error.detail,
            **fields,
        )
