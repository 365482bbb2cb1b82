from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Protocol

from solders.hash import Hash
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

REJECT_MALFORMED_REQUEST = "MALFORMED_REQUEST"
REJECT_DUPLICATE_TRANSACTION = "DUPLICATE_TRANSACTION"
REJECT_INVALID_FEE_PAYER = "INVALID_FEE_PAYER"
REJECT_MISSING_BLOCKHASH = "MISSING_BLOCKHASH"
REJECT_BLOCKHASH_NOT_FOUND = "BLOCKHASH_NOT_FOUND"
REJECT_FEE_TOO_HIGH = "FEE_TOO_HIGH"
REJECT_NO_SIGNATURES = "NO_SIGNATURES"
REJECT_TOO_MANY_SIGNATURES = "TOO_MANY_SIGNATURES"
REJECT_INVALID_FEE_PAYER_PUBKEY = "INVALID_FEE_PAYER_PUBKEY"
REJECT_INVALID_FEE_PAYER_SIGNATURE = "INVALID_FEE_PAYER_SIGNATURE"
REJECT_MISSING_PUBLIC_KEY = "MISSING_PUBLIC_KEY"
REJECT_MISSING_SIGNATURE = "MISSING_SIGNATURE"
REJECT_INVALID_SIGNATURE = "INVALID_SIGNATURE"
REJECT_INSTRUCTION_VALIDATION_FAILED = "INSTRUCTION_VALIDATION_FAILED"
REJECT_TRANSFER_VALIDATION_FAILED = "TRANSFER_VALIDATION_FAILED"
REJECT_DUPLICATE_TRANSFER = "DUPLICATE_TRANSFER"
REJECT_SIMULATION_FAILED = "SIMULATION_FAILED"
REJECT_ANTI_SPAM_CHECK_FAILED = "ANTI_SPAM_CHECK_FAILED"
REJECT_SUBMISSION_FAILED = "SUBMISSION_FAILED"
REJECT_DEPENDENCY_UNAVAILABLE = "DEPENDENCY_UNAVAILABLE"

CLIENT_MESSAGES = {
    REJECT_MALFORMED_REQUEST: "can't decode transaction",
    REJECT_DUPLICATE_TRANSACTION: "duplicate transaction",
    REJECT_INVALID_FEE_PAYER: "invalid fee payer",
    REJECT_MISSING_BLOCKHASH: "missing recent blockhash",
    REJECT_BLOCKHASH_NOT_FOUND: "blockhash not found",
    REJECT_FEE_TOO_HIGH: "fee too high",
    REJECT_NO_SIGNATURES: "no signatures",
    REJECT_TOO_MANY_SIGNATURES: "too many signatures",
    REJECT_INVALID_FEE_PAYER_PUBKEY: "invalid fee payer pubkey",
    REJECT_INVALID_FEE_PAYER_SIGNATURE: "invalid fee payer signature",
    REJECT_MISSING_PUBLIC_KEY: "missing public key",
    REJECT_MISSING_SIGNATURE: "missing signature",
    REJECT_INVALID_SIGNATURE: "invalid signature",
    REJECT_INSTRUCTION_VALIDATION_FAILED: "invalid instructions",
    REJECT_TRANSFER_VALIDATION_FAILED: "invalid transfer",
    REJECT_DUPLICATE_TRANSFER: "duplicate transfer",
    REJECT_SIMULATION_FAILED: "simulation failed",
    REJECT_ANTI_SPAM_CHECK_FAILED: "anti-spam check failed",
    REJECT_SUBMISSION_FAILED: "submission failed",
    REJECT_DEPENDENCY_UNAVAILABLE: "service unavailable",
}


class RelayError(RuntimeError):
    """A rejection of one relay request.

    ``str(error)`` is the client-safe message; ``detail`` is for logs only.
    """

    def __init__(self, kind: str, detail: str | None = None, *, message: str | None = None) -> None:
        super().__init__(message or CLIENT_MESSAGES.get(kind, "request rejected"))
        self.kind = kind
        self.detail = detail or ""


@dataclass(slots=True, frozen=True)
class TokenFee:
    mint: Pubkey
    account: Pubkey
    decimals: int
    fee: int

    @classmethod
    def from_serializable(cls, raw: Mapping[str, Any]) -> "TokenFee":
        return cls(
            mint=Pubkey.from_string(str(raw["mint"])),
            account=Pubkey.from_string(str(raw["account"])),
            decimals=int(raw["decimals"]),
            fee=int(raw["fee"]),
        )

    def to_serializable(self) -> dict[str, Any]:
        return {
            "mint": str(self.mint),
            "account": str(self.account),
            "decimals": self.decimals,
            "fee": self.fee,
        }


@dataclass(slots=True, frozen=True)
class NativeFee:
    account: Pubkey
    lamports: int


@dataclass(slots=True, frozen=True)
class TransferResult:
    instruction: str
    source: Pubkey
    destination: Pubkey
    owner: Pubkey
    amount: int
    mint: Pubkey | None = None


@dataclass(slots=True, frozen=True)
class SignedTransaction:
    transaction: Transaction
    signature: str
    raw: bytes


@dataclass(slots=True, frozen=True)
class RelayOutcome:
    signature: str
    submitted: bool
    source: str


class RelayCache(Protocol):
    async def get(self, key: str) -> Any | None:
        ...

    async def set(self, key: str, value: Any, *, ttl_ms: int | None = None) -> None:
        ...

    async def set_if_absent(self, key: str, value: Any, *, ttl_ms: int | None = None) -> Any | None:
        ...

    async def swap_if_stale(self, key: str, *, now_ms: int, window_ms: int) -> int | None:
        ...


class RelayNetwork(Protocol):
    async def get_fee_for_message(self, message: Message) -> int | None:
        ...

    async def get_latest_blockhash(self) -> Hash:
        ...

    async def get_account_data(self, pubkey: Pubkey) -> tuple[Pubkey, bytes] | None:
        ...

    async def simulate(self, transaction: Transaction) -> None:
        ...

    async def submit_and_confirm(self, raw_transaction: bytes) -> str:
        ...


class InstructionValidator(Protocol):
    async def __call__(self, transaction: Transaction, fee_payer: Pubkey) -> None:
        ...


class TransferValidator(Protocol):
    async def __call__(self, network: RelayNetwork, transaction: Transaction) -> TransferResult:
        ...


class ReturnSignatureGate(Protocol):
    async def allows(self, payload: Mapping[str, Any]) -> bool:
        ...
