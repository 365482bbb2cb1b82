from .anti_spam import AllowAllGate, ReCaptchaGate, normalize_return_signature_mode
from .guards import DuplicateTransactionGuard, SourceLockoutGuard
from .instructions import validate_instructions
from .network import SolanaNetwork
from .pipeline import RelayPipeline
from .transfer import FeeTransferValidator
from .types import (
    CLIENT_MESSAGES,
    NativeFee,
    RelayError,
    RelayOutcome,
    SignedTransaction,
    TokenFee,
    TransferResult,
)
from .validator import TransactionValidator
from .wire import decode_transaction, message_digest

__all__ = [
    "AllowAllGate",
    "CLIENT_MESSAGES",
    "DuplicateTransactionGuard",
    "FeeTransferValidator",
    "NativeFee",
    "ReCaptchaGate",
    "RelayError",
    "RelayOutcome",
    "RelayPipeline",
    "SignedTransaction",
    "SolanaNetwork",
    "SourceLockoutGuard",
    "TokenFee",
    "TransactionValidator",
    "TransferResult",
    "decode_transaction",
    "message_digest",
    "normalize_return_signature_mode",
    "validate_instructions",
]
