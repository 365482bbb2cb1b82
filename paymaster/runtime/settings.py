from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import base58
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from paymaster.relay import NativeFee, TokenFee, normalize_return_signature_mode


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or str(value).strip() == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or str(value).strip() == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def normalize_commitment(value: str) -> str:
    commitment = (value or "").strip().lower()
    if commitment in {"processed", "confirmed", "finalized"}:
        return commitment
    return "confirmed"


def parse_keypair(raw: str) -> Keypair:
    value = raw.strip()

    if value.startswith("["):
        arr = json.loads(value)
        if not isinstance(arr, list):
            raise ValueError("PRIVATE_KEY JSON must be an integer array.")
        return Keypair.from_bytes(bytes(arr))

    try:
        secret = base58.b58decode(value)
    except ValueError as error:
        raise ValueError("Unsupported PRIVATE_KEY format.") from error
    if len(secret) != 64:
        raise ValueError("PRIVATE_KEY must decode to a 64-byte secret key.")
    return Keypair.from_bytes(secret)


def parse_token_fees(raw: Any) -> tuple[TokenFee, ...]:
    """Accept a list of token fee objects or a config document that nests one."""
    if isinstance(raw, str):
        raw = json.loads(raw) if raw.strip() else []
    if isinstance(raw, dict):
        raw = raw.get("endpoints", {}).get("transfer", {}).get("tokens", [])
    if not isinstance(raw, list):
        raise ValueError("Token fee configuration must be a JSON list.")
    return tuple(TokenFee.from_serializable(item) for item in raw)


def load_token_fees(*, inline: str, path: str) -> tuple[TokenFee, ...]:
    if path:
        return parse_token_fees(json.loads(Path(path).read_text(encoding="utf-8")))
    return parse_token_fees(inline)


def load_native_fee(*, account: str, lamports: int) -> NativeFee | None:
    if not account or lamports <= 0:
        return None
    return NativeFee(account=Pubkey.from_string(account), lamports=lamports)


@dataclass(slots=True)
class AppSettings:
    solana_rpc_url: str
    private_key: str = field(repr=False)
    rpc_commitment: str
    rpc_timeout_seconds: float
    max_signatures: int
    fee_ceiling_lamports: int
    same_source_timeout_ms: int
    token_fees: tuple[TokenFee, ...]
    native_fee: NativeFee | None
    return_signature_mode: str
    recaptcha_secret: str = field(repr=False)
    recaptcha_min_score: float
    http_host: str
    http_port: int
    cors_origin: str
    log_level: str
    error_backoff_seconds: float

    @classmethod
    def from_env(cls) -> "AppSettings":
        return cls(
            solana_rpc_url=os.getenv("SOLANA_RPC_URL", "").strip(),
            private_key=os.getenv("PRIVATE_KEY", ""),
            rpc_commitment=normalize_commitment(os.getenv("RPC_COMMITMENT", "confirmed")),
            rpc_timeout_seconds=max(1.0, to_float(os.getenv("RPC_TIMEOUT_SECONDS"), 10.0)),
            max_signatures=max(1, to_int(os.getenv("MAX_SIGNATURES"), 2)),
            fee_ceiling_lamports=max(0, to_int(os.getenv("FEE_CEILING_LAMPORTS"), 10_000)),
            same_source_timeout_ms=max(0, to_int(os.getenv("SAME_SOURCE_TIMEOUT_MS"), 5_000)),
            token_fees=load_token_fees(
                inline=os.getenv("TOKEN_FEES", ""),
                path=os.getenv("TOKEN_FEES_FILE", "").strip(),
            ),
            native_fee=load_native_fee(
                account=os.getenv("NATIVE_FEE_ACCOUNT", "").strip(),
                lamports=max(0, to_int(os.getenv("NATIVE_FEE_LAMPORTS"), 0)),
            ),
            return_signature_mode=normalize_return_signature_mode(os.getenv("RETURN_SIGNATURE_MODE")),
            recaptcha_secret=os.getenv("RECAPTCHA_SECRET", "").strip(),
            recaptcha_min_score=min(1.0, max(0.0, to_float(os.getenv("RECAPTCHA_MIN_SCORE"), 0.5))),
            http_host=os.getenv("HTTP_HOST", "0.0.0.0").strip() or "0.0.0.0",
            http_port=max(1, to_int(os.getenv("HTTP_PORT"), 8080)),
            cors_origin=os.getenv("CORS_ORIGIN", "*").strip() or "*",
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            error_backoff_seconds=max(0.2, to_float(os.getenv("ERROR_BACKOFF_SECONDS"), 2.0)),
        )
