from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

CACHE_BACKENDS = {"memory", "redis"}


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or value == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def normalize_cache_backend(value: str) -> str:
    backend = (value or "").strip().lower()
    if backend in CACHE_BACKENDS:
        return backend
    return "memory"


def _normalize_prefix(value: str | None, default: str) -> str:
    normalized = (value or "").strip().strip("/")
    return normalized or default


@dataclass(slots=True)
class StorageSettings:
    cache_backend: str
    redis_url: str
    transaction_prefix: str
    transfer_prefix: str
    transaction_ttl_seconds: int

    @classmethod
    def from_env(cls) -> "StorageSettings":
        return cls(
            cache_backend=normalize_cache_backend(os.getenv("CACHE_BACKEND", "memory")),
            redis_url=os.getenv("REDIS_URL", "redis://redis:6379/0"),
            transaction_prefix=_normalize_prefix(os.getenv("CACHE_TRANSACTION_PREFIX"), "transaction"),
            transfer_prefix=_normalize_prefix(
                os.getenv("CACHE_TRANSFER_PREFIX"),
                "transfer/lastSignature",
            ),
            transaction_ttl_seconds=max(0, to_int(os.getenv("CACHE_TRANSACTION_TTL_SECONDS"), 0)),
        )

