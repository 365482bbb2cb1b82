from __future__ import annotations

import logging
from typing import Callable

from paymaster.common import log_event
from paymaster.storage.helpers import now_epoch_ms

from .types import REJECT_DUPLICATE_TRANSACTION, REJECT_DUPLICATE_TRANSFER, RelayCache, RelayError

DEFAULT_SAME_SOURCE_TIMEOUT_MS = 5000


class DuplicateTransactionGuard:
    """Write-once marker per message digest.

    The marker is committed before the rest of the pipeline runs and is never
    removed when a later step rejects the transaction.
    """

    def __init__(
        self,
        *,
        cache: RelayCache,
        logger: logging.Logger,
        key_prefix: str = "transaction",
        ttl_seconds: int = 0,
    ) -> None:
        self._cache = cache
        self._logger = logger
        self._key_prefix = key_prefix
        self._ttl_ms = max(0, ttl_seconds) * 1000

    def key_for(self, digest: str) -> str:
        return f"{self._key_prefix}/{digest}"

    async def check_and_mark(self, digest: str) -> None:
        key = self.key_for(digest)
        previous = await self._cache.set_if_absent(key, True, ttl_ms=self._ttl_ms or None)
        if previous is not None:
            log_event(
                self._logger,
                level="info",
                event="duplicate_transaction",
                message="Transaction message was already accepted",
                digest=digest,
            )
            raise RelayError(REJECT_DUPLICATE_TRANSACTION, f"digest {digest} already marked")


class SourceLockoutGuard:
    """Per source account lockout measured from one acceptance to the next.

    A funded source account can pass validation and simulation many times
    before the first relayed transfer lands and drains it.
    """

    def __init__(
        self,
        *,
        cache: RelayCache,
        logger: logging.Logger,
        key_prefix: str = "transfer/lastSignature",
        clock: Callable[[], int] = now_epoch_ms,
    ) -> None:
        self._cache = cache
        self._logger = logger
        self._key_prefix = key_prefix
        self._clock = clock

    def key_for(self, source: str) -> str:
        return f"{self._key_prefix}/{source}"

    async def check_and_lock(self, source: str, window_ms: int = DEFAULT_SAME_SOURCE_TIMEOUT_MS) -> None:
        now_ms = self._clock()
        previous_ms = await self._cache.swap_if_stale(
            self.key_for(source),
            now_ms=now_ms,
            window_ms=max(0, window_ms),
        )
        if previous_ms is not None:
            log_event(
                self._logger,
                level="info",
                event="duplicate_transfer",
                message="Source account is locked out after a recent acceptance",
                source=source,
                elapsed_ms=now_ms - previous_ms,
                window_ms=window_ms,
            )
            raise RelayError(
                REJECT_DUPLICATE_TRANSFER,
                f"source {source} accepted {now_ms - previous_ms}ms ago",
            )
