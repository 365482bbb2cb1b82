from __future__ import annotations

import asyncio
import logging
from typing import Any

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction

from paymaster.common import log_event

from .types import (
    REJECT_DEPENDENCY_UNAVAILABLE,
    REJECT_SIMULATION_FAILED,
    REJECT_SUBMISSION_FAILED,
    RelayError,
)


class SolanaNetwork:
    """Shared RPC client for every in-flight request."""

    def __init__(
        self,
        *,
        rpc_url: str,
        logger: logging.Logger,
        commitment: str = "confirmed",
        timeout_seconds: float = 10.0,
        client: AsyncClient | None = None,
    ) -> None:
        self._rpc_url = rpc_url
        self._logger = logger
        self._commitment = Commitment(commitment)
        self._timeout_seconds = timeout_seconds
        self._client = client

    async def connect(self) -> None:
        if not self._rpc_url:
            raise ValueError("SOLANA_RPC_URL is required.")
        if self._client is None:
            self._client = AsyncClient(
                self._rpc_url,
                commitment=self._commitment,
                timeout=self._timeout_seconds,
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def healthcheck(self) -> None:
        await self.get_latest_blockhash()

    async def get_fee_for_message(self, message: Message) -> int | None:
        response = await self._call(
            "getFeeForMessage",
            lambda client: client.get_fee_for_message(message, commitment=self._commitment),
        )
        return response.value

    async def get_latest_blockhash(self) -> Hash:
        response = await self._call(
            "getLatestBlockhash",
            lambda client: client.get_latest_blockhash(commitment=self._commitment),
        )
        return response.value.blockhash

    async def get_account_data(self, pubkey: Pubkey) -> tuple[Pubkey, bytes] | None:
        response = await self._call(
            "getAccountInfo",
            lambda client: client.get_account_info(pubkey, commitment=self._commitment),
        )
        account = response.value
        if account is None:
            return None
        return account.owner, bytes(account.data)

    async def simulate(self, transaction: Transaction) -> None:
        try:
            response = await self._require_client().simulate_transaction(
                transaction,
                sig_verify=True,
                commitment=self._commitment,
            )
        except asyncio.CancelledError:
            raise
        except Exception as error:
            raise RelayError(REJECT_SIMULATION_FAILED, f"simulateTransaction failed: {error}") from error

        result = response.value
        if result.err is not None:
            log_event(
                self._logger,
                level="info",
                event="simulation_rejected",
                message="Simulation returned an error",
                error=str(result.err),
                logs=list(result.logs or [])[-10:],
            )
            raise RelayError(REJECT_SIMULATION_FAILED, str(result.err))

    async def submit_and_confirm(self, raw_transaction: bytes) -> str:
        client = self._require_client()
        try:
            sent = await client.send_raw_transaction(
                raw_transaction,
                opts=TxOpts(skip_confirmation=True, preflight_commitment=self._commitment),
            )
            signature: Signature = sent.value
            confirmed = await client.confirm_transaction(signature, commitment=self._commitment)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            raise RelayError(REJECT_SUBMISSION_FAILED, f"sendTransaction failed: {error}") from error

        statuses = confirmed.value or []
        status = statuses[0] if statuses else None
        if status is None:
            raise RelayError(REJECT_SUBMISSION_FAILED, f"no status for {signature}")
        if status.err is not None:
            raise RelayError(REJECT_SUBMISSION_FAILED, f"transaction {signature} failed: {status.err}")
        return str(signature)

    async def _call(self, method: str, request: Any) -> Any:
        client = self._require_client()
        try:
            return await request(client)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="warning",
                event="rpc_call_failed",
                message="RPC call failed",
                method=method,
                error=str(error),
            )
            raise RelayError(REJECT_DEPENDENCY_UNAVAILABLE, f"{method} failed: {error}") from error

    def _require_client(self) -> AsyncClient:
        if self._client is None:
            raise RuntimeError("RPC client is not initialized.")
        return self._client
