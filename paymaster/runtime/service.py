from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Any

from aiohttp import web

from paymaster.common import guarded_call, log_event
from paymaster.relay import (
    AllowAllGate,
    FeeTransferValidator,
    ReCaptchaGate,
    RelayPipeline,
    SolanaNetwork,
)
from paymaster.storage import MemoryCache, StorageGateway, StorageSettings, build_cache

from .server import build_app
from .settings import AppSettings, parse_keypair


async def wait_with_stop(stop_event: asyncio.Event, timeout_seconds: float) -> None:
    if timeout_seconds <= 0:
        return

    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        pass


@dataclass(slots=True)
class RelayService:
    pipeline: RelayPipeline
    cache: StorageGateway | MemoryCache
    network: SolanaNetwork
    gate: AllowAllGate | ReCaptchaGate | None

    async def connect(self) -> None:
        await self.cache.connect()
        await self.network.connect()
        if isinstance(self.gate, ReCaptchaGate):
            await self.gate.connect()

    async def close(self) -> None:
        with contextlib.suppress(Exception):
            await self.network.close()
        with contextlib.suppress(Exception):
            await self.cache.close()
        if isinstance(self.gate, ReCaptchaGate):
            with contextlib.suppress(Exception):
                await self.gate.close()


def build_gate(app_settings: AppSettings, logger: logging.Logger) -> AllowAllGate | ReCaptchaGate | None:
    if app_settings.return_signature_mode == "allow_all":
        return AllowAllGate()
    if app_settings.return_signature_mode == "recaptcha":
        return ReCaptchaGate(
            secret=app_settings.recaptcha_secret,
            min_score=app_settings.recaptcha_min_score,
            logger=logger,
        )
    return None


def build_service(
    *,
    logger: logging.Logger,
    app_settings: AppSettings,
    storage_settings: StorageSettings,
) -> RelayService:
    if not app_settings.private_key:
        raise ValueError("PRIVATE_KEY is required.")
    if not app_settings.token_fees and app_settings.native_fee is None:
        raise ValueError("Configure TOKEN_FEES, TOKEN_FEES_FILE or NATIVE_FEE_ACCOUNT.")

    fee_payer = parse_keypair(app_settings.private_key)
    cache = build_cache(storage_settings, logger)
    network = SolanaNetwork(
        rpc_url=app_settings.solana_rpc_url,
        logger=logger,
        commitment=app_settings.rpc_commitment,
        timeout_seconds=app_settings.rpc_timeout_seconds,
    )
    gate = build_gate(app_settings, logger)
    pipeline = RelayPipeline(
        logger=logger,
        cache=cache,
        network=network,
        fee_payer=fee_payer,
        transfer_validator=FeeTransferValidator(
            allowed_tokens=app_settings.token_fees,
            native_fee=app_settings.native_fee,
        ),
        max_signatures=app_settings.max_signatures,
        fee_ceiling=app_settings.fee_ceiling_lamports,
        same_source_timeout_ms=app_settings.same_source_timeout_ms,
        return_signature_gate=gate,
        transaction_prefix=storage_settings.transaction_prefix,
        transfer_prefix=storage_settings.transfer_prefix,
        transaction_ttl_seconds=storage_settings.transaction_ttl_seconds,
    )

    log_event(
        logger,
        level="info",
        event="relay_configured",
        message="Fee relay configured",
        fee_payer=str(fee_payer.pubkey()),
        cache_backend=storage_settings.cache_backend,
        tokens=[token.to_serializable() for token in app_settings.token_fees],
        native_fee_lamports=app_settings.native_fee.lamports if app_settings.native_fee else None,
        returns_signature=pipeline.returns_signature,
        max_signatures=app_settings.max_signatures,
        fee_ceiling_lamports=app_settings.fee_ceiling_lamports,
    )
    return RelayService(pipeline=pipeline, cache=cache, network=network, gate=gate)


async def bootstrap_dependencies(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    service: RelayService,
) -> None:
    while not stop_event.is_set():
        try:
            await service.connect()
            return
        except Exception as error:
            log_event(
                logger,
                level="exception",
                event="bootstrap_error",
                message="Dependency bootstrap failed",
                error=str(error),
            )
            await guarded_call(
                service.close,
                logger=logger,
                event="bootstrap_cleanup_failed",
                message="Cleanup after failed bootstrap raised",
            )
            await wait_with_stop(stop_event, app_settings.error_backoff_seconds)

    raise RuntimeError("Shutdown requested before dependencies were initialized.")


async def serve(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    service: RelayService,
) -> None:
    healthchecks: list[Any] = [service.cache.healthcheck, service.network.healthcheck]
    app = build_app(
        pipeline=service.pipeline,
        logger=logger,
        healthchecks=healthchecks,
        cors_origin=app_settings.cors_origin,
    )
    runner = web.AppRunner(app, access_log=None)
    await runner.setup()
    site = web.TCPSite(runner, app_settings.http_host, app_settings.http_port)
    await site.start()
    log_event(
        logger,
        level="info",
        event="http_started",
        message="Fee relay listening",
        host=app_settings.http_host,
        port=app_settings.http_port,
    )

    try:
        await stop_event.wait()
    finally:
        await runner.cleanup()
