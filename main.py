from __future__ import annotations

import asyncio
import contextlib
import signal

from dotenv import load_dotenv

from paymaster.common import log_event
from paymaster.runtime import AppSettings, bootstrap_dependencies, build_service, serve, setup_logger
from paymaster.storage import StorageSettings


async def main() -> None:
    load_dotenv()
    app_settings = AppSettings.from_env()
    storage_settings = StorageSettings.from_env()
    logger = setup_logger(app_settings.log_level)

    service = build_service(
        logger=logger,
        app_settings=app_settings,
        storage_settings=storage_settings,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_shutdown(sig: signal.Signals) -> None:
        log_event(
            logger,
            level="info",
            event="shutdown_signal_received",
            message="Shutdown signal received",
            signal=sig.name,
        )
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, request_shutdown, sig)

    await bootstrap_dependencies(
        logger=logger,
        stop_event=stop_event,
        app_settings=app_settings,
        service=service,
    )

    try:
        await serve(
            logger=logger,
            stop_event=stop_event,
            app_settings=app_settings,
            service=service,
        )
    finally:
        await service.close()
        log_event(logger, level="info", event="shutdown_completed", message="Shutdown completed")


if __name__ == "__main__":
    asyncio.run(main())
