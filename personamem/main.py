"""Main entry point for the personamem service.

Initializes logging in two phases (defaults then config-driven), opens
the document store, wires the memory and conversation managers, and
keeps the maintenance job running until SIGTERM/SIGINT. On shutdown,
in-flight extraction and summary tasks are given a grace period before
being cancelled.

Key functions:
    main: Async entry point -- sets up logging, config, storage,
        managers and signal handlers, then waits for shutdown.
    run: Synchronous wrapper that calls asyncio.run(main()).
"""

import asyncio
import signal

import structlog

from .logging_config import setup_logging

VERSION = "0.1.0"
SHUTDOWN_GRACE_SECONDS = 10


async def main():
    """Main async entry point."""
    # Phase 1: defaults, cache_logger_on_first_use=False
    setup_logging()
    logger = structlog.get_logger("personamem")

    logger.info("personamem_starting", version=VERSION)

    # Import here to ensure logging is configured first
    from .background import get_supervisor
    from .config import get_config
    from .conversation.manager import initialize_conversation_manager
    from .llm_client import get_llm_client
    from .memory.maintenance import MaintenanceJob
    from .memory.manager import initialize_memory_manager
    from .storage import get_document_store

    config = get_config()
    config.validate()

    # Phase 2: reconfigure with real config, cache_logger_on_first_use=True
    setup_logging(config)

    db = get_document_store()
    await db.initialize()

    llm = get_llm_client()
    if not llm.is_configured:
        llm = None

    memory_manager = await initialize_memory_manager(db, llm)
    await initialize_conversation_manager(db, memory_manager=memory_manager, llm=llm)

    maintenance = None
    if config.maintenance_enabled:
        maintenance = MaintenanceJob(memory_manager, interval=config.maintenance_interval)
        await maintenance.start()

    # Setup graceful shutdown
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def handle_shutdown(sig):
        logger.info("shutdown_signal_received", signal=sig.name)
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, handle_shutdown, sig)
        except NotImplementedError:
            # Windows: add_signal_handler not supported.
            if sig == signal.SIGINT:
                signal.signal(
                    signal.SIGINT,
                    lambda s, f: handle_shutdown(signal.SIGINT),
                )

    try:
        logger.info("personamem_ready", database=str(config.database_path),
                    llm_enabled=llm is not None)
        await shutdown_event.wait()
    finally:
        if maintenance is not None:
            await maintenance.stop()
        await get_supervisor().drain(timeout=SHUTDOWN_GRACE_SECONDS)
        if llm is not None:
            await llm.close()
        await db.close()
        logger.info("personamem_stopped")


def run():
    """Synchronous entry point for the ``personamem`` console script."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
