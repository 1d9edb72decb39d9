"""
Chain Archive Server - Main entry point.

This module starts the archive server with all components:
- Ledger client (web3 or in-memory)
- Archive store (SQLite)
- Event subscriber loop (completion events -> archive)
- HTTP API (read routes + manual backfill), served by uvicorn

Usage:
    chainarchive-server
    python -m chainarchive_server.main

Configuration is entirely via environment variables.
See config.py and api/config.py for all available settings.

Invariants:
    - The ledger is connected and the store initialized before the API binds
    - A lost subscription is logged; the API keeps serving archived data
    - Graceful shutdown cancels the subscriber before closing the ledger

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any

import json_log_formatter
import uvicorn

from .api import ArchiveServices, Settings, create_app
from .archive import (
    ArchivePipeline,
    ArchiveStore,
    BackfillTrigger,
    EventSubscriber,
    RecordAssembler,
    SubscriberState,
    SubscriptionError,
)
from .config import ServerConfig
from .ledger import LedgerClient, create_ledger_client

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("web3").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


class Server:
    """Chain Archive server orchestrator.

    Manages the lifecycle of all server components:
    - Ledger connection
    - Archive store
    - Event subscriber task
    - HTTP API task

    Attributes:
        config: Server configuration
        api_settings: HTTP API settings
        ledger: Ledger client instance
        store: Archive store
        pipeline: Archive pipeline shared by subscriber and backfill

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(
        self,
        config: ServerConfig | None = None,
        api_settings: Settings | None = None,
        ledger: LedgerClient | None = None,
    ) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
            api_settings: Optional HTTP API settings (loaded from env if not provided)
            ledger: Optional pre-built ledger client (created from config if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self.api_settings = api_settings or Settings()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.ledger: LedgerClient | None = ledger
        self.store: ArchiveStore | None = None
        self.pipeline: ArchivePipeline | None = None
        self.backfill: BackfillTrigger | None = None
        self.subscriber: EventSubscriber | None = None
        self.http_server: uvicorn.Server | None = None

        # Background tasks
        self._tasks: list[asyncio.Task] = []
        self._api_task: asyncio.Task | None = None

    async def setup(self) -> ArchiveServices:
        """Connect the ledger and wire every archive component."""
        data_dir = Path(self.config.storage.data_dir)
        data_dir.mkdir(parents=True, exist_ok=True)

        if self.ledger is None:
            self.ledger = create_ledger_client(self.config)
        await self.ledger.connect()
        logger.info(
            "Ledger connected",
            extra={"contract_address": self.ledger.contract_address},
        )

        self.store = ArchiveStore(
            data_dir=str(data_dir),
            db_name=self.config.storage.db_name,
            wal_mode=self.config.storage.wal_mode,
            busy_timeout_ms=self.config.storage.busy_timeout_ms,
            timeout_seconds=self.config.storage.timeout_seconds,
        )
        await self.store.initialize()

        assembler = RecordAssembler(
            self.ledger,
            read_timeout=self.config.ledger.read_timeout_seconds,
            history_concurrency=self.config.ledger.history_concurrency,
        )
        self.pipeline = ArchivePipeline(assembler, self.store)
        self.backfill = BackfillTrigger(
            self.ledger,
            self.pipeline,
            read_timeout=self.config.ledger.read_timeout_seconds,
        )

        if self.config.subscriber.enabled:
            self.subscriber = EventSubscriber(
                self.ledger,
                self.pipeline,
                on_status=self._on_subscriber_status,
            )

        return ArchiveServices(
            store=self.store,
            pipeline=self.pipeline,
            backfill=self.backfill,
            subscriber=self.subscriber,
        )

    async def start(self) -> None:
        """Start the server and all components."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting Chain Archive server")
        self.config.log_config()
        self._running = True

        try:
            services = await self.setup()

            if self.subscriber is not None:
                subscriber_task = asyncio.create_task(self.subscriber.start())
                subscriber_task.add_done_callback(self._on_subscriber_done)
                self._tasks.append(subscriber_task)

            app = create_app(services, self.api_settings)
            self.http_server = uvicorn.Server(
                uvicorn.Config(
                    app,
                    host=self.api_settings.host,
                    port=self.api_settings.port,
                    log_config=None,
                )
            )
            api_task = asyncio.create_task(self.http_server.serve())
            self._api_task = api_task
            self._tasks.append(api_task)

            logger.info(
                "Chain Archive server started successfully",
                extra={"bind_address": self.api_settings.bind_address},
            )

            # Wait for a shutdown signal or the HTTP server exiting on its own
            shutdown_task = asyncio.create_task(self._shutdown_event.wait())
            await asyncio.wait({shutdown_task, api_task}, return_when=asyncio.FIRST_COMPLETED)
            shutdown_task.cancel()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    def _on_subscriber_status(self, state: SubscriberState, details: dict[str, Any]) -> None:
        logger.info(
            f"Subscriber state: {state.value}",
            extra={"subscriber_state": state.value, **details},
        )

    def _on_subscriber_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if isinstance(error, SubscriptionError):
            logger.error(
                f"Completion subscription lost: {error}. "
                "Archived data stays available; use POST /api/archive/{uid} for missed products.",
                extra={"subscription_id": error.subscription_id},
            )
        elif error is not None:
            logger.error(f"Event subscriber crashed: {error}", exc_info=error)

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping Chain Archive server")

        if self.http_server is not None:
            self.http_server.should_exit = True

        if self.subscriber is not None:
            await self.subscriber.stop()

        # The HTTP task drains on should_exit; everything else is cancelled
        for task in self._tasks:
            if task is not self._api_task and not task.done():
                task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self.ledger is not None:
            await self.ledger.close()

        self._running = False
        logger.info("Chain Archive server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config)

    # Create server
    server = Server(config)

    # Setup signal handlers
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    # Run server
    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
