"""
GridSync Server - Main entry point.

This module starts the GridSync server with all components:
- SQLite database and schema registry
- SyncService (writes, reads, change bus, presence, locks, audit)
- HTTP server (REST, long-poll and SSE)
- Reaper loop (stale presence and lock cleanup)

Usage:
    python -m dbaas.gridsync_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The database is initialized and the catalog loaded before serving
    - Shutdown closes change subscriptions so streams end cleanly

How to change safely:
    - Add new background loops to _tasks so they are cancelled on stop
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter
from aiohttp import web

from .api import create_http_app
from .collab import LockManager, PresenceTracker, Reaper
from .config import ServerConfig
from .schema import SchemaRegistry
from .storage import Database
from .sync import ChangeBus, SyncService

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


class Server:
    """GridSync Server orchestrator.

    Attributes:
        config: Server configuration
        db: SQLite database
        registry: Schema registry
        service: Sync service shared by all transports

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running until request_shutdown()
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        self.db: Database | None = None
        self.registry: SchemaRegistry | None = None
        self.bus: ChangeBus | None = None
        self.service: SyncService | None = None
        self.reaper: Reaper | None = None
        self._runner: web.AppRunner | None = None

        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Start the server and wait for a shutdown request."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting GridSync server")
        self.config.log_config()

        try:
            storage = self.config.storage
            self.db = Database(
                db_path=storage.db_path,
                wal_mode=storage.wal_mode,
                busy_timeout_ms=storage.busy_timeout_ms,
                cache_size_pages=storage.cache_size_pages,
            )
            self.db.initialize()

            self.registry = SchemaRegistry(
                self.db, default_key_column=self.config.sync.default_key_column
            )
            self.registry.load()
            logger.info(f"Schema registry loaded, fingerprint: {self.registry.fingerprint}")

            collab = self.config.collab
            presence = PresenceTracker(self.db, ttl_seconds=collab.presence_ttl_seconds)
            locks = LockManager(self.db, default_ttl_seconds=collab.lock_ttl_seconds)
            self.bus = ChangeBus(queue_size=self.config.sync.subscriber_queue_size)
            self.service = SyncService(
                db=self.db,
                registry=self.registry,
                bus=self.bus,
                presence=presence,
                locks=locks,
                long_poll_max_ms=self.config.http.long_poll_max_ms,
                audit_default_limit=self.config.sync.audit_default_limit,
            )

            self.reaper = Reaper(
                presence,
                locks,
                interval_seconds=collab.reaper_interval_seconds,
                ttl_multiple=collab.reap_ttl_multiple,
            )
            self._tasks.append(asyncio.create_task(self.reaper.start()))

            app = create_http_app(self.service, self.config.http)
            self._runner = web.AppRunner(app)
            await self._runner.setup()
            site = web.TCPSite(self._runner, self.config.http.host, self.config.http.port)
            await site.start()
            logger.info(
                f"HTTP server running on http://{self.config.http.host}:{self.config.http.port}"
            )

            self._running = True
            logger.info("GridSync server started successfully")

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            self._running = True
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping GridSync server")

        if self.reaper:
            await self.reaper.stop()

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        # Ends open streams and long-polls before the runner waits for them
        if self.bus:
            self.bus.close_all()

        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        self._running = False
        logger.info("GridSync server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    server = Server(config)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
