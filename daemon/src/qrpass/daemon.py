"""Main daemon orchestration - ties all components together."""

import asyncio
import logging
import signal
from pathlib import Path
from typing import Any, Optional

from qrpass.auth import OwnerResolver, StaticTokenResolver
from qrpass.config import Config
from qrpass.ip_provider import IpProvider, LocalNetworkIpProvider
from qrpass.pairing import InMemorySessionStore, PairingManager, PairingSweeper
from qrpass.passes import JsonPassStore, PassKindRegistry
from qrpass.server import PairingServer

logger = logging.getLogger(__name__)


class StartupError(Exception):
    """Error during daemon startup."""

    pass


class Daemon:
    """Main daemon orchestrating all components.

    Responsibilities:
    - Validate configuration
    - Load the pass store
    - Build the session store, pairing manager and sweeper
    - Start the HTTP server
    - Handle graceful shutdown
    """

    def __init__(
        self,
        config: Config,
        pass_store: Any = None,
        owner_resolver: Optional[OwnerResolver] = None,
        ip_provider: Optional[IpProvider] = None,
    ):
        """Initialize daemon.

        Args:
            config: Daemon configuration.
            pass_store: Optional injected pass store (for testing).
            owner_resolver: Optional injected owner resolver (for testing).
            ip_provider: Optional injected IP provider (for testing).
        """
        self._config = config
        self._running = False

        self._pass_store = pass_store
        self._owner_resolver = owner_resolver
        self._ip_provider = ip_provider

        self._session_store: Optional[InMemorySessionStore] = None
        self._manager: Optional[PairingManager] = None
        self._sweeper: Optional[PairingSweeper] = None
        self._server: Optional[PairingServer] = None

    @property
    def manager(self) -> Optional[PairingManager]:
        return self._manager

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the daemon.

        Raises:
            StartupError: If configuration validation fails.
        """
        logger.info("Starting daemon...")

        self._validate_config()
        await self._initialize_stores()
        self._initialize_manager()
        await self._start_server()

        self._sweeper = PairingSweeper(
            self._session_store, interval=self._config.pairing.sweep_interval
        )
        await self._sweeper.start()

        self._setup_signals()

        self._running = True
        logger.info("Daemon started successfully")

    async def run_forever(self) -> None:
        """Run daemon until shutdown signal."""
        if not self._running:
            await self.start()

        try:
            while self._running:
                await asyncio.sleep(1)
        except asyncio.CancelledError:
            pass
        finally:
            await self._shutdown()

    async def stop(self) -> None:
        """Stop the daemon gracefully."""
        self._running = False

    def _validate_config(self) -> None:
        pairing = self._config.pairing
        if pairing.min_lifetime <= 0 or pairing.min_lifetime > pairing.max_lifetime:
            raise StartupError(
                f"Invalid lifetime range {pairing.min_lifetime}-{pairing.max_lifetime}s"
            )
        if not pairing.min_lifetime <= pairing.default_lifetime <= pairing.max_lifetime:
            raise StartupError(
                f"default_lifetime {pairing.default_lifetime}s outside "
                f"{pairing.min_lifetime}-{pairing.max_lifetime}s"
            )
        if pairing.id_bytes < 16:
            raise StartupError("id_bytes must be at least 16")
        if not self._config.server.api_tokens and self._owner_resolver is None:
            logger.warning("No api_tokens configured, owner requests will be rejected")

        logger.debug("Configuration validated")

    async def _initialize_stores(self) -> None:
        """Initialize session and pass stores."""
        pairing = self._config.pairing
        self._session_store = InMemorySessionStore(
            retention_grace=pairing.retention_grace,
            tombstone_ttl=pairing.tombstone_ttl,
        )

        if self._pass_store is None:
            passes_path = Path(self._config.passes_file).expanduser()
            self._pass_store = JsonPassStore(passes_path)
            await self._pass_store.load()
            logger.debug(f"Loaded {len(self._pass_store)} passes")

    def _initialize_manager(self) -> None:
        self._manager = PairingManager(
            store=self._session_store,
            pass_creator=self._pass_store,
            kinds=PassKindRegistry(),
            config=self._config.pairing,
        )

    async def _start_server(self) -> None:
        """Start the HTTP server."""
        if self._owner_resolver is None:
            self._owner_resolver = StaticTokenResolver(self._config.server.api_tokens)
        if self._ip_provider is None:
            self._ip_provider = LocalNetworkIpProvider()

        server_config = self._config.server
        self._server = PairingServer(
            manager=self._manager,
            owner_resolver=self._owner_resolver,
            ip_provider=self._ip_provider,
            public_base_url=server_config.public_base_url,
            complete_rate_per_session=server_config.complete_rate_per_session,
            complete_rate_per_ip=server_config.complete_rate_per_ip,
        )

        try:
            await self._server.start(
                host=self._config.bind_address,
                port=self._config.port,
            )
        except OSError as e:
            await self._server.close()
            raise StartupError(f"Cannot bind {self._config.bind_address}:{self._config.port}: {e}")

        logger.info(f"Pairing server started on {self._config.bind_address}:{self.get_port()}")

    def _setup_signals(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda: asyncio.create_task(self.stop()),
            )

    async def _shutdown(self) -> None:
        """Perform graceful shutdown."""
        logger.info("Shutting down daemon...")

        if self._sweeper:
            await self._sweeper.stop()

        if self._server:
            await self._server.close()

        logger.info("Daemon shutdown complete")

    def get_port(self) -> int:
        """Get the port the server is listening on."""
        if self._server:
            return self._server.get_port()
        return self._config.port
