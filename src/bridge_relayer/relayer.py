"""
Bridge relayer service.

This module contains the main service that builds every component from one
RelayerConfig, runs the background tasks and coordinates shutdown.
"""

import asyncio
import logging
from typing import Any

from .chain_watcher import ChainWatcher
from .config import RelayerConfig
from .confirmation_gate import ConfirmationGate
from .event_verifier import EventVerifier
from .fees import FeeEngine
from .gateway import ControlGateway
from .models import Direction
from .relay_engine import RelayEngine
from .relay_executor import RelayExecutor
from .utils.contract_utility import ContractUtility
from .utils.rpc_pool import RpcEndpointPool
from .utils.state_store import StateStore

logger = logging.getLogger(__name__)


class BridgeRelayer:
    """
    Main relayer service that orchestrates event monitoring and relaying.

    This class focuses on coordination and lifecycle management, delegating
    the relay itself to the RelayEngine.
    """

    STATUS_LOG_INTERVAL = 30  # seconds

    def __init__(self, config: RelayerConfig):
        """
        Initialize the Bridge Relayer.

        Args:
            config: Relayer configuration
        """
        self.config = config
        self.running = False

        self._init_utilities()

        # Initialize components
        self.verifier = EventVerifier(config, self.pools, self.contract_util)
        self.gate = ConfirmationGate(self.pools, config.chains)
        self.executor = RelayExecutor(config, self.pools, self.contract_util)
        self.engine = RelayEngine(
            config=config,
            state_store=self.state_store,
            verifier=self.verifier,
            gate=self.gate,
            executor=self.executor,
            fee_engine=FeeEngine(),
        )
        self.watchers: list[ChainWatcher] = [
            ChainWatcher(
                chain=config.event_chain(direction),
                direction=direction,
                pool=self.pools[config.event_chain(direction).name],
                state_store=self.state_store,
                engine=self.engine,
                contract_util=self.contract_util,
                monitoring=config.monitoring,
            )
            for direction in Direction
        ]
        self.gateway = ControlGateway(
            engine=self.engine,
            state_store=self.state_store,
            api=config.api,
            status_provider=self.get_status,
        )

        # Async coordination
        self.shutdown_event = asyncio.Event()

    def _init_utilities(self) -> None:
        """Initialize the signing utility, one RPC pool per chain and the state store."""
        monitoring = self.config.monitoring
        self.contract_util = ContractUtility(
            secret=self.config.private_key,
            request_timeout=monitoring.request_timeout,
        )
        self.pools: dict[str, RpcEndpointPool] = {
            chain.name: RpcEndpointPool(
                chain_name=chain.name,
                rpc_urls=chain.rpc_urls,
                client_factory=self.contract_util.build_web3,
                backoff_base=monitoring.backoff_base,
                backoff_cap=monitoring.backoff_cap,
                network_retry_delay=monitoring.network_retry_delay,
                error_retry_delay=monitoring.error_retry_delay,
                retry_count=monitoring.retry_count,
            )
            for chain in self.config.chains.values()
        }
        self.state_store = StateStore(self.config.state_file)

        logger.info(f"Relayer account: {self.contract_util.address}")

    @classmethod
    def from_env(cls) -> "BridgeRelayer":
        """
        Create a BridgeRelayer instance from environment variables.

        Returns:
            Configured BridgeRelayer instance

        Raises:
            ValueError: If required environment variables are missing
        """
        config = RelayerConfig.from_env()
        config.log_config()
        return cls(config)

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "watchers": [watcher.get_status() for watcher in self.watchers],
            "rpc": [pool.get_status() for pool in self.pools.values()],
            "relays": self.engine.get_stats(),
            "submitted": self.executor.submitted,
            "state": self.state_store.get_stats(),
        }

    async def _periodic_status_logger(self) -> None:
        """Log status periodically while running."""
        while self.running:
            await asyncio.sleep(self.STATUS_LOG_INTERVAL)
            stats = self.state_store.get_stats()
            cursors = ", ".join(f"{chain}={block}" for chain, block in stats["last_scanned_block"].items())
            by_status = stats["records_by_status"]
            attention = by_status["pending"] + by_status["stuck"] + stats["unrelayed"]
            logger.info(
                f"Status: cursors [{cursors}], "
                f"{stats['processed_deposits']} deposits, {stats['processed_burns']} burns processed"
            )
            if attention:
                logger.warning(f"{attention} records need reconciliation (GET /api/reconciliation)")

    async def _check_task_health(self, tasks: dict[str, asyncio.Task]) -> bool:
        """Check if any critical task has failed."""
        for name, task in tasks.items():
            if task.done() and name != "status":
                try:
                    await task
                except Exception as e:
                    logger.error(f"{name} task failed: {e}", exc_info=True)
                return False
        return True

    async def _cleanup_tasks(self, tasks: dict[str, asyncio.Task]) -> None:
        """Stop the API, let watchers exit, drain relays and close RPC clients."""
        self.shutdown_event.set()

        watcher_tasks = [task for name, task in tasks.items() if name.startswith("watcher:")]
        if watcher_tasks:
            await asyncio.gather(*watcher_tasks, return_exceptions=True)

        await self.gateway.stop()
        for watcher in self.watchers:
            await watcher.drain()

        # Cancel whatever is still running (status logger)
        for name, task in tasks.items():
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass  # Expected when cancelling

        for pool in self.pools.values():
            await pool.close()

    async def run(self) -> None:
        """Main event loop for the relayer service."""
        self.running = True
        logger.info("Bridge Relayer starting...")

        tasks: dict[str, asyncio.Task] = {}
        try:
            await self.gateway.start()

            if self.config.monitoring.watchers_enabled:
                for watcher in self.watchers:
                    tasks[f"watcher:{watcher.name}"] = asyncio.create_task(watcher.run(self.shutdown_event))
                logger.info("Event monitoring started, waiting for events...")
            else:
                logger.info("Watchers disabled, relaying on HTTP triggers only")
            tasks["status"] = asyncio.create_task(self._periodic_status_logger())

            # Wait until shutdown or task failure
            while self.running:
                try:
                    await asyncio.wait_for(self.shutdown_event.wait(), timeout=1.0)
                    break  # Shutdown requested
                except asyncio.TimeoutError:
                    pass  # Continue running

                if not await self._check_task_health(tasks):
                    logger.error("Critical task failure, shutting down")
                    break

        except Exception as e:
            logger.error(f"Error in main loop: {e}", exc_info=True)
            raise
        finally:
            self.running = False
            await self._cleanup_tasks(tasks)
            logger.info("Bridge Relayer stopped")

    def stop(self) -> None:
        """Stop the relayer service."""
        self.running = False
        self.shutdown_event.set()
