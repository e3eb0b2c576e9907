"""
Polling-based bridge event watcher.

One ChainWatcher scans one chain for one direction's events, a block at a time,
and hands every log to the RelayEngine. The block cursor is persisted after
each block so a restart resumes where the previous run stopped.
"""

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any

from hexbytes import HexBytes

from .models import Direction, RelayResult, unrelayed_key
from .utils.rpc_pool import classify_rpc_error

if TYPE_CHECKING:
    from .config import ChainConfig, MonitoringConfig
    from .relay_engine import RelayEngine
    from .utils.contract_utility import ContractUtility
    from .utils.rpc_pool import RpcEndpointPool
    from .utils.state_store import StateStore


class ChainWatcher:
    """
    Background loop that discovers Deposit or Burn events on one chain.
    """

    def __init__(
        self,
        chain: "ChainConfig",
        direction: Direction,
        pool: "RpcEndpointPool",
        state_store: "StateStore",
        engine: "RelayEngine",
        contract_util: "ContractUtility",
        monitoring: "MonitoringConfig",
    ):
        """
        Initialize the watcher.

        Args:
            chain: Chain emitting the events
            direction: Direction whose events are watched
            pool: RPC pool of ``chain``
            state_store: Shared state store holding the block cursor
            engine: Relay engine every discovered event is dispatched to
            contract_util: ABI loader
            monitoring: Poll interval and retry settings
        """
        self.chain = chain
        self.direction = direction
        self.pool = pool
        self.state_store = state_store
        self.engine = engine
        self.monitoring = monitoring
        self.abi = contract_util.get_contract_abi(contract_util.event_contract_name(direction))

        self.is_running = False
        self.blocks_scanned = 0
        self.events_found = 0
        self._inflight: set[asyncio.Task] = set()
        self._inflight_keys: set[str] = set()
        self._last_unrelayed_retry = 0.0
        self._shutdown: asyncio.Event | None = None

        self.logger = logging.getLogger(f"{__name__}.{chain.name}.{direction.value}")

    @property
    def name(self) -> str:
        return f"{self.chain.name}-{self.direction.value}"

    async def _resolve_cursor(self) -> int:
        """Last scanned block: persisted, else just before the start block, else head."""
        cursor = self.state_store.get_last_scanned_block(self.chain.name)
        if cursor is not None:
            return cursor

        if self.chain.start_block is not None:
            cursor = max(self.chain.start_block - 1, 0)
        else:
            cursor = await self.pool.current().eth.block_number
        self.logger.info(f"No persisted cursor for {self.chain.name}, starting after block {cursor}")
        self.state_store.set_last_scanned_block(self.chain.name, cursor)
        return cursor

    async def scan_next_block(self) -> bool:
        """
        Scan the block after the cursor if the chain head has reached it.

        Returns:
            True if a block was scanned, False if the watcher is caught up
        """
        cursor = await self._resolve_cursor()
        w3 = self.pool.current()
        head = await w3.eth.block_number
        if head <= cursor:
            self.pool.record_success()
            return False

        block = cursor + 1
        contract = w3.eth.contract(address=self.chain.bridge_address, abi=self.abi)
        event_obj = getattr(contract.events, self.direction.event_name)
        logs = await event_obj.get_logs(from_block=block, to_block=block)
        self.pool.record_success()

        if logs:
            self.logger.info(f"Found {len(logs)} {self.direction.event_name} events in block {block}")
        for log in logs:
            self.events_found += 1
            tx_hash = HexBytes(log["transactionHash"]).to_0x_hex()
            event_id = "0x" + bytes(log["args"][self.direction.id_field]).hex()
            self.dispatch(tx_hash, event_id)

        self.state_store.set_last_scanned_block(self.chain.name, block)
        self.blocks_scanned += 1
        return True

    def dispatch(self, tx_hash: str, event_id: str | None = None) -> asyncio.Task:
        """Hand an event to the engine as a background task."""
        key = unrelayed_key(self.direction, tx_hash, event_id)
        task = asyncio.create_task(self._relay(tx_hash, event_id), name=f"relay-{tx_hash[:10]}")
        self._inflight.add(task)
        self._inflight_keys.add(key)
        task.add_done_callback(self._inflight.discard)
        task.add_done_callback(lambda _: self._inflight_keys.discard(key))
        return task

    def retry_unrelayed(self) -> int:
        """
        Re-dispatch every persisted unrelayed event of this direction that is
        not already being relayed.

        Returns:
            Number of relays dispatched
        """
        self._last_unrelayed_retry = time.monotonic()
        entries = [
            entry for entry in self.state_store.unrelayed_entries(self.direction)
            if entry.key not in self._inflight_keys
        ]
        if entries:
            self.logger.info(f"Retrying {len(entries)} unrelayed {self.direction.event_name} events")
        for entry in entries:
            self.dispatch(entry.source_tx_hash, entry.event_id)
        return len(entries)

    def _unrelayed_retry_due(self) -> bool:
        elapsed = time.monotonic() - self._last_unrelayed_retry
        return elapsed >= self.monitoring.unrelayed_retry_interval

    async def _relay(self, tx_hash: str, event_id: str | None) -> RelayResult | None:
        result = None
        for attempt in range(self.monitoring.retry_count + 1):
            if attempt:
                if await self._wait_for_shutdown(self.monitoring.error_retry_delay):
                    self.logger.warning(f"Shutdown before retrying {tx_hash}; kept for the next run")
                    self._remember_unrelayed(tx_hash, event_id, result.error, result.error_kind)
                    return result
                self.logger.info(f"Retrying relay of {tx_hash} (attempt {attempt + 1})")
            try:
                result = await self.engine.process(tx_hash, self.direction, event_id)
            except Exception as e:
                self.logger.error(f"Unexpected error relaying {tx_hash}: {e}", exc_info=True)
                self._remember_unrelayed(tx_hash, event_id, str(e), "unexpected_error")
                return None

            if not result.outcome.retryable:
                if not result.success:
                    self.logger.warning(f"Relay of {tx_hash} ended with {result.outcome.value}: {result.error}")
                self._forget_unrelayed(tx_hash, event_id)
                return result

        self.logger.error(f"Giving up on {tx_hash} after {self.monitoring.retry_count} retries: {result.error}")
        self._remember_unrelayed(tx_hash, event_id, result.error, result.error_kind)
        return result

    def _remember_unrelayed(
        self,
        tx_hash: str,
        event_id: str | None,
        error: str | None,
        error_kind: str | None,
    ) -> None:
        try:
            self.state_store.add_unrelayed(self.direction, tx_hash, event_id, error, error_kind)
        except Exception as e:
            self.logger.critical(f"Could not persist unrelayed {tx_hash} ({event_id}): {e}", exc_info=True)

    def _forget_unrelayed(self, tx_hash: str, event_id: str | None) -> None:
        try:
            self.state_store.clear_unrelayed(self.direction, tx_hash, event_id)
        except Exception as e:
            # Entry stays; the next retry pass ends as already processed and clears it
            self.logger.error(f"Could not clear unrelayed {tx_hash}: {e}")

    async def _wait_for_shutdown(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; True if shutdown was requested meanwhile."""
        if self._shutdown is None:
            await asyncio.sleep(timeout)
            return False
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """
        Poll until ``shutdown_event`` is set. Errors are logged and retried,
        never propagated.
        """
        if self.is_running:
            self.logger.warning("Watcher already running")
            return

        self._shutdown = shutdown_event
        self.is_running = True
        self.logger.info(
            f"Watching {self.direction.event_name} events on {self.chain.name} "
            f"bridge {self.chain.bridge_address}"
        )

        try:
            # Events a previous run gave up on
            self.retry_unrelayed()
            while not shutdown_event.is_set():
                try:
                    if await self.scan_next_block():
                        # Catching up, no delay
                        continue
                    if self._unrelayed_retry_due():
                        self.retry_unrelayed()
                    delay = self.monitoring.poll_interval
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    kind = classify_rpc_error(e)
                    delay = self.pool.record_failure(kind)
                    self.logger.warning(
                        f"Error scanning {self.chain.name} ({kind.value}): {e}; retrying in {delay:.1f}s"
                    )

                if await self._wait_for_shutdown(delay):
                    break
        finally:
            self.is_running = False
            self.logger.info(f"Stopped watching {self.direction.event_name} events on {self.chain.name}")

    async def drain(self) -> None:
        """Wait for every dispatched relay to finish."""
        if not self._inflight:
            return
        self.logger.info(f"Waiting for {len(self._inflight)} in-flight relays")
        await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def get_status(self) -> dict[str, Any]:
        """
        Get current status of the watcher.

        Returns:
            Dictionary with status information
        """
        return {
            "is_running": self.is_running,
            "chain": self.chain.name,
            "direction": self.direction.value,
            "last_scanned_block": self.state_store.get_last_scanned_block(self.chain.name),
            "blocks_scanned": self.blocks_scanned,
            "events_found": self.events_found,
            "in_flight": len(self._inflight),
            "unrelayed": len(self.state_store.unrelayed_entries(self.direction)),
            "rpc_url": self.pool.current_url,
        }
