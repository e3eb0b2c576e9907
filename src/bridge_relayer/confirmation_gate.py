"""Waits until an event's block is buried under enough confirmations."""

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .config import ChainConfig
    from .utils.rpc_pool import RpcEndpointPool

logger = logging.getLogger(__name__)


class ConfirmationGate:
    """Polls the chain head until ``head - block_number`` reaches the requirement."""

    def __init__(
        self,
        pools: dict[str, "RpcEndpointPool"],
        chains: dict[str, "ChainConfig"],
    ) -> None:
        self.pools = pools
        self.chains = chains

    async def current_confirmations(self, chain: str, block_number: int) -> int:
        head = await self.pools[chain].call(
            lambda w3: w3.eth.block_number,
            description="block_number",
        )
        return max(head - block_number, 0)

    async def await_confirmations(
        self,
        chain: str,
        block_number: int,
        required: int | None = None,
    ) -> int:
        """
        Block until ``block_number`` on ``chain`` has ``required`` confirmations.

        Sleeps ``(required - confirmations) * average_block_time`` between polls.
        RPC failures propagate from the pool once its retries are exhausted.

        Returns:
            Confirmation count observed when the gate opened
        """
        chain_config = self.chains[chain]
        if required is None:
            required = chain_config.required_confirmations

        while (confirmations := await self.current_confirmations(chain, block_number)) < required:
            delay = (required - confirmations) * chain_config.average_block_time
            logger.info(
                f"Block {block_number} on {chain} has {confirmations}/{required} confirmations, "
                f"waiting {delay:.1f}s"
            )
            await asyncio.sleep(delay)

        logger.debug(f"Block {block_number} on {chain} confirmed ({confirmations} confirmations)")
        return confirmations
