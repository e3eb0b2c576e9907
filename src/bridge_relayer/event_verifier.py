#!/usr/bin/env python3
"""Event verification for the bridge relayer.

Re-derives a Deposit or Burn event from the mined receipt of a source
transaction. Callers only ever hand in a transaction hash; the event itself is
always decoded from chain data.
"""

import logging
from typing import TYPE_CHECKING, Any

from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import TransactionNotFound
from web3.logs import DISCARD

from .errors import (
    EventNotFound,
    InvalidDestinationAddress,
    ReceiptNotFound,
    TransactionReverted,
)
from .models import BridgeEvent, Direction
from .utils.state_store import normalize_event_id

if TYPE_CHECKING:
    from .config import RelayerConfig
    from .utils.contract_utility import ContractUtility
    from .utils.rpc_pool import RpcEndpointPool

logger = logging.getLogger(__name__)


class EventVerifier:
    """Builds BridgeEvents from receipts fetched through the chain's RPC pool."""

    def __init__(
        self,
        config: "RelayerConfig",
        pools: dict[str, "RpcEndpointPool"],
        contract_util: "ContractUtility",
    ) -> None:
        """
        Initialize the EventVerifier.

        Args:
            config: Relayer configuration
            pools: RPC pool per chain name
            contract_util: ABI loader and log decoder
        """
        self.config = config
        self.pools = pools
        self.contract_util = contract_util

    async def fetch_receipt(self, chain: str, tx_hash: str) -> Any:
        """
        Fetch a mined receipt.

        Raises:
            ReceiptNotFound: If the transaction is unknown or not mined yet
        """
        pool = self.pools[chain]
        try:
            receipt = await pool.call(
                lambda w3: w3.eth.get_transaction_receipt(tx_hash),
                description=f"get_transaction_receipt({tx_hash[:10]}...)",
            )
        except TransactionNotFound:
            raise ReceiptNotFound(chain, tx_hash) from None
        if receipt is None:
            raise ReceiptNotFound(chain, tx_hash)
        return receipt

    def extract_event(
        self,
        receipt: Any,
        direction: Direction,
        tx_hash: str,
        event_id: str | None = None,
    ) -> BridgeEvent:
        """
        Decode the first bridge event of ``direction`` from ``receipt``.

        Args:
            receipt: Mined transaction receipt
            direction: Which event to look for
            tx_hash: Source transaction hash (for errors and the result)
            event_id: Optional id hint; when given the matching log is chosen

        Raises:
            TransactionReverted: If the receipt status is not 1
            EventNotFound: If no matching log was emitted by the bridge
            InvalidDestinationAddress: If the event names an invalid recipient
        """
        chain = self.config.event_chain(direction)
        destination = self.config.submission_chain(direction)

        if (status := receipt.get("status")) != 1:
            raise TransactionReverted(chain.name, tx_hash, status)

        contract = self.contract_util.decoder_contract(
            self.contract_util.event_contract_name(direction),
            chain.bridge_address,
        )
        event_obj = getattr(contract.events, direction.event_name)()
        decoded = event_obj.process_receipt(receipt, errors=DISCARD)

        wanted = normalize_event_id(event_id) if event_id else None
        for log in decoded:
            # A bridge-shaped event from another contract is not ours
            if Web3.to_checksum_address(log["address"]) != chain.bridge_address:
                continue
            args = log["args"]
            log_event_id = normalize_event_id(bytes(args[direction.id_field]))
            if wanted is not None and log_event_id != wanted:
                continue
            return self._build_event(direction, log, log_event_id, chain.name, destination.name, tx_hash)

        raise EventNotFound(chain.name, tx_hash, direction.event_name)

    async def verify(
        self,
        chain: str,
        tx_hash: str,
        direction: Direction,
        event_id: str | None = None,
    ) -> BridgeEvent:
        """
        Fetch the receipt of ``tx_hash`` on ``chain`` and extract the bridge event.

        Returns:
            The verified BridgeEvent
        """
        expected = self.config.event_chain(direction).name
        if chain != expected:
            raise ValueError(f"{direction.value} events are emitted on {expected}, not {chain}")

        receipt = await self.fetch_receipt(chain, tx_hash)
        event = self.extract_event(receipt, direction, tx_hash, event_id)
        logger.info(f"Verified {event} in {tx_hash}")
        return event

    @staticmethod
    def _build_event(
        direction: Direction,
        log: Any,
        event_id: str,
        source_chain: str,
        destination_chain: str,
        tx_hash: str,
    ) -> BridgeEvent:
        args = log["args"]
        raw_destination = str(args["destinationAddress"]).strip()
        if not Web3.is_address(raw_destination):
            raise InvalidDestinationAddress(raw_destination)

        return BridgeEvent(
            direction=direction,
            event_id=event_id,
            user=Web3.to_checksum_address(args["user"]),
            destination_address=Web3.to_checksum_address(raw_destination),
            amount=int(args["amount"]),
            source_chain=source_chain,
            destination_chain=destination_chain,
            source_tx_hash=HexBytes(tx_hash).to_0x_hex(),
            block_number=int(log["blockNumber"]),
            log_index=int(log["logIndex"]),
        )
