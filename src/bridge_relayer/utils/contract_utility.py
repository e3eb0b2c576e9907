import json
from functools import lru_cache
from pathlib import Path

import aiohttp
from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3, Web3
from web3.contract import Contract
from web3.middleware import SignAndSendRawMiddlewareBuilder

from ..models import Direction

SOURCE_BRIDGE = "SourceBridge"
DESTINATION_BRIDGE = "DestinationBridge"


@lru_cache(maxsize=None)
def _load_abi(contract_name: str) -> tuple:
    contract_path = (Path(__file__).parent.parent / "contracts" / f"{contract_name}.json").resolve()
    with contract_path.open() as file:
        contract_data = json.load(file)
    return tuple(contract_data["abi"])


class ContractUtility:
    """
    Utility for contract interaction and ABI loading.

    Can be used in two modes:
    1. Full mode: Initialize with a private key to build signing web3 clients
    2. ABI-only mode: Initialize without a key to just load ABIs and decode logs
    """

    def __init__(self, secret: str = "", request_timeout: int = 30):
        """
        Initialize the ContractUtility.

        Args:
            secret: Relayer private key (optional for ABI-only mode)
            request_timeout: HTTP timeout for RPC requests in seconds
        """
        self.request_timeout = request_timeout
        self.account: LocalAccount | None = Account.from_key(secret) if secret else None
        # Offline instance, only used to decode logs against an ABI
        self._decoder_w3 = Web3()

    @property
    def address(self) -> str:
        if self.account is None:
            raise RuntimeError("ContractUtility has no signing account (ABI-only mode)")
        return self.account.address

    def build_web3(self, rpc_url: str) -> AsyncWeb3:
        """Create an AsyncWeb3 client for ``rpc_url`` that signs with the relayer key."""
        provider = AsyncWeb3.AsyncHTTPProvider(
            rpc_url,
            request_kwargs={"timeout": aiohttp.ClientTimeout(total=self.request_timeout)},
        )
        w3 = AsyncWeb3(provider)
        if self.account is not None:
            w3.middleware_onion.inject(SignAndSendRawMiddlewareBuilder.build(self.account), layer=0)
            w3.eth.default_account = self.account.address
        return w3

    def get_contract_abi(self, contract_name: str) -> list:
        """Fetches ABI of the given contract from the contracts folder"""
        return list(_load_abi(contract_name))

    @staticmethod
    def event_contract_name(direction: Direction) -> str:
        """ABI of the bridge that emits the events of ``direction``."""
        return SOURCE_BRIDGE if direction is Direction.DEPOSIT else DESTINATION_BRIDGE

    @staticmethod
    def submission_contract_name(direction: Direction) -> str:
        """ABI of the bridge that exposes mint/unlock for ``direction``."""
        return DESTINATION_BRIDGE if direction is Direction.DEPOSIT else SOURCE_BRIDGE

    def decoder_contract(self, contract_name: str, address: str) -> Contract:
        """Offline contract object used to decode receipt logs."""
        return self._decoder_w3.eth.contract(
            address=Web3.to_checksum_address(address),
            abi=self.get_contract_abi(contract_name),
        )
