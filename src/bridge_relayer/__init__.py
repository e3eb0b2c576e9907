"""
Bridge Relayer package.

Relays Deposit and Burn events between two EVM chains as mint and unlock calls.
"""

from .config import RelayerConfig
from .models import BridgeEvent, Direction, RelayOutcome, RelayResult
from .relay_engine import RelayEngine
from .relayer import BridgeRelayer

__all__ = ["RelayerConfig", "BridgeRelayer", "RelayEngine", "BridgeEvent", "Direction", "RelayOutcome", "RelayResult"]
__version__ = "0.1.0"
