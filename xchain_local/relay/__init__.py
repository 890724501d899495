"""Relayer backends that move cross-chain messages between local chains."""

from xchain_local.relay.base import ContractCallRecord, RelayData, RelayerBackend
from xchain_local.relay.evm import EvmRelayer

__all__ = [
    "ContractCallRecord",
    "EvmRelayer",
    "RelayData",
    "RelayerBackend",
]
