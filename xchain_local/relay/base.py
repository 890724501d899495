"""Relayer backend interface.

The relay scheduler only talks to relayers through :py:class:`RelayerBackend`,
whatever chain family they serve.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from xchain_local.network import Network


@dataclass(slots=True)
class ContractCallRecord:
    """A cross-chain contract call seen on a source chain."""

    #: Unique id of the call, ``keccak(chain:txhash:logindex)`` as hex
    command_id: str

    source_chain: str

    destination_chain: str

    #: Contract that sent the message on the source chain
    sender: str

    #: Contract to execute on the destination chain
    destination_contract: str

    payload_hash: str

    payload: bytes

    #: Source transaction
    tx_hash: str

    log_index: int

    #: Token symbol for calls with token
    symbol: str | None = None

    #: Raw token amount for calls with token
    amount: int | None = None


@dataclass(slots=True)
class RelayData:
    """What a relayer has seen and done so far."""

    #: Command id -> plain contract call
    call_contract: dict[str, ContractCallRecord] = field(default_factory=dict)

    #: Command id -> contract call with token
    call_contract_with_token: dict[str, ContractCallRecord] = field(default_factory=dict)

    #: Command id -> destination transaction hash
    executed: dict[str, str] = field(default_factory=dict)

    #: Command id -> error message, these are not retried
    failed: dict[str, str] = field(default_factory=dict)

    def copy(self) -> "RelayData":
        return RelayData(
            call_contract=dict(self.call_contract),
            call_contract_with_token=dict(self.call_contract_with_token),
            executed=dict(self.executed),
            failed=dict(self.failed),
        )

    def is_pending(self, command_id: str) -> bool:
        return command_id not in self.executed and command_id not in self.failed


class RelayerBackend(ABC):
    """Moves messages for one chain family.

    - :py:meth:`relay` is never called concurrently with itself
    - :py:attr:`relay_data` may be read from any thread
    """

    #: Shown in logs and pass results
    name: str = "relayer"

    def __init__(self):
        self._data_lock = threading.Lock()
        self._relay_data: RelayData | None = None

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.name}>"

    @property
    def relay_data(self) -> RelayData | None:
        """Snapshot of the relay state after the latest pass.

        ``None`` until the first pass has run.
        """
        with self._data_lock:
            if self._relay_data is None:
                return None
            return self._relay_data.copy()

    def register_network(self, network: Network):
        """Called for every provisioned network. Ignore networks of other families."""

    @abstractmethod
    def relay(self):
        """Run one pass of message discovery and execution."""

    def reset_log(self):
        """Forget all events, relay state and registered networks."""
        with self._data_lock:
            self._relay_data = None
