"""Unit test helpers.

In-memory stand-ins for the collaborators of an environment,
so that provisioning, funding and relaying logic can be tested
without Anvil.

Example::

    from xchain_local.testing import InMemoryProvisioner, RecordingRelayer

    environment = LocalEnvironment(
        provisioner=InMemoryProvisioner(),
        relayers=[RecordingRelayer("evm")],
        listener_factory=None,
    )
"""

import threading
import time

from eth_abi import encode
from hexbytes import HexBytes
from web3 import Web3

from xchain_local.network import ForkOptions, Network, NetworkProvisioner, ProvisioningFailed
from xchain_local.registry import ChainRecord
from xchain_local.relay.base import RelayData, RelayerBackend

#: Anvil default accounts #0 - #3
ANVIL_ACCOUNTS = [
    "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266",
    "0x70997970C51812dc3A010C7d01b50e0d17dc79C8",
    "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC",
    "0x90F79bf6EB2c4f870365E785982E1f101E93b906",
]


class InMemoryEth:
    """The part of ``web3.eth`` used by provisioning, funding, relaying and token funding.

    Every send and confirmation is appended to `journal`.
    """

    def __init__(self, chain_id: int, journal: list | None = None):
        self.chain_id = chain_id
        self.accounts = list(ANVIL_ACCOUNTS)
        self.block_number = 0
        self.journal = journal if journal is not None else []
        #: Sends to these addresses raise
        self.fail_to: set[str] = set()
        #: Sends to these addresses are mined but revert
        self.revert_to: set[str] = set()
        self.sent: list[dict] = []
        #: Raw logs served by get_logs()
        self.logs: list[dict] = []
        #: (address, slot key) -> 32 bytes
        self.storage: dict[tuple[str, str], bytes] = {}
        #: Token address -> storage slot of its balanceOf mapping
        self.erc20_balance_slots: dict[str, int] = {}

    def send_transaction(self, tx: dict) -> HexBytes:
        if tx["to"] in self.fail_to:
            raise ValueError(f"Cannot send to {tx['to']}")
        self.sent.append(tx)
        self.block_number += 1
        self.journal.append(("send", self.chain_id, tx["to"]))
        return HexBytes(len(self.sent).to_bytes(32, "big"))

    def wait_for_transaction_receipt(self, tx_hash: HexBytes, timeout: float = 120) -> dict:
        tx = self.sent[int.from_bytes(tx_hash, "big") - 1]
        self.journal.append(("confirmed", self.chain_id, tx["to"]))
        return {"status": 0 if tx["to"] in self.revert_to else 1, "transactionHash": tx_hash}

    def get_logs(self, filter_params: dict) -> list[dict]:
        return [
            log
            for log in self.logs
            if log["address"] == filter_params["address"] and filter_params["fromBlock"] <= log["blockNumber"] <= filter_params["toBlock"]
        ]

    def get_storage_at(self, address: str, key: str) -> HexBytes:
        return HexBytes(self.storage.get((address, key), bytes(32)))

    def contract(self, address: str, abi: list[dict]) -> "InMemoryContract":
        return InMemoryContract(self, address, abi)


class InMemoryContract:
    """Decodes events with the real ABI, records function calls as transactions."""

    def __init__(self, eth: InMemoryEth, address: str, abi: list[dict]):
        self.eth = eth
        self.address = address
        self.events = Web3().eth.contract(address=address, abi=abi).events
        self.functions = InMemoryFunctions(self)


class InMemoryFunctions:
    def __init__(self, contract: InMemoryContract):
        self.contract = contract

    def __getattr__(self, name: str):
        def _bind(*args):
            return InMemoryFunctionCall(self.contract, name, args)

        return _bind


class InMemoryFunctionCall:
    def __init__(self, contract: InMemoryContract, fn_name: str, args: tuple):
        self.contract = contract
        self.fn_name = fn_name
        self.args = args

    def transact(self, tx: dict) -> HexBytes:
        """Send as a transaction, the call is kept in the ``sent`` list."""
        return self.contract.eth.send_transaction(dict(tx, to=self.contract.address, fn_name=self.fn_name, args=self.args))

    def call(self):
        assert self.fn_name == "balanceOf", f"Only balanceOf() can be called, got {self.fn_name}"
        eth = self.contract.eth
        slot = eth.erc20_balance_slots.get(self.contract.address)
        if slot is None:
            return 0
        key = Web3.to_hex(Web3.keccak(encode(["address", "uint256"], [self.args[0], slot])))
        return int.from_bytes(eth.get_storage_at(self.contract.address, key), "big")


class InMemoryProvider:
    """Serves the ``anvil_*`` methods used for token funding."""

    def __init__(self, eth: InMemoryEth):
        self.eth = eth
        self.requests: list[tuple[str, list]] = []

    def make_request(self, method: str, params: list) -> dict:
        self.requests.append((method, params))
        if method == "anvil_setStorageAt":
            address, key, value = params
            self.eth.storage[(address, key)] = bytes(HexBytes(value)).rjust(32, b"\x00")
            return {"jsonrpc": "2.0", "id": len(self.requests), "result": True}
        return {"jsonrpc": "2.0", "id": len(self.requests), "error": {"code": -32601, "message": f"Method {method} not found"}}


class InMemoryWeb3:
    def __init__(self, chain_id: int, journal: list | None = None):
        self.eth = InMemoryEth(chain_id, journal)
        self.provider = InMemoryProvider(self.eth)


class InMemoryProvisioner(NetworkProvisioner):
    """Hands out in-memory networks.

    :param fail_on:
        Chain names that fail to provision
    """

    def __init__(self, fail_on: set[str] | None = None):
        self.fail_on = fail_on or set()
        self.journal: list = []
        self.provisioned: list[str] = []

    def _check(self, name: str):
        if name in self.fail_on:
            raise ProvisioningFailed(f"Could not provision {name}")
        self.provisioned.append(name)

    def create_network(self, name: str, seed: str) -> Network:
        self._check(name)
        return Network(name, InMemoryWeb3(2500 + len(self.provisioned) - 1, self.journal))

    def fork_network(self, record: ChainRecord, fork_options: ForkOptions) -> Network:
        self._check(record.name)
        return Network(
            record.name,
            InMemoryWeb3(record.chain_id, self.journal),
            token_name=record.token_name,
            token_symbol=record.token_symbol,
        )


class RecordingRelayer(RelayerBackend):
    """Relayer that counts passes and can be made slow or failing."""

    def __init__(self, name: str = "recording", delay: float = 0.0, fail: bool = False):
        super().__init__()
        self.name = name
        self.delay = delay
        self.fail = fail
        self.calls = 0
        self.contract_call_gas_events: list[dict] = []
        self.networks: list[Network] = []
        #: Set while relay() runs, to detect overlapping passes
        self.active = 0
        self.max_active = 0
        self.pass_times: list[tuple[float, float]] = []
        self._active_lock = threading.Lock()
        #: relay() waits for this when set
        self.gate: threading.Event | None = None
        self.entered = threading.Event()

    def register_network(self, network: Network):
        self.networks.append(network)

    def relay(self):
        with self._active_lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        started = time.monotonic()
        self.entered.set()
        try:
            self.calls += 1
            if self.gate is not None:
                self.gate.wait(10)
            if self.delay:
                time.sleep(self.delay)
            if self.fail:
                raise RuntimeError(f"{self.name} relay failed")
            with self._data_lock:
                data = self._relay_data or RelayData()
                data.executed[f"pass-{self.calls}"] = "0x"
                self._relay_data = data
                self.contract_call_gas_events.append({"pass": self.calls})
        finally:
            self.pass_times.append((started, time.monotonic()))
            with self._active_lock:
                self.active -= 1

    def reset_log(self):
        super().reset_log()
        self.networks.clear()
        self.contract_call_gas_events.clear()
