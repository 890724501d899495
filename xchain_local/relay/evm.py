"""Relay Axelar-style general message passing calls between local EVM chains.

Each pass:

1. Scan every network's ``AxelarGateway`` for ``ContractCall`` and
   ``ContractCallWithToken`` events, and its ``AxelarGasService``
   for the matching native gas payment events
2. Call ``execute()`` / ``executeWithToken()`` on the destination contract
   for every call that has not been executed yet

Networks must register their contracts under :py:data:`GATEWAY_CONTRACT`
and :py:data:`GAS_SERVICE_CONTRACT` names, usually from the
per-chain provisioning callback::

    def deploy_contracts(network, info):
        gateway = deploy_gateway(network.web3)
        network.register_contract(GATEWAY_CONTRACT, gateway.address)

Gateway approval of commands is not modelled, destination contracts
are executed directly.
"""

import logging

from web3 import Web3

from xchain_local.network import Network
from xchain_local.relay.base import ContractCallRecord, RelayData, RelayerBackend

logger = logging.getLogger(__name__)

#: Contract name of the gateway in :py:attr:`Network.deployed_contracts`
GATEWAY_CONTRACT = "AxelarGateway"

#: Contract name of the gas service in :py:attr:`Network.deployed_contracts`
GAS_SERVICE_CONTRACT = "AxelarGasService"


def _event(name: str, inputs: list[tuple[str, str, bool]]) -> dict:
    return {
        "anonymous": False,
        "name": name,
        "type": "event",
        "inputs": [{"name": n, "type": t, "indexed": indexed} for n, t, indexed in inputs],
    }


GATEWAY_ABI = [
    _event(
        "ContractCall",
        [
            ("sender", "address", True),
            ("destinationChain", "string", False),
            ("destinationContractAddress", "string", False),
            ("payloadHash", "bytes32", True),
            ("payload", "bytes", False),
        ],
    ),
    _event(
        "ContractCallWithToken",
        [
            ("sender", "address", True),
            ("destinationChain", "string", False),
            ("destinationContractAddress", "string", False),
            ("payloadHash", "bytes32", True),
            ("payload", "bytes", False),
            ("symbol", "string", False),
            ("amount", "uint256", False),
        ],
    ),
]

GAS_SERVICE_ABI = [
    _event(
        "NativeGasPaidForContractCall",
        [
            ("sourceAddress", "address", True),
            ("destinationChain", "string", False),
            ("destinationAddress", "string", False),
            ("payloadHash", "bytes32", True),
            ("gasFeeAmount", "uint256", False),
            ("refundAddress", "address", False),
        ],
    ),
    _event(
        "NativeGasPaidForContractCallWithToken",
        [
            ("sourceAddress", "address", True),
            ("destinationChain", "string", False),
            ("destinationAddress", "string", False),
            ("payloadHash", "bytes32", True),
            ("symbol", "string", False),
            ("amount", "uint256", False),
            ("gasFeeAmount", "uint256", False),
            ("refundAddress", "address", False),
        ],
    ),
]

EXECUTABLE_ABI = [
    {
        "name": "execute",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "commandId", "type": "bytes32"},
            {"name": "sourceChain", "type": "string"},
            {"name": "sourceAddress", "type": "string"},
            {"name": "payload", "type": "bytes"},
        ],
        "outputs": [],
    },
    {
        "name": "executeWithToken",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "commandId", "type": "bytes32"},
            {"name": "sourceChain", "type": "string"},
            {"name": "sourceAddress", "type": "string"},
            {"name": "payload", "type": "bytes"},
            {"name": "tokenSymbol", "type": "string"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [],
    },
]


def _event_topics(abi: list[dict]) -> dict[str, str]:
    """Topic0 hex -> event name."""
    topics = {}
    for item in abi:
        signature = f"{item['name']}({','.join(i['type'] for i in item['inputs'])})"
        topics[Web3.to_hex(Web3.keccak(text=signature))] = item["name"]
    return topics


GATEWAY_TOPICS = _event_topics(GATEWAY_ABI)

GAS_SERVICE_TOPICS = _event_topics(GAS_SERVICE_ABI)


def get_log_id(chain: str, tx_hash: str, log_index: int) -> str:
    """Command id of a contract call event."""
    return Web3.to_hex(Web3.keccak(text=f"{chain}:{tx_hash}:{log_index}"))


class EvmRelayer(RelayerBackend):
    """Relays calls between EVM networks of the same environment."""

    name = "evm"

    def __init__(self, gas: int = 5_000_000, receipt_timeout: float = 60.0):
        super().__init__()
        self.gas = gas
        self.receipt_timeout = receipt_timeout
        self.networks: dict[str, Network] = {}
        #: Network name -> next block to scan
        self.cursors: dict[str, int] = {}
        self.contract_call_gas_events: list[dict] = []
        self.contract_call_with_token_gas_events: list[dict] = []

    def register_network(self, network: Network):
        # Only events after provisioning matter, forks have a long history
        self.networks[network.name] = network
        self.cursors[network.name] = network.web3.eth.block_number + 1

    def find_network(self, name: str) -> Network | None:
        for network_name, network in self.networks.items():
            if network_name.lower() == name.lower():
                return network
        return None

    def reset_log(self):
        super().reset_log()
        self.networks.clear()
        self.cursors.clear()
        self.contract_call_gas_events.clear()
        self.contract_call_with_token_gas_events.clear()

    def relay(self):
        """Scan all networks, then execute pending calls.

        A failing network does not stop the others.
        The first failure is raised after everything else has been tried.
        """
        with self._data_lock:
            data = self._relay_data.copy() if self._relay_data is not None else RelayData()

        first_error = None

        for network in list(self.networks.values()):
            try:
                self.scan_network(network, data)
            except Exception as e:
                logger.warning("Scanning %s failed: %s", network.name, e)
                first_error = first_error or e

        for command_id, call in list(data.call_contract.items()) + list(data.call_contract_with_token.items()):
            if not data.is_pending(command_id):
                continue
            try:
                self.execute_call(call, data)
            except Exception as e:
                logger.warning("Executing %s on %s failed: %s", command_id, call.destination_chain, e)
                first_error = first_error or e

        with self._data_lock:
            self._relay_data = data

        if first_error is not None:
            raise first_error

    def scan_network(self, network: Network, data: RelayData):
        """Collect new gateway and gas service events of one network."""
        gateway_address = network.deployed_contracts.get(GATEWAY_CONTRACT)
        if gateway_address is None:
            return

        web3 = network.web3
        from_block = self.cursors.get(network.name, 0)
        to_block = web3.eth.block_number
        if to_block < from_block:
            return

        gateway = web3.eth.contract(address=gateway_address, abi=GATEWAY_ABI)
        logs = web3.eth.get_logs({"address": gateway_address, "fromBlock": from_block, "toBlock": to_block})
        for log in logs:
            event_name = GATEWAY_TOPICS.get(Web3.to_hex(log["topics"][0])) if log["topics"] else None
            if event_name is None:
                continue
            event = getattr(gateway.events, event_name)().process_log(log)
            call = self._make_record(network.name, event)
            if event_name == "ContractCall":
                data.call_contract[call.command_id] = call
            else:
                data.call_contract_with_token[call.command_id] = call
            logger.info("Found %s %s from %s to %s", event_name, call.command_id, network.name, call.destination_chain)

        gas_service_address = network.deployed_contracts.get(GAS_SERVICE_CONTRACT)
        if gas_service_address is not None:
            gas_service = web3.eth.contract(address=gas_service_address, abi=GAS_SERVICE_ABI)
            logs = web3.eth.get_logs({"address": gas_service_address, "fromBlock": from_block, "toBlock": to_block})
            for log in logs:
                event_name = GAS_SERVICE_TOPICS.get(Web3.to_hex(log["topics"][0])) if log["topics"] else None
                if event_name is None:
                    continue
                event = getattr(gas_service.events, event_name)().process_log(log)
                args = dict(event["args"])
                args["sourceChain"] = network.name
                args["transactionHash"] = Web3.to_hex(event["transactionHash"])
                if event_name == "NativeGasPaidForContractCall":
                    self.contract_call_gas_events.append(args)
                else:
                    self.contract_call_with_token_gas_events.append(args)

        self.cursors[network.name] = to_block + 1

    def _make_record(self, chain: str, event) -> ContractCallRecord:
        args = event["args"]
        tx_hash = Web3.to_hex(event["transactionHash"])
        log_index = event["logIndex"]
        return ContractCallRecord(
            command_id=get_log_id(chain, tx_hash, log_index),
            source_chain=chain,
            destination_chain=args["destinationChain"],
            sender=args["sender"],
            destination_contract=args["destinationContractAddress"],
            payload_hash=Web3.to_hex(args["payloadHash"]),
            payload=bytes(args["payload"]),
            tx_hash=tx_hash,
            log_index=log_index,
            symbol=args.get("symbol"),
            amount=args.get("amount"),
        )

    def execute_call(self, call: ContractCallRecord, data: RelayData):
        """Execute one call on its destination network.

        Calls to chains outside this environment stay pending.
        A reverted execution is marked failed and not retried.
        """
        destination = self.find_network(call.destination_chain)
        if destination is None:
            logger.debug("Destination %s of %s not provisioned", call.destination_chain, call.command_id)
            return

        web3 = destination.web3
        executable = web3.eth.contract(address=Web3.to_checksum_address(call.destination_contract), abi=EXECUTABLE_ABI)
        command_id = Web3.to_bytes(hexstr=call.command_id)
        if call.symbol is None:
            func = executable.functions.execute(command_id, call.source_chain, call.sender, call.payload)
        else:
            func = executable.functions.executeWithToken(command_id, call.source_chain, call.sender, call.payload, call.symbol, call.amount)

        tx_hash = func.transact({"from": destination.funding_account, "gas": self.gas})
        receipt = web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        if receipt["status"] == 1:
            data.executed[call.command_id] = Web3.to_hex(tx_hash)
            logger.info("Executed %s on %s, tx %s", call.command_id, destination.name, Web3.to_hex(tx_hash))
        else:
            data.failed[call.command_id] = f"Execution reverted, tx {Web3.to_hex(tx_hash)}"
            logger.warning("Execution of %s on %s reverted", call.command_id, destination.name)
