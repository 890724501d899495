"""EVM relayer event scanning and execution against in-memory chains."""

import pytest
from eth_abi import encode
from hexbytes import HexBytes
from web3 import Web3

from xchain_local.network import Network
from xchain_local.relay import ContractCallRecord, EvmRelayer
from xchain_local.relay.evm import (
    GAS_SERVICE_ABI,
    GAS_SERVICE_CONTRACT,
    GAS_SERVICE_TOPICS,
    GATEWAY_ABI,
    GATEWAY_CONTRACT,
    GATEWAY_TOPICS,
    get_log_id,
)
from xchain_local.testing import InMemoryWeb3


def make_call(destination_chain: str = "Narnia") -> ContractCallRecord:
    return ContractCallRecord(
        command_id=get_log_id("Avalanche", "0x01", 0),
        source_chain="Avalanche",
        destination_chain=destination_chain,
        sender="0x5FbDB2315678afecb367f032d93F642f64180aa3",
        destination_contract="0x5FbDB2315678afecb367f032d93F642f64180aa3",
        payload_hash="0x" + "00" * 32,
        payload=b"hello",
        tx_hash="0x01",
        log_index=0,
    )


def test_log_id_is_deterministic():
    assert get_log_id("Avalanche", "0x01", 0) == get_log_id("Avalanche", "0x01", 0)
    assert get_log_id("Avalanche", "0x01", 0) != get_log_id("Avalanche", "0x01", 1)
    assert get_log_id("Avalanche", "0x01", 0) != get_log_id("Polygon", "0x01", 0)
    assert len(get_log_id("Avalanche", "0x01", 0)) == 66


def test_event_topics():
    assert set(GATEWAY_TOPICS.values()) == {"ContractCall", "ContractCallWithToken"}
    assert set(GAS_SERVICE_TOPICS.values()) == {"NativeGasPaidForContractCall", "NativeGasPaidForContractCallWithToken"}


def test_relay_without_gateway():
    """Networks without a gateway contract are skipped."""
    relayer = EvmRelayer()
    relayer.register_network(Network("Avalanche", InMemoryWeb3(2500)))
    assert relayer.relay_data is None

    relayer.relay()

    data = relayer.relay_data
    assert data is not None
    assert data.call_contract == {}
    assert data.executed == {}


def test_cursor_starts_after_registration():
    web3 = InMemoryWeb3(2500)
    web3.eth.block_number = 41
    relayer = EvmRelayer()
    relayer.register_network(Network("Avalanche", web3))
    assert relayer.cursors["Avalanche"] == 42


def test_find_network_case_insensitive():
    relayer = EvmRelayer()
    network = Network("Avalanche", InMemoryWeb3(2500))
    relayer.register_network(network)
    assert relayer.find_network("avalanche") is network
    assert relayer.find_network("Polygon") is None


def test_unknown_destination_stays_pending():
    relayer = EvmRelayer()
    relayer.register_network(Network("Avalanche", InMemoryWeb3(2500)))
    call = make_call("Narnia")
    relayer.relay()
    with relayer._data_lock:
        relayer._relay_data.call_contract[call.command_id] = call

    relayer.relay()

    data = relayer.relay_data
    assert data.is_pending(call.command_id)
    assert call.command_id in data.call_contract


def test_reset_log():
    """Events, relay state and registered networks are all forgotten."""
    relayer = EvmRelayer()
    relayer.register_network(Network("Avalanche", InMemoryWeb3(2500)))
    relayer.relay()
    relayer.contract_call_gas_events.append({"sourceChain": "Avalanche"})
    relayer.contract_call_with_token_gas_events.append({"sourceChain": "Avalanche"})

    relayer.reset_log()

    assert relayer.relay_data is None
    assert relayer.contract_call_gas_events == []
    assert relayer.contract_call_with_token_gas_events == []
    assert relayer.networks == {}
    assert relayer.cursors == {}
    assert relayer.find_network("Avalanche") is None


GATEWAY = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
GAS_SERVICE = "0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512"
SENDER = "0x9fE46736679d2D9a65F0992F2272dE9f3c7fa6e0"
EXECUTABLE = "0xCf7Ed3AccA5a467e9e704C703E8D87F634fB0Fc9"


def make_log(abi_item: dict, values: dict, address: str, block_number: int, log_index: int = 0, tx_index: int = 1) -> dict:
    """Encode an event as a raw log the way a node returns it."""
    indexed = [i for i in abi_item["inputs"] if i["indexed"]]
    plain = [i for i in abi_item["inputs"] if not i["indexed"]]
    signature = f"{abi_item['name']}({','.join(i['type'] for i in abi_item['inputs'])})"
    topics = [HexBytes(Web3.keccak(text=signature))]
    topics += [HexBytes(encode([i["type"]], [values[i["name"]]])) for i in indexed]
    return {
        "address": address,
        "topics": topics,
        "data": HexBytes(encode([i["type"] for i in plain], [values[i["name"]] for i in plain])),
        "blockNumber": block_number,
        "blockHash": HexBytes(block_number.to_bytes(32, "big")),
        "transactionHash": HexBytes(tx_index.to_bytes(32, "big")),
        "transactionIndex": 0,
        "logIndex": log_index,
    }


def find_abi(abi: list[dict], name: str) -> dict:
    return next(item for item in abi if item["name"] == name)


@pytest.fixture()
def source() -> Network:
    network = Network("Avalanche", InMemoryWeb3(2500))
    network.register_contract(GATEWAY_CONTRACT, GATEWAY)
    network.register_contract(GAS_SERVICE_CONTRACT, GAS_SERVICE)
    network.web3.eth.block_number = 10
    return network


@pytest.fixture()
def destination() -> Network:
    return Network("Polygon", InMemoryWeb3(2501))


@pytest.fixture()
def relayer(source, destination) -> EvmRelayer:
    relayer = EvmRelayer()
    relayer.register_network(source)
    relayer.register_network(destination)
    return relayer


def emit_contract_call(network: Network, payload: bytes = b"hello", block_number: int = 12, log_index: int = 0, tx_index: int = 1):
    network.web3.eth.logs.append(
        make_log(
            find_abi(GATEWAY_ABI, "ContractCall"),
            {
                "sender": SENDER,
                "destinationChain": "polygon",
                "destinationContractAddress": EXECUTABLE.lower(),
                "payloadHash": Web3.keccak(payload),
                "payload": payload,
            },
            GATEWAY,
            block_number,
            log_index,
            tx_index,
        )
    )
    network.web3.eth.block_number = max(network.web3.eth.block_number, block_number)


def test_contract_call_executed_on_destination(relayer, source, destination):
    """A gateway event is decoded, relayed to the destination and marked executed."""
    emit_contract_call(source)
    source.web3.eth.logs.append(
        make_log(
            find_abi(GAS_SERVICE_ABI, "NativeGasPaidForContractCall"),
            {
                "sourceAddress": SENDER,
                "destinationChain": "polygon",
                "destinationAddress": EXECUTABLE,
                "payloadHash": Web3.keccak(b"hello"),
                "gasFeeAmount": 10**15,
                "refundAddress": SENDER,
            },
            GAS_SERVICE,
            12,
            log_index=1,
        )
    )

    relayer.relay()

    data = relayer.relay_data
    command_id = get_log_id("Avalanche", Web3.to_hex(HexBytes((1).to_bytes(32, "big"))), 0)
    call = data.call_contract[command_id]
    assert call.sender == SENDER
    assert call.destination_chain == "polygon"
    assert call.payload == b"hello"
    assert call.symbol is None
    assert command_id in data.executed
    assert relayer.cursors["Avalanche"] == 13

    sent = destination.web3.eth.sent
    assert len(sent) == 1
    assert sent[0]["to"] == EXECUTABLE
    assert sent[0]["from"] == destination.funding_account
    assert sent[0]["fn_name"] == "execute"
    assert sent[0]["args"] == (Web3.to_bytes(hexstr=command_id), "Avalanche", SENDER, b"hello")

    assert len(relayer.contract_call_gas_events) == 1
    assert relayer.contract_call_gas_events[0]["sourceChain"] == "Avalanche"
    assert relayer.contract_call_gas_events[0]["gasFeeAmount"] == 10**15


def test_call_with_token(relayer, source, destination):
    source.web3.eth.logs.append(
        make_log(
            find_abi(GATEWAY_ABI, "ContractCallWithToken"),
            {
                "sender": SENDER,
                "destinationChain": "Polygon",
                "destinationContractAddress": EXECUTABLE,
                "payloadHash": Web3.keccak(b"swap"),
                "payload": b"swap",
                "symbol": "aUSDC",
                "amount": 5 * 10**6,
            },
            GATEWAY,
            11,
        )
    )
    source.web3.eth.block_number = 11

    relayer.relay()

    data = relayer.relay_data
    assert len(data.call_contract_with_token) == 1
    assert data.call_contract == {}
    sent = destination.web3.eth.sent
    assert sent[0]["fn_name"] == "executeWithToken"
    assert sent[0]["args"][-2:] == ("aUSDC", 5 * 10**6)


def test_events_before_registration_ignored(relayer, source, destination):
    emit_contract_call(source, block_number=10)
    relayer.relay()
    assert relayer.relay_data.call_contract == {}
    assert destination.web3.eth.sent == []


def test_each_call_executed_once(relayer, source, destination):
    emit_contract_call(source)
    relayer.relay()
    relayer.relay()
    emit_contract_call(source, payload=b"again", block_number=14, tx_index=2)
    relayer.relay()

    assert len(relayer.relay_data.executed) == 2
    assert [tx["args"][3] for tx in destination.web3.eth.sent] == [b"hello", b"again"]
    assert relayer.cursors["Avalanche"] == 15


def test_reverted_execution_is_failed(relayer, source, destination):
    """A reverted execution is recorded as failed and not retried."""
    destination.web3.eth.revert_to.add(EXECUTABLE)
    emit_contract_call(source)

    relayer.relay()
    relayer.relay()

    data = relayer.relay_data
    assert len(data.failed) == 1
    assert data.executed == {}
    assert len(destination.web3.eth.sent) == 1


def test_failing_network_does_not_stop_others(relayer, source, destination):
    """Execution errors are raised after the whole pass ran."""
    destination.web3.eth.fail_to.add(EXECUTABLE)
    emit_contract_call(source)

    with pytest.raises(ValueError):
        relayer.relay()

    data = relayer.relay_data
    assert len(data.call_contract) == 1
    command_id = next(iter(data.call_contract))
    assert data.is_pending(command_id)
    assert relayer.cursors["Avalanche"] == 13
