"""Chain registry lookups and fork source selection."""

import pytest

from xchain_local.registry import (
    MAINNET_CHAINS,
    TESTNET_CHAINS,
    ChainRecord,
    filter_chains,
    find_testnet_record,
    get_fork_rpc,
    resolve_chain_source,
)


def test_filter_case_insensitive():
    source = resolve_chain_source([{"name": "foo", "chainId": 1}, {"name": "bar", "chainId": 2}, {"name": "baz", "chainId": 3}])
    selected = filter_chains(source, ["BAR", "Foo"])
    # Source order, not request order
    assert [r.name for r in selected] == ["foo", "bar"]


def test_filter_no_request_gives_all():
    assert filter_chains(MAINNET_CHAINS, []) == MAINNET_CHAINS
    assert filter_chains(MAINNET_CHAINS, None) == MAINNET_CHAINS


def test_filter_unknown_names_ignored():
    assert filter_chains(MAINNET_CHAINS, ["Narnia"]) == []


def test_filter_does_not_duplicate():
    selected = filter_chains(TESTNET_CHAINS, ["avalanche", "AVALANCHE"])
    assert len(selected) == 1


def test_resolve_mainnet_and_testnet():
    mainnet = resolve_chain_source("mainnet")
    testnet = resolve_chain_source("testnet")
    assert mainnet == MAINNET_CHAINS
    assert mainnet is not MAINNET_CHAINS
    assert testnet == TESTNET_CHAINS
    assert {r.chain_id for r in mainnet}.isdisjoint({r.chain_id for r in testnet})


def test_resolve_custom_list():
    records = resolve_chain_source(
        [
            {"name": "foo", "chainId": 1001, "rpc": "http://example.com", "tokenName": "Foo", "tokenSymbol": "FOO"},
            {"name": "bar", "chain_id": 1002, "token_symbol": "BAR"},
            ChainRecord("baz", 1003),
        ]
    )
    assert records[0] == ChainRecord("foo", 1001, "http://example.com", "Foo", "FOO")
    assert records[1].chain_id == 1002
    assert records[1].token_symbol == "BAR"
    assert records[2].name == "baz"


def test_resolve_unknown_source():
    with pytest.raises(ValueError):
        resolve_chain_source("devnet")


def test_fork_rpc_from_environment(monkeypatch):
    record = ChainRecord("Ethereum", 1, "https://public.example.com")
    monkeypatch.delenv("JSON_RPC_ETHEREUM", raising=False)
    assert get_fork_rpc(record) == "https://public.example.com"

    monkeypatch.setenv("JSON_RPC_ETHEREUM", "https://private.example.com")
    assert get_fork_rpc(record) == "https://private.example.com"


def test_testnet_lookup_is_exact():
    assert find_testnet_record("Avalanche").chain_id == 43113
    assert find_testnet_record("avalanche") is None
    assert find_testnet_record("Zork") is None
