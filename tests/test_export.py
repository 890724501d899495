"""Chain metadata export file."""

import json
import os
import stat

import pytest

from xchain_local.export import export_chains, load_chains
from xchain_local.network import ChainInfo


@pytest.fixture()
def chains() -> list[ChainInfo]:
    return [
        ChainInfo(
            name="Avalanche",
            chain_id=2500,
            rpc="http://localhost:8500/0",
            token_name="Avax",
            token_symbol="AVAX",
            deployed_contracts={"AxelarGateway": "0x5FbDB2315678afecb367f032d93F642f64180aa3"},
        ),
        ChainInfo(name="Zork", chain_id=2501, rpc="http://localhost:8500/1"),
    ]


def test_export_format(chains, tmp_path):
    path = export_chains(chains, tmp_path / "local.json")

    with open(path, "rt", encoding="utf-8") as inp:
        data = json.load(inp)

    assert data == [
        {
            "name": "Avalanche",
            "chainId": 2500,
            "rpc": "http://localhost:8500/0",
            "tokenName": "Avax",
            "tokenSymbol": "AVAX",
            "AxelarGateway": "0x5FbDB2315678afecb367f032d93F642f64180aa3",
        },
        {
            "name": "Zork",
            "chainId": 2501,
            "rpc": "http://localhost:8500/1",
            "tokenName": None,
            "tokenSymbol": None,
        },
    ]


def test_export_replaces_file(chains, tmp_path):
    path = tmp_path / "local.json"
    path.write_text("garbage that is not json")

    export_chains(chains, path)
    export_chains(chains[1:], path)

    assert [c["name"] for c in load_chains(path)] == ["Zork"]
    # No temporary files left behind
    assert [p.name for p in tmp_path.iterdir() if p.suffix == ".tmp"] == []


def test_export_returns_absolute_path(chains, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    path = export_chains(chains, "local.json")
    assert path.is_absolute()
    assert path == tmp_path / "local.json"


def test_export_empty(tmp_path):
    path = export_chains([], tmp_path / "local.json")
    assert load_chains(path) == []


def test_contract_name_clash():
    info = ChainInfo(name="Avalanche", chain_id=1, deployed_contracts={"rpc": "0x5FbDB2315678afecb367f032d93F642f64180aa3"})
    with pytest.raises(AssertionError):
        info.to_dict()


@pytest.mark.skipif(os.name != "posix", reason="File modes are POSIX only")
def test_export_readable_by_others(chains, tmp_path):
    """The export gets the same mode as a file created with open()."""
    umask = os.umask(0o022)
    try:
        path = export_chains(chains, tmp_path / "local.json")
    finally:
        os.umask(umask)
    assert stat.S_IMODE(path.stat().st_mode) == 0o644


@pytest.mark.skipif(os.name != "posix", reason="File modes are POSIX only")
def test_export_keeps_existing_mode(chains, tmp_path):
    path = tmp_path / "local.json"
    path.write_text("[]")
    os.chmod(path, 0o640)

    export_chains(chains, path)

    assert stat.S_IMODE(path.stat().st_mode) == 0o640
