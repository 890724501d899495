"""Create real local chains with Anvil and reach them through the listener.

Needs Foundry's ``anvil`` in ``PATH``.
"""

import shutil

import pytest
from flaky import flaky
from web3 import HTTPProvider, Web3

from xchain_local.environment import EnvironmentOptions, LocalEnvironment
from xchain_local.export import load_chains
from xchain_local.network import AnvilProvisioner
from xchain_local.relay import EvmRelayer
from xchain_local.testing import ANVIL_ACCOUNTS
from xchain_local.utils import find_free_port

pytestmark = pytest.mark.skipif(
    shutil.which("anvil") is None,
    reason="Install Foundry to run these tests",
)


@pytest.fixture()
def environment():
    environment = LocalEnvironment(provisioner=AnvilProvisioner(), relayers=[EvmRelayer()])
    try:
        yield environment
    finally:
        environment.destroy()


@flaky(max_runs=3, min_passes=1)
def test_create_two_chains(environment, tmp_path):
    """Funded accounts are visible through the public RPC of each chain."""
    recipient = "0x000000000000000000000000000000000000bEEF"
    options = EnvironmentOptions(
        chains=["Avalanche", "Polygon"],
        accounts_to_fund=[recipient],
        fund_amount=5 * 10**18,
        chain_output_path=tmp_path / "local.json",
        port=find_free_port(),
        relay_interval=0.5,
    )

    chains = environment.create_and_export(options)

    assert [c.chain_id for c in chains] == [2500, 2501]
    for chain in chains:
        web3 = Web3(HTTPProvider(chain.rpc))
        assert web3.eth.chain_id == chain.chain_id
        assert web3.eth.get_balance(recipient) == 5 * 10**18

    exported = load_chains(tmp_path / "local.json")
    assert [e["tokenSymbol"] for e in exported] == ["AVAX", "MATIC"]


@flaky(max_runs=3, min_passes=1)
def test_same_name_same_accounts(tmp_path):
    """Dev accounts derive from the chain name, not from the run."""
    accounts = []
    for run in range(2):
        environment = LocalEnvironment(provisioner=AnvilProvisioner(), relayers=[EvmRelayer()], listener_factory=None)
        try:
            environment.create_and_export(
                EnvironmentOptions(
                    chains=["Avalanche"],
                    chain_output_path=tmp_path / f"local-{run}.json",
                    relay_interval=3600,
                )
            )
            accounts.append(environment.networks[0].user_accounts)
        finally:
            environment.destroy()

    assert accounts[0] == accounts[1]
    # Not Anvil's default test mnemonic
    assert accounts[0][0] != ANVIL_ACCOUNTS[0]
