"""Shared fixtures for environment tests."""

import pytest

from xchain_local.environment import EnvironmentOptions, LocalEnvironment
from xchain_local.testing import ANVIL_ACCOUNTS, InMemoryProvisioner, RecordingRelayer


@pytest.fixture()
def provisioner() -> InMemoryProvisioner:
    return InMemoryProvisioner()


@pytest.fixture()
def relayer() -> RecordingRelayer:
    return RecordingRelayer("evm")


@pytest.fixture()
def environment(provisioner, relayer) -> LocalEnvironment:
    environment = LocalEnvironment(
        provisioner=provisioner,
        relayers=[relayer],
        listener_factory=None,
    )
    try:
        yield environment
    finally:
        environment.destroy()


@pytest.fixture()
def output_path(tmp_path):
    return tmp_path / "local.json"


@pytest.fixture()
def options(output_path) -> EnvironmentOptions:
    """No relay ticks during a test unless it asks for them."""
    return EnvironmentOptions(
        chain_output_path=output_path,
        accounts_to_fund=ANVIL_ACCOUNTS[1:4],
        fund_amount=10**18,
        relay_interval=3600,
        port=9000,
    )
