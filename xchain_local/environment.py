"""Provision a local multichain environment and keep relaying messages.

The flow of one environment:

1. Provision chains one by one, chain ``i`` gets the public RPC
   ``http://localhost:{port}/{i}``
2. Run the per-chain ``callback``, e.g. to deploy gateway contracts
3. Fund the test accounts on each chain, one confirmed transfer at a time
4. Start the RPC listener and write the chain metadata export once
5. Relay messages every ``relay_interval`` seconds until :py:meth:`LocalEnvironment.destroy`

Chains are either freshly created (:py:meth:`LocalEnvironment.create_and_export`)
or forked from a registry (:py:meth:`LocalEnvironment.fork_and_export`).

Example::

    from xchain_local.environment import EnvironmentOptions, LocalEnvironment

    environment = LocalEnvironment()
    try:
        environment.create_and_export(
            EnvironmentOptions(
                chains=["Avalanche", "Polygon"],
                accounts_to_fund=["0x70997970C51812dc3A010C7d01b50e0d17dc79C8"],
                chain_output_path="/tmp/local.json",
            )
        )
        ...
    finally:
        environment.destroy()

Module level :py:func:`create_and_export`, :py:func:`fork_and_export`
and :py:func:`destroy_exported` work on a process wide default environment.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from tqdm_loggable.auto import tqdm

from xchain_local.export import export_chains
from xchain_local.funding import DEFAULT_FUND_AMOUNT, fund_accounts
from xchain_local.listener import RpcListener
from xchain_local.network import AnvilProvisioner, ChainInfo, ForkOptions, Network, NetworkProvisioner, rpc_for_index
from xchain_local.registry import TESTNET_CHAINS, ChainRecord, filter_chains, find_testnet_record, resolve_chain_source
from xchain_local.relay.base import RelayerBackend
from xchain_local.relay.evm import EvmRelayer
from xchain_local.scheduler import AfterRelayHook, RelayPassResult, RelayScheduler
from xchain_local.tokens import CanonicalToken, TokenRegistry, fund_erc20_on_anvil

logger = logging.getLogger(__name__)

#: Chains created when the caller does not name any
DEFAULT_CREATE_CHAINS = ["Moonbeam", "Avalanche", "Fantom", "Ethereum", "Polygon"]

#: Contract that fronts express calls and needs USDC liquidity
EXPRESS_SERVICE_CONTRACT = "GMPExpressService"

#: Per-chain hook run after a chain is provisioned, before funding
ProvisionCallback = Callable[[Network, ChainInfo], None]


@dataclass(slots=True)
class EnvironmentOptions:
    """Configuration of a local environment."""

    #: Where the chain metadata export is written
    chain_output_path: Path | str = "./local.json"

    #: Addresses that get native currency on every chain
    accounts_to_fund: list[str] = field(default_factory=list)

    #: Wei sent to each funded address
    fund_amount: int = DEFAULT_FUND_AMOUNT

    #: Chain names to provision.
    #:
    #: Create mode: ``None`` gives :py:data:`DEFAULT_CREATE_CHAINS`,
    #: an empty list gives every testnet registry chain.
    #: Fork mode: ``None`` or empty forks every chain of the source.
    chains: list[str] | None = None

    #: Seconds between relay ticks
    relay_interval: float = 2.0

    #: Listener port, chain ``i`` is served at ``/i``
    port: int = 8500

    #: Called with each relayer's relay data after every pass
    after_relay: AfterRelayHook | None = None

    #: Called with the result of every relay pass, including suppressed relayer failures
    on_relay_pass: Callable[[RelayPassResult], None] | None = None

    #: Per-chain hook, see :py:data:`ProvisionCallback`
    callback: ProvisionCallback | None = None

    #: Fork source: ``"mainnet"``, ``"testnet"`` or a custom chain list
    env: str | list = "mainnet"

    #: How to fork, fork mode only
    fork_options: ForkOptions = field(default_factory=ForkOptions)

    #: Raw USDC units given to :py:data:`EXPRESS_SERVICE_CONTRACT`
    express_service_liquidity: int = 10**18

    #: Show a progress bar while provisioning
    progress: bool = False

    @classmethod
    def from_environment(cls, environ: dict | None = None) -> "EnvironmentOptions":
        """Read options from environment variables.

        ``CHAIN_OUTPUT_PATH``, ``ACCOUNTS_TO_FUND`` (comma separated),
        ``FUND_AMOUNT`` (wei), ``CHAINS`` (comma separated),
        ``RELAY_INTERVAL`` (seconds), ``PORT``, ``ENV`` (``mainnet`` or ``testnet``).
        Missing variables keep their defaults.
        """
        if environ is None:
            environ = os.environ

        def _split(value: str) -> list[str]:
            return [item.strip() for item in value.split(",") if item.strip()]

        options = cls()
        if environ.get("CHAIN_OUTPUT_PATH"):
            options.chain_output_path = environ["CHAIN_OUTPUT_PATH"]
        if environ.get("ACCOUNTS_TO_FUND"):
            options.accounts_to_fund = _split(environ["ACCOUNTS_TO_FUND"])
        if environ.get("FUND_AMOUNT"):
            options.fund_amount = int(environ["FUND_AMOUNT"])
        if "CHAINS" in environ:
            options.chains = _split(environ["CHAINS"])
        if environ.get("RELAY_INTERVAL"):
            options.relay_interval = float(environ["RELAY_INTERVAL"])
        if environ.get("PORT"):
            options.port = int(environ["PORT"])
        if environ.get("ENV"):
            options.env = environ["ENV"]
        return options


class LocalEnvironment:
    """Owns the chains, relayers, listener and relay scheduler of one environment."""

    def __init__(
        self,
        provisioner: NetworkProvisioner | None = None,
        relayers: list[RelayerBackend] | None = None,
        listener_factory: Callable[[int], RpcListener] | None = RpcListener,
        token_registry: TokenRegistry | None = None,
    ):
        """
        :param listener_factory:
            Creates the RPC listener for a port. ``None`` to not serve chains.
        """
        self.provisioner = provisioner or AnvilProvisioner()
        self.relayers = relayers if relayers is not None else [EvmRelayer()]
        self.listener_factory = listener_factory
        self.token_registry = token_registry or TokenRegistry()

        #: Provisioned networks in provisioning order
        self.networks: list[Network] = []

        #: Exported metadata, same order as networks
        self.chains: list[ChainInfo] = []

        self.listener: RpcListener | None = None
        self.scheduler: RelayScheduler | None = None
        self.output_path: Path | None = None

    def __repr__(self) -> str:
        return f"<LocalEnvironment {len(self.networks)} networks>"

    def create_and_export(self, options: EnvironmentOptions | None = None) -> list[ChainInfo]:
        """Create fresh chains, fund accounts, export and start relaying.

        :return:
            Metadata of provisioned chains

        :raise ProvisioningFailed:
            A chain could not be created, the rest of the run is aborted

        :raise FundingFailed:
            A funding transfer failed, the rest of the run is aborted
        """
        if options is None:
            options = EnvironmentOptions()

        if options.chains is None:
            names = list(DEFAULT_CREATE_CHAINS)
        elif not options.chains:
            names = [record.name for record in TESTNET_CHAINS]
        else:
            names = list(dict.fromkeys(options.chains))

        def _create(name: str) -> Network:
            network = self.provisioner.create_network(name, seed=name)
            record = find_testnet_record(name)
            if record is not None:
                network.token_name = record.token_name
                network.token_symbol = record.token_symbol
            return network

        self._provision(names, _create, options)
        return self.chains

    def fork_and_export(self, options: EnvironmentOptions | None = None) -> list[ChainInfo]:
        """Fork registry chains, fund accounts, export and start relaying.

        Requested names match the source chain names case-insensitively.

        :return:
            Metadata of provisioned chains
        """
        if options is None:
            options = EnvironmentOptions()

        records = filter_chains(resolve_chain_source(options.env), options.chains)
        if not records:
            logger.warning("No chains matched %s in the fork source", options.chains)

        def _fork(record: ChainRecord) -> Network:
            return self.provisioner.fork_network(record, options.fork_options)

        self._provision(records, _fork, options)
        return self.chains

    def _provision(self, items: list, make_network: Callable[[object], Network], options: EnvironmentOptions):
        assert self.scheduler is None, "Environment already running, call destroy() first"
        assert not self.networks, "Environment has networks left from a failed run, call destroy() first"

        if self.listener_factory is not None:
            self.listener = self.listener_factory(options.port)

        progress_bar = tqdm(total=len(items), desc="Provisioning chains", unit="chain", disable=not options.progress)

        for index, item in enumerate(items):
            network = make_network(item)
            network.token_registry = self.token_registry
            self.networks.append(network)

            info = network.get_clone_info(rpc=rpc_for_index(options.port, index))
            self.chains.append(info)

            for relayer in self.relayers:
                relayer.register_network(network)

            if self.listener is not None and network.json_rpc_url:
                self.listener.add_upstream(index, network.json_rpc_url)

            if options.callback is not None:
                options.callback(network, info)
            info.deployed_contracts.update(network.deployed_contracts)

            fund_accounts(
                network.web3,
                network.funding_account,
                options.accounts_to_fund,
                options.fund_amount,
                name=network.name,
            )

            self.seed_express_service(network, options.express_service_liquidity)

            progress_bar.set_description(f"Provisioned {network.name}")
            progress_bar.update(1)

        progress_bar.close()

        if self.listener is not None:
            self.listener.start()

        self.output_path = export_chains(self.chains, options.chain_output_path)

        self.scheduler = RelayScheduler(
            self.relayers,
            interval=options.relay_interval,
            after_relay=options.after_relay,
            on_pass=options.on_relay_pass,
        )
        self.scheduler.start()

    def seed_express_service(self, network: Network, amount: int) -> bool:
        """Give USDC liquidity to the express service contract of a chain.

        :return:
            ``False`` if the chain has no USDC or no express service
        """
        usdc = self.token_registry.lookup(network.name, CanonicalToken.usdc)
        if usdc is None:
            logger.debug("No USDC registered on %s, express service not seeded", network.name)
            return False

        express_service = network.deployed_contracts.get(EXPRESS_SERVICE_CONTRACT)
        if express_service is None:
            logger.debug("No %s on %s", EXPRESS_SERVICE_CONTRACT, network.name)
            return False

        fund_erc20_on_anvil(network.web3, usdc, express_service, amount)
        return True

    def destroy(self):
        """Stop relaying, stop serving, stop chains and reset relayers.

        A relay pass already running is let to finish before relayers are reset.
        Safe to call many times, and after a failed or no provisioning.
        """
        if self.scheduler is not None:
            # Relayer state is reset below, the running pass must not write after that
            self.scheduler.stop(wait_for_pass=True)
            self.scheduler = None

        if self.listener is not None:
            self.listener.stop()
            self.listener = None

        first_error = None
        for network in self.networks:
            try:
                network.close()
            except Exception as e:
                logger.error("Could not stop %s: %s", network.name, e)
                first_error = first_error or e

        for relayer in self.relayers:
            relayer.reset_log()

        self.token_registry.clear()
        self.networks = []
        self.chains = []

        if first_error is not None:
            raise first_error


#: Environment used by the module level functions
_default_environment: LocalEnvironment | None = None


def _replace_default_environment(**kwargs) -> LocalEnvironment:
    global _default_environment
    if _default_environment is not None:
        try:
            _default_environment.destroy()
        except Exception as e:
            # A stuck node of the old environment must not block new ones
            logger.error("Could not fully destroy the previous default environment: %s", e, exc_info=True)
    _default_environment = LocalEnvironment(**kwargs)
    return _default_environment


def create_and_export(options: EnvironmentOptions | None = None, **kwargs) -> LocalEnvironment:
    """Create chains in a fresh default environment.

    A previous default environment is destroyed first.

    :param kwargs:
        Passed to :py:class:`LocalEnvironment`
    """
    environment = _replace_default_environment(**kwargs)
    environment.create_and_export(options)
    return environment


def fork_and_export(options: EnvironmentOptions | None = None, **kwargs) -> LocalEnvironment:
    """Fork chains in a fresh default environment."""
    environment = _replace_default_environment(**kwargs)
    environment.fork_and_export(options)
    return environment


def destroy_exported():
    """Tear down the default environment, if any."""
    if _default_environment is not None:
        _default_environment.destroy()


def get_default_environment() -> LocalEnvironment | None:
    return _default_environment
