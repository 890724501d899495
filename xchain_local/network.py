"""Provisioned local chains.

A :py:class:`Network` is one running local chain. Networks are created
by a :py:class:`NetworkProvisioner`, either fresh (seeded from the chain name)
or as a fork of a registry chain.

The network itself only knows its direct node URL. The public RPC URL,
``http://localhost:{port}/{index}``, is served by
:py:class:`xchain_local.listener.RpcListener` and is assigned by the
environment in provisioning order.
"""

import logging
from dataclasses import dataclass, field

from eth_typing import ChecksumAddress, HexAddress
from web3 import HTTPProvider, Web3

from xchain_local.anvil import AnvilLaunch, AnvilLaunchFailed, launch_anvil, seed_from_name
from xchain_local.registry import ChainRecord, get_fork_rpc
from xchain_local.tokens import CanonicalToken, TokenRegistry

logger = logging.getLogger(__name__)

#: Chain ids for freshly created chains start here
CREATED_CHAIN_ID_BASE = 2500


class ProvisioningFailed(Exception):
    """A local chain could not be created or forked."""


@dataclass(slots=True)
class ForkOptions:
    """How to fork chains.

    Shared by all forked chains of one environment.
    """

    #: Fork at this block, latest if not set
    fork_block_number: int | None = None

    #: Override block gas limit
    gas_limit: int | None = None

    #: Addresses to impersonate on every fork
    unlocked_addresses: list[HexAddress] = field(default_factory=list)

    #: Chain name -> JSON-RPC URL, wins over the registry and ``JSON_RPC_*`` variables
    rpc_overrides: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ChainInfo:
    """Exported description of one provisioned chain."""

    #: Chain name
    name: str

    #: EVM chain id of the local chain
    chain_id: int

    #: Public RPC URL, assigned by the environment
    rpc: str | None = None

    #: Native currency name, ``None`` if the registry does not know the chain
    token_name: str | None = None

    #: Native currency symbol
    token_symbol: str | None = None

    #: Contract name -> address
    deployed_contracts: dict[str, ChecksumAddress] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Export format, contract addresses as top level keys."""
        data = {
            "name": self.name,
            "chainId": self.chain_id,
            "rpc": self.rpc,
            "tokenName": self.token_name,
            "tokenSymbol": self.token_symbol,
        }
        for contract_name, address in self.deployed_contracts.items():
            assert contract_name not in data, f"Contract name {contract_name} clashes with a chain field"
            data[contract_name] = address
        return data


def rpc_for_index(port: int, index: int) -> str:
    """Public RPC URL of the chain provisioned as `index`-th in a run."""
    assert index >= 0, f"Bad index {index}"
    return f"http://localhost:{port}/{index}"


class Network:
    """One running local chain."""

    def __init__(
        self,
        name: str,
        web3: Web3,
        launch: AnvilLaunch | None = None,
        token_name: str | None = None,
        token_symbol: str | None = None,
    ):
        self.name = name
        self.web3 = web3
        self.launch = launch
        self.token_name = token_name
        self.token_symbol = token_symbol
        self.chain_id = web3.eth.chain_id
        self.user_accounts: list[ChecksumAddress] = list(web3.eth.accounts)
        self.deployed_contracts: dict[str, ChecksumAddress] = {}
        #: Set by the environment that owns the network
        self.token_registry: TokenRegistry | None = None
        self.closed = False

    def __repr__(self) -> str:
        return f"<Network {self.name} chain_id={self.chain_id}>"

    @property
    def json_rpc_url(self) -> str | None:
        """Direct node URL, bypassing the listener."""
        if self.launch is None:
            return None
        return self.launch.json_rpc_url

    @property
    def funding_account(self) -> ChecksumAddress:
        """The unlocked account all funding transfers originate from."""
        assert self.user_accounts, f"{self.name} has no unlocked accounts"
        return self.user_accounts[0]

    def register_contract(self, name: str, address: HexAddress | str):
        """Record a contract deployed on this chain, it ends up in the export."""
        self.deployed_contracts[name] = Web3.to_checksum_address(address)

    def register_token(self, token: CanonicalToken, address: HexAddress | str):
        """Record a well-known token deployed on this chain."""
        assert self.token_registry is not None, f"{self.name} is not attached to an environment"
        self.token_registry.register(self.name, token, address)

    def get_clone_info(self, rpc: str | None = None) -> ChainInfo:
        return ChainInfo(
            name=self.name,
            chain_id=self.chain_id,
            rpc=rpc,
            token_name=self.token_name,
            token_symbol=self.token_symbol,
            deployed_contracts=dict(self.deployed_contracts),
        )

    def close(self):
        """Stop the node. Idempotent."""
        if self.closed:
            return
        self.closed = True
        if self.launch is not None:
            self.launch.close()


class NetworkProvisioner:
    """Creates local chains.

    Subclass to provision chains by other means than local Anvil processes.
    """

    def create_network(self, name: str, seed: str) -> Network:
        raise NotImplementedError()

    def fork_network(self, record: ChainRecord, fork_options: ForkOptions) -> Network:
        raise NotImplementedError()


class AnvilProvisioner(NetworkProvisioner):
    """Provision each chain as its own Anvil process."""

    def __init__(self, anvil_path: str = "anvil", launch_wait_seconds: float = 20.0):
        self.anvil_path = anvil_path
        self.launch_wait_seconds = launch_wait_seconds
        self.created = 0

    def _connect(self, name: str, launch: AnvilLaunch, record: ChainRecord | None) -> Network:
        web3 = Web3(HTTPProvider(launch.json_rpc_url, request_kwargs={"timeout": 60}))
        return Network(
            name,
            web3,
            launch=launch,
            token_name=record.token_name if record else None,
            token_symbol=record.token_symbol if record else None,
        )

    def create_network(self, name: str, seed: str) -> Network:
        """Create a fresh chain.

        Dev accounts are derived from `seed`, so the same name gives the same state.
        """
        chain_id = CREATED_CHAIN_ID_BASE + self.created
        try:
            launch = launch_anvil(
                chain_id=chain_id,
                mnemonic_seed=seed_from_name(seed),
                anvil_path=self.anvil_path,
                launch_wait_seconds=self.launch_wait_seconds,
            )
        except AnvilLaunchFailed as e:
            raise ProvisioningFailed(f"Could not create chain {name}") from e
        self.created += 1
        logger.info("Created chain %s, chain id %d, at %s", name, chain_id, launch.json_rpc_url)
        return self._connect(name, launch, None)

    def fork_network(self, record: ChainRecord, fork_options: ForkOptions) -> Network:
        """Fork a chain, keeping its chain id and token metadata."""
        fork_url = fork_options.rpc_overrides.get(record.name) or get_fork_rpc(record)
        if not fork_url:
            raise ProvisioningFailed(f"No RPC to fork {record.name} from, set JSON_RPC_{record.name.upper()}")
        try:
            launch = launch_anvil(
                fork_url=fork_url,
                chain_id=record.chain_id or None,
                fork_block_number=fork_options.fork_block_number,
                gas_limit=fork_options.gas_limit,
                unlocked_addresses=fork_options.unlocked_addresses,
                anvil_path=self.anvil_path,
                launch_wait_seconds=self.launch_wait_seconds,
            )
        except AnvilLaunchFailed as e:
            raise ProvisioningFailed(f"Could not fork chain {record.name}") from e
        logger.info("Forked chain %s at %s", record.name, launch.json_rpc_url)
        return self._connect(record.name, launch, record)
