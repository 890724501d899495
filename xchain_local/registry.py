"""Static chain metadata used as the source for local networks.

- :py:data:`MAINNET_CHAINS` and :py:data:`TESTNET_CHAINS` list the chains
  we know how to fork
- Fork RPCs can be overridden per chain with ``JSON_RPC_<NAME>`` environment
  variables, e.g. ``JSON_RPC_ETHEREUM`` or ``JSON_RPC_BINANCE``

Example::

    from xchain_local.registry import filter_chains, resolve_chain_source

    source = resolve_chain_source("testnet")
    chains = filter_chains(source, ["avalanche", "POLYGON"])
"""

import logging
import os
from dataclasses import dataclass
from typing import Iterable

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ChainRecord:
    """Registry entry describing one chain that can be forked or mirrored locally."""

    #: Chain name as used in cross-chain messages, e.g. ``"Avalanche"``
    name: str

    #: EVM chain id
    chain_id: int

    #: Public JSON-RPC endpoint used as the fork source
    rpc: str | None = None

    #: Native currency name
    token_name: str | None = None

    #: Native currency symbol
    token_symbol: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "ChainRecord":
        """Read a caller supplied chain entry.

        Accepts both the camelCase keys of exported JSON files
        and snake_case keys.
        """
        assert "name" in data, f"Chain entry without a name: {data}"
        return cls(
            name=data["name"],
            chain_id=int(data.get("chainId", data.get("chain_id", 0))),
            rpc=data.get("rpc"),
            token_name=data.get("tokenName", data.get("token_name")),
            token_symbol=data.get("tokenSymbol", data.get("token_symbol")),
        )


#: Chains available for mainnet forks
MAINNET_CHAINS: list[ChainRecord] = [
    ChainRecord("Ethereum", 1, "https://ethereum-rpc.publicnode.com", "Ether", "ETH"),
    ChainRecord("Avalanche", 43114, "https://api.avax.network/ext/bc/C/rpc", "Avax", "AVAX"),
    ChainRecord("Fantom", 250, "https://rpc.ftm.tools", "Fantom", "FTM"),
    ChainRecord("Polygon", 137, "https://polygon-rpc.com", "Matic", "MATIC"),
    ChainRecord("Moonbeam", 1284, "https://rpc.api.moonbeam.network", "Glimmer", "GLMR"),
    ChainRecord("binance", 56, "https://bsc-dataseed.binance.org", "Binance Coin", "BNB"),
    ChainRecord("arbitrum", 42161, "https://arb1.arbitrum.io/rpc", "Ether", "ETH"),
    ChainRecord("optimism", 10, "https://mainnet.optimism.io", "Ether", "ETH"),
    ChainRecord("base", 8453, "https://mainnet.base.org", "Ether", "ETH"),
    ChainRecord("celo", 42220, "https://forno.celo.org", "Celo", "CELO"),
]

#: Chains available for testnet forks and as metadata for freshly created chains
TESTNET_CHAINS: list[ChainRecord] = [
    ChainRecord("Ethereum", 11155111, "https://ethereum-sepolia-rpc.publicnode.com", "Ether", "ETH"),
    ChainRecord("Avalanche", 43113, "https://api.avax-test.network/ext/bc/C/rpc", "Avax", "AVAX"),
    ChainRecord("Fantom", 4002, "https://rpc.testnet.fantom.network", "Fantom", "FTM"),
    ChainRecord("Polygon", 80002, "https://rpc-amoy.polygon.technology", "Matic", "MATIC"),
    ChainRecord("Moonbeam", 1287, "https://rpc.api.moonbase.moonbeam.network", "Dev", "DEV"),
    ChainRecord("binance", 97, "https://data-seed-prebsc-1-s1.binance.org:8545", "Binance Coin", "BNB"),
    ChainRecord("arbitrum", 421614, "https://sepolia-rollup.arbitrum.io/rpc", "Ether", "ETH"),
    ChainRecord("optimism", 11155420, "https://sepolia.optimism.io", "Ether", "ETH"),
    ChainRecord("base", 84532, "https://sepolia.base.org", "Ether", "ETH"),
    ChainRecord("celo", 44787, "https://alfajores-forno.celo-testnet.org", "Celo", "CELO"),
]


def get_fork_rpc(record: ChainRecord) -> str | None:
    """Get the JSON-RPC URL to fork a chain from.

    ``JSON_RPC_<NAME>`` environment variable wins over the registry value.
    """
    env_name = f"JSON_RPC_{record.name.upper()}"
    return os.environ.get(env_name) or record.rpc


def resolve_chain_source(env: str | list = "mainnet") -> list[ChainRecord]:
    """Resolve the list of chains to fork from.

    :param env:
        ``"mainnet"``, ``"testnet"`` or a custom list of
        :py:class:`ChainRecord` or dict entries.

    :return:
        Chain records in their source order
    """
    if env == "mainnet":
        return list(MAINNET_CHAINS)

    if env == "testnet":
        return list(TESTNET_CHAINS)

    if isinstance(env, (list, tuple)):
        logger.info("Forking %d chains from custom data.", len(env))
        return [item if isinstance(item, ChainRecord) else ChainRecord.from_dict(item) for item in env]

    raise ValueError(f"Unknown chain source: {env!r}, use 'mainnet', 'testnet' or a list of chains")


def filter_chains(source: list[ChainRecord], requested: Iterable[str] | None) -> list[ChainRecord]:
    """Pick the chains the caller asked for.

    - Names match case-insensitively
    - No requested names means all of the source
    - Source order is kept

    :return:
        Matched records, at most one per source entry
    """
    wanted = {name.lower() for name in requested or []}
    if not wanted:
        return list(source)
    return [record for record in source if record.name.lower() in wanted]


def find_testnet_record(name: str) -> ChainRecord | None:
    """Exact name lookup from the testnet registry."""
    for record in TESTNET_CHAINS:
        if record.name == name:
            return record
    return None
