"""Well-known tokens on local chains.

Tokens deployed during provisioning are registered by their canonical
identity, so later steps ask "USDC on Avalanche" instead of guessing
from token alias names.

Example::

    registry = TokenRegistry()
    registry.register("Avalanche", CanonicalToken.usdc, usdc.address)

    address = registry.lookup("Avalanche", CanonicalToken.usdc)
    if address is None:
        ...  # No USDC on this chain
"""

import enum
import logging

from eth_abi import encode
from eth_typing import ChecksumAddress, HexAddress
from web3 import Web3

from xchain_local.anvil import make_anvil_custom_rpc_request

logger = logging.getLogger(__name__)

#: Minimal ERC-20 ABI for balance checks
ERC20_BALANCE_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    },
]


class TokenFundingFailed(Exception):
    """Could not give tokens to an address on Anvil."""


class CanonicalToken(enum.Enum):
    """Token identities that have a meaning across chains."""

    usdc = "usdc"

    usdt = "usdt"

    weth = "weth"


class TokenRegistry:
    """Chain name + canonical token -> token address."""

    def __init__(self):
        self._tokens: dict[tuple[str, CanonicalToken], ChecksumAddress] = {}

    def __len__(self) -> int:
        return len(self._tokens)

    def register(self, chain: str, token: CanonicalToken, address: HexAddress | str):
        assert isinstance(token, CanonicalToken), f"Not a canonical token: {token}"
        checksummed = Web3.to_checksum_address(address)
        logger.info("Registered %s on %s at %s", token.value, chain, checksummed)
        self._tokens[(chain, token)] = checksummed

    def lookup(self, chain: str, token: CanonicalToken) -> ChecksumAddress | None:
        """Get a token address.

        :return:
            ``None`` if the token is not deployed on the chain
        """
        return self._tokens.get((chain, token))

    def for_chain(self, chain: str) -> dict[CanonicalToken, ChecksumAddress]:
        return {token: address for (chain_name, token), address in self._tokens.items() if chain_name == chain}

    def clear(self):
        self._tokens.clear()


def _balance_slot_key(holder: HexAddress, slot: int) -> str:
    # Solidity mapping layout: keccak(pad(key) . pad(slot))
    return Web3.to_hex(Web3.keccak(encode(["address", "uint256"], [holder, slot])))


def find_erc20_balance_slot(web3: Web3, token: HexAddress, max_slot: int = 64) -> int:
    """Find the storage slot of an ERC-20 ``balanceOf`` mapping.

    Probes slots by writing a marker balance for a throwaway holder
    and checking whether ``balanceOf()`` sees it.

    :raise TokenFundingFailed:
        No slot below `max_slot` matches
    """
    token = Web3.to_checksum_address(token)
    contract = web3.eth.contract(address=token, abi=ERC20_BALANCE_ABI)
    probe_holder = Web3.to_checksum_address("0x000000000000000000000000000000000000dEaD")
    marker = 0x1234567890ABCDEF

    for slot in range(max_slot):
        key = _balance_slot_key(probe_holder, slot)
        original = web3.eth.get_storage_at(token, key)
        make_anvil_custom_rpc_request(web3, "anvil_setStorageAt", [token, key, "0x" + marker.to_bytes(32, "big").hex()])
        matched = contract.functions.balanceOf(probe_holder).call() == marker
        make_anvil_custom_rpc_request(web3, "anvil_setStorageAt", [token, key, "0x" + bytes(original).rjust(32, b"\x00").hex()])
        if matched:
            logger.debug("Balance slot of %s is %d", token, slot)
            return slot

    raise TokenFundingFailed(f"Could not find balanceOf storage slot for {token}")


def fund_erc20_on_anvil(web3: Web3, token: HexAddress, recipient: HexAddress, amount: int):
    """Set the ERC-20 balance of an address by storage manipulation.

    Total supply is not updated.

    :param amount:
        Raw token amount
    """
    assert amount >= 0, f"Negative amount: {amount}"
    token = Web3.to_checksum_address(token)
    recipient = Web3.to_checksum_address(recipient)
    slot = find_erc20_balance_slot(web3, token)
    key = _balance_slot_key(recipient, slot)
    make_anvil_custom_rpc_request(web3, "anvil_setStorageAt", [token, key, "0x" + amount.to_bytes(32, "big").hex()])
    logger.info("Funded %s with %d raw units of %s", recipient, amount, token)
