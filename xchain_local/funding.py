"""Seed test accounts with native currency.

All transfers of a chain come from the same unlocked funding account,
so they are sent one at a time and each is confirmed before the next
one is broadcast. Concurrent sends would race on the sender nonce.
"""

import logging
from typing import Iterable

from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3

logger = logging.getLogger(__name__)

#: 100 native tokens in wei
DEFAULT_FUND_AMOUNT = 100 * 10**18


class FundingFailed(Exception):
    """A native currency transfer to a test account failed."""

    def __init__(self, message: str, account: HexAddress, chain: str | None = None):
        super().__init__(message)
        self.account = account
        self.chain = chain


def fund_accounts(
    web3: Web3,
    sender: HexAddress,
    accounts: Iterable[HexAddress | str],
    amount: int = DEFAULT_FUND_AMOUNT,
    name: str | None = None,
    receipt_timeout: float = 120.0,
) -> list[HexBytes]:
    """Send `amount` wei from `sender` to each account, in order.

    Transfers already confirmed stay confirmed if a later one fails.

    :param sender:
        Unlocked account on the node

    :param name:
        Chain name for log and error messages

    :return:
        Transaction hashes, in the order of `accounts`

    :raise FundingFailed:
        A transfer could not be sent, was not mined or reverted
    """
    assert amount >= 0, f"Negative fund amount: {amount}"
    chain_name = name or str(web3.eth.chain_id)
    tx_hashes = []

    for account in accounts:
        logger.info("Funding %s with %d wei on %s", account, amount, chain_name)
        try:
            tx_hash = web3.eth.send_transaction(
                {
                    "from": sender,
                    "to": Web3.to_checksum_address(account),
                    "value": amount,
                }
            )
            receipt = web3.eth.wait_for_transaction_receipt(tx_hash, timeout=receipt_timeout)
        except Exception as e:
            raise FundingFailed(f"Funding {account} on {chain_name} failed: {e}", account=account, chain=chain_name) from e

        if receipt["status"] != 1:
            raise FundingFailed(f"Funding transfer to {account} on {chain_name} reverted, tx {Web3.to_hex(tx_hash)}", account=account, chain=chain_name)

        tx_hashes.append(tx_hash)

    return tx_hashes
