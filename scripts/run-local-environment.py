"""Run a local multichain environment until Ctrl+C.

Creates (or forks) the chains, funds test accounts, writes the chain export
and relays cross-chain calls in the background.

Environment variables
---------------------
- ``MODE``: ``create`` (default) or ``fork``.
- ``ENV``: Fork source, ``mainnet`` (default) or ``testnet``. Fork mode only.
- ``CHAINS``: Comma separated chain names. Default depends on the mode.
- ``ACCOUNTS_TO_FUND``: Comma separated addresses to fund on every chain.
- ``FUND_AMOUNT``: Wei per funded address. Default 100 ether.
- ``CHAIN_OUTPUT_PATH``: Where to write the chain export. Default ``./local.json``.
- ``PORT``: Listener port. Default ``8500``.
- ``RELAY_INTERVAL``: Seconds between relay passes. Default ``2``.
- ``JSON_RPC_<CHAIN>``: Fork RPC override, e.g. ``JSON_RPC_ETHEREUM``.
- ``LOG_LEVEL``: Logging level (default: ``info``).

Usage::

    CHAINS=Avalanche,Polygon python scripts/run-local-environment.py

    # Fork two mainnet chains
    MODE=fork CHAINS=ethereum,base JSON_RPC_ETHEREUM=https://... python scripts/run-local-environment.py
"""

import logging
import os
import time

from tabulate import tabulate

from xchain_local.environment import EnvironmentOptions, LocalEnvironment
from xchain_local.scheduler import RelayPassResult
from xchain_local.utils import setup_console_logging

logger = logging.getLogger(__name__)


def main():
    log_level = os.environ.get("LOG_LEVEL", "info")
    setup_console_logging(default_log_level=log_level)

    mode = os.environ.get("MODE", "create").lower()
    assert mode in ("create", "fork"), f"MODE must be 'create' or 'fork', got '{mode}'"

    options = EnvironmentOptions.from_environment()
    options.progress = True

    def on_relay_pass(result: RelayPassResult):
        for failure in result.failures:
            logger.error("Relayer %s failed: %s", failure.relayer.name, failure.error)

    options.on_relay_pass = on_relay_pass

    environment = LocalEnvironment()
    try:
        if mode == "create":
            chains = environment.create_and_export(options)
        else:
            chains = environment.fork_and_export(options)

        rows = [[c.name, c.chain_id, c.rpc, c.token_symbol or "-"] for c in chains]
        print(tabulate(rows, headers=["Chain", "Chain id", "RPC", "Token"], tablefmt="simple"))
        print(f"\nChain export written to {environment.output_path}")
        print("Relaying, press Ctrl+C to stop")

        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("Stopping")
    finally:
        environment.destroy()


if __name__ == "__main__":
    main()
