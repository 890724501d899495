"""Launch and stop Foundry Anvil nodes.

Each local chain in an environment is its own ``anvil`` process,
either a fresh chain seeded from the chain name or a fork of a live chain.

- See `Anvil reference <https://book.getfoundry.sh/reference/anvil/>`__

Example::

    from xchain_local.anvil import launch_anvil, seed_from_name

    launch = launch_anvil(mnemonic_seed=seed_from_name("Avalanche"), chain_id=2500)
    try:
        web3 = Web3(HTTPProvider(launch.json_rpc_url))
        print(web3.eth.accounts)
    finally:
        launch.close()
"""

import hashlib
import logging
import time
from dataclasses import dataclass, field
from shutil import which
from subprocess import DEVNULL, PIPE
from typing import Iterable

import psutil
import requests
from web3 import HTTPProvider, Web3

from xchain_local.utils import find_free_port, is_localhost_port_listening, shutdown_hard

logger = logging.getLogger(__name__)


class AnvilLaunchFailed(Exception):
    """Anvil did not come up."""


@dataclass
class AnvilLaunch:
    """A running Anvil process.

    Call :py:meth:`close` when done.
    """

    #: Localhost port the node listens to
    port: int

    #: Direct JSON-RPC URL of the node
    json_rpc_url: str

    #: The node process
    process: psutil.Popen

    #: Command line used to start the node
    cmd: list[str] = field(default_factory=list)

    closed: bool = False

    def close(self, log_level: int | None = None, block=True, block_timeout=30) -> tuple[bytes, bytes]:
        """Kill the node.

        Calling close twice is safe.

        :param log_level:
            Dump node output to our logs at this level
        """
        if self.closed:
            return b"", b""
        self.closed = True
        stdout, stderr = shutdown_hard(
            self.process,
            log_level=log_level,
            block=block,
            block_timeout=block_timeout,
            check_port=self.port,
        )
        logger.info("Anvil shut down at port %d", self.port)
        return stdout, stderr


def seed_from_name(name: str) -> int:
    """Derive a deterministic 64-bit mnemonic seed from a chain name.

    Same name gives the same dev accounts every run.
    """
    digest = hashlib.sha256(name.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big")


def make_anvil_custom_rpc_request(web3: Web3, method: str, args: list | None = None) -> object:
    """Call an ``anvil_*`` method and fail loudly on a JSON-RPC error."""
    if args is None:
        args = []
    response = web3.provider.make_request(method, args)
    if "error" in response:
        raise AnvilLaunchFailed(f"{method} failed: {response['error']}")
    return response.get("result")


def _wait_for_json_rpc(url: str, process: psutil.Popen, timeout: float) -> Web3:
    web3 = Web3(HTTPProvider(url, request_kwargs={"timeout": 30}))
    deadline = time.time() + timeout
    while time.time() < deadline:
        if process.poll() is not None:
            raise AnvilLaunchFailed(f"Anvil exited with code {process.returncode}")
        try:
            web3.eth.block_number
            return web3
        except requests.exceptions.ConnectionError:
            time.sleep(0.1)
    raise AnvilLaunchFailed(f"Anvil did not answer at {url} in {timeout} seconds")


def launch_anvil(
    fork_url: str | None = None,
    port: int | None = None,
    chain_id: int | None = None,
    mnemonic_seed: int | None = None,
    fork_block_number: int | None = None,
    gas_limit: int | None = None,
    unlocked_addresses: Iterable[str] = (),
    anvil_path: str = "anvil",
    launch_wait_seconds: float = 20.0,
    attempts: int = 3,
) -> AnvilLaunch:
    """Start an Anvil node.

    :param fork_url:
        Fork this JSON-RPC. ``None`` for a fresh chain.

    :param port:
        Listen port. Picked at random if not given.

    :param mnemonic_seed:
        Derive dev accounts from this seed, see :py:func:`seed_from_name`.

    :param unlocked_addresses:
        Impersonate these addresses after the launch, so that
        ``eth_sendTransaction`` works from them on a fork.

    :param attempts:
        Retry with another random port if the node fails to come up,
        usually because of a port race.

    :raise AnvilLaunchFailed:
        The binary is missing or the node did not answer in time.
    """
    binary = which(anvil_path)
    if binary is None:
        raise AnvilLaunchFailed(f"Could not find {anvil_path}, install Foundry first")

    attempts_left = attempts
    while True:
        current_port = port or find_free_port()
        assert not is_localhost_port_listening(current_port), f"Port {current_port} is already in use"

        cmd = [binary, "--port", str(current_port), "--host", "127.0.0.1"]
        if chain_id is not None:
            cmd += ["--chain-id", str(chain_id)]
        if mnemonic_seed is not None:
            cmd += ["--mnemonic-seed-unsafe", str(mnemonic_seed)]
        if fork_url:
            cmd += ["--fork-url", fork_url]
        if fork_block_number is not None:
            cmd += ["--fork-block-number", str(fork_block_number)]
        if gas_limit is not None:
            cmd += ["--gas-limit", str(gas_limit)]

        url = f"http://127.0.0.1:{current_port}"
        # Do not log the fork URL, it may carry an API key in its path
        logger.info("Launching anvil at %s, fork: %s", url, "yes" if fork_url else "no")
        # Anvil logs every served request to stdout, an unread pipe would fill up and stall the node
        process = psutil.Popen(cmd, stdin=DEVNULL, stdout=DEVNULL, stderr=PIPE)
        launch = AnvilLaunch(port=current_port, json_rpc_url=url, process=process, cmd=cmd)

        try:
            web3 = _wait_for_json_rpc(url, process, launch_wait_seconds)
        except AnvilLaunchFailed as e:
            _, stderr = launch.close(block=False)
            attempts_left -= 1
            if attempts_left <= 0 or port is not None:
                raise AnvilLaunchFailed(f"{e}\nstderr:\n{stderr.decode('utf-8', 'replace')}") from e
            logger.warning("Anvil launch failed, retrying, %d attempts left", attempts_left)
            continue

        for address in unlocked_addresses:
            make_anvil_custom_rpc_request(web3, "anvil_impersonateAccount", [address])

        return launch
