"""Process, port and logging helpers shared by the environment modules."""

import logging
import os
import random
import socket
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

import psutil
from filelock import FileLock

logger = logging.getLogger(__name__)


def is_localhost_port_listening(port: int, host="localhost") -> bool:
    """Check if a localhost is running a server already.

    :return: True if there is a process occupying the port
    """

    a_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        location = (host, port)
        result_of_check = a_socket.connect_ex(location)
        return result_of_check == 0
    finally:
        a_socket.close()


def find_free_port(min_port: int = 20_000, max_port: int = 40_000, max_attempt: int = 20) -> int:
    """Find a free localhost port to bind an Anvil node to.

    Does by random.

    .. note ::

        Subject to race condition, but should be rareish.
        :py:func:`xchain_local.anvil.launch_anvil` retries when it loses the race.

    :param min_port:
        Minimum port range

    :param max_port:
        Maximum port range

    :param max_attempt:
        Give up and die with an exception if no port found after this many attempts.

    :return:
        Free port number
    """

    assert isinstance(min_port, int), f"Not an int: {min_port}"
    assert isinstance(max_port, int), f"Not an int: {max_port}"
    assert isinstance(max_attempt, int), f"Not an int: {max_attempt}"

    for attempt in range(0, max_attempt):
        random_port = random.randrange(start=min_port, stop=max_port)
        logger.debug("Attempting to allocate port %d to Anvil", random_port)
        if not is_localhost_port_listening(random_port, "127.0.0.1"):
            return random_port

    raise RuntimeError(f"Could not find a free port in range {min_port} - {max_port}, {max_attempt} attempts")


def shutdown_hard(
    process: psutil.Popen,
    log_level: Optional[int] = None,
    block=True,
    block_timeout=30,
    check_port: Optional[int] = None,
) -> tuple[bytes, bytes]:
    """Kill a node process and collect its output.

    - Straight out OS `SIGKILL` the process

    - Log output if necessary

    - Use port listening to check that the process goes down
      and frees its ports

    :param process:
        Process to kill

    :param block:
        Block the execution until the process has terminated.

        You must give `check_port` option to ensure we enforce the shutdown.

    :param block_timeout:
        How long we give for process to clean up after itself

    :param log_level:
        If set, dump anything in the node stdout/stderr to the Python logging using this level.

    :param check_port:
        Check that TCP/IP localhost port is freed after shutdown

    :return:
        stdout, stderr as bytes
    """

    stdout = b""
    stderr = b""

    if process.poll() is None:
        process.kill()

    # Read before wait(), wait() may close the pipes
    if process.stdout is not None and not process.stdout.closed:
        for line in process.stdout.readlines():
            stdout += line
            if log_level is not None:
                logger.log(log_level, "stdout: %s", line.decode("utf-8").strip())
        process.stdout.close()

    if process.stderr is not None and not process.stderr.closed:
        for line in process.stderr.readlines():
            stderr += line
            if log_level is not None:
                logger.log(log_level, "stderr: %s", line.decode("utf-8").strip())
        process.stderr.close()

    if process.poll() is None:
        process.wait()

    if block:
        assert check_port is not None, "Give check_port to block the execution"
        deadline = time.time() + block_timeout
        while time.time() < deadline:
            if not is_localhost_port_listening(check_port):
                return stdout, stderr
            time.sleep(0.1)

        raise AssertionError(f"Could not terminate node process in {block_timeout} seconds, stdout is {len(stdout)} bytes, stderr is {len(stderr)} bytes")

    return stdout, stderr


def setup_console_logging(
    default_log_level="warning",
    simplified_logging=False,
    log_file: Path | None = None,
) -> logging.Logger:
    """Set up coloured log output for scripts.

    - Log level comes from ``LOG_LEVEL`` environment variable
    - Tune down some noisy dependency library logging

    :param log_file:
        Output both console and this log file.

    :return:
        Root logger
    """

    level = os.environ.get("LOG_LEVEL", default_log_level).upper()
    numeric_level = getattr(logging, level, None)
    assert numeric_level, f"No level: {level}"

    if simplified_logging:
        fmt = "%(message)s"
        date_fmt = "%H:%M:%S"
    else:
        fmt = "%(asctime)s %(name)-36s [%(threadName)s] %(message)s"
        date_fmt = "%Y-%m-%d %H:%M:%S"

    try:
        # Optional dev dependency
        import coloredlogs

        coloredlogs.install(level=numeric_level, fmt=fmt, datefmt=date_fmt)
    except ImportError:
        # non-ANSI e.g. Docker
        logging.basicConfig(level=numeric_level, format=fmt, datefmt=date_fmt)

    if log_file:
        assert isinstance(log_file, Path), "log_file must be a Path"
        log_file.parent.mkdir(parents=True, exist_ok=True)

        # The file always gets at least INFO, the env var only controls the terminal
        file_handler = logging.FileHandler(log_file, mode="w", encoding="utf-8")
        file_handler.setLevel(min(logging.INFO, numeric_level))
        file_handler.setFormatter(logging.Formatter(fmt, date_fmt))
        root = logging.getLogger()
        root.setLevel(min(logging.INFO, numeric_level))
        root.addHandler(file_handler)

    # Mute noise
    logging.getLogger("web3.providers.HTTPProvider").setLevel(logging.WARNING)
    logging.getLogger("web3.RequestManager").setLevel(logging.WARNING)
    logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    return logging.getLogger()


@contextmanager
def wait_other_writers(path: Path | str, timeout: int = 120):
    """Wait other potential writers writing the same file.

    - Two environments in the same machine, e.g. parallel test runs,
      may export to the same chain output path

    :param path:
        File that is being written

    :param timeout:
        How many seconds wait to acquire the lock file.

        Default 2 minutes.

    :raise filelock.Timeout:
        If the file writer is stuck with the lock.
    """

    if isinstance(path, str):
        path = Path(path)

    assert isinstance(path, Path), f"Not Path object: {path}"
    assert path.is_absolute(), f"Did not get an absolute path: {path}"

    os.makedirs(path.parent, exist_ok=True)

    lock_file = path.parent / (path.name + ".lock")

    lock = FileLock(lock_file, timeout=timeout)

    if lock.is_locked:
        logger.info("File %s locked for writing, waiting %f seconds", path, timeout)

    with lock:
        yield
