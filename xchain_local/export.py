"""Write provisioned chain metadata to disk.

The export is a JSON array with one object per chain, in provisioning order.
Each export replaces the whole file.
"""

import json
import logging
import os
import stat
import tempfile
from pathlib import Path
from typing import Iterable

from xchain_local.network import ChainInfo
from xchain_local.utils import wait_other_writers

logger = logging.getLogger(__name__)


def _get_file_mode(path: Path) -> int:
    """Mode of the existing export, or what a plain ``open()`` would give."""
    if path.exists():
        return stat.S_IMODE(path.stat().st_mode)
    umask = os.umask(0)
    os.umask(umask)
    return 0o666 & ~umask


def export_chains(chains: Iterable[ChainInfo], path: Path | str) -> Path:
    """Write chain metadata, replacing any earlier content.

    The file is written to a temporary file first and moved in place,
    so readers never see a half written export.

    :return:
        Absolute path written
    """
    path = Path(path).absolute()
    data = [chain.to_dict() for chain in chains]

    with wait_other_writers(path):
        fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=path.name, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as out:
                json.dump(data, out, indent=2)
            # mkstemp files are owner only, other processes read the export
            os.chmod(temp_name, _get_file_mode(path))
            os.replace(temp_name, path)
        except BaseException:
            os.unlink(temp_name)
            raise

    logger.info("Exported %d chains to %s", len(data), path)
    return path


def load_chains(path: Path | str) -> list[dict]:
    """Read an export written by :py:func:`export_chains`."""
    with open(path, "rt", encoding="utf-8") as inp:
        return json.load(inp)
