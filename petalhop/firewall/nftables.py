"""
Hub Firewall (nftables) Applier

Writes a ruleset to a private temporary file and loads it with `nft -f`.
The file is created exclusively (never through an existing path or
symlink) with 0600 permissions and always removed afterwards.
"""

import abc
import asyncio
import logging
import os
import secrets
from contextlib import contextmanager
from pathlib import Path

from ..core.exceptions import RuleApplyError

logger = logging.getLogger(__name__)


class RuleApplier(abc.ABC):
    @abc.abstractmethod
    async def apply(self, ruleset: str) -> None:
        """Load a ruleset; raises RuleApplyError on failure"""


@contextmanager
def exclusive_rules_file(directory: str, content: str):
    """Create a uniquely named 0600 file holding content; removed on exit"""
    path = Path(directory) / f"petalhop-{secrets.token_hex(8)}.nft"
    flags = os.O_WRONLY | os.O_CREAT | os.O_EXCL | getattr(os, "O_NOFOLLOW", 0)

    fd = os.open(path, flags, 0o600)
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
        yield path
    finally:
        try:
            path.unlink()
        except FileNotFoundError:
            pass


class NftablesApplier(RuleApplier):
    """
    Applies rulesets with the nft binary
    """

    def __init__(self, nft_binary: str = "nft", rules_dir: str = "/tmp", timeout: float = 10.0):
        """
        Initialize applier

        Args:
            nft_binary: Path or name of the nft executable
            rules_dir: Directory for the temporary ruleset file
            timeout: Seconds before the loader is treated as failed
        """
        self.nft_binary = nft_binary
        self.rules_dir = rules_dir
        self.timeout = timeout

    async def apply(self, ruleset: str) -> None:
        try:
            with exclusive_rules_file(self.rules_dir, ruleset) as path:
                await self._load(path)
        except OSError as e:
            raise RuleApplyError(f"could not write ruleset file: {e}") from e

        logger.info("nftables rules applied")

    async def _load(self, path: Path) -> None:
        try:
            result = await asyncio.create_subprocess_exec(
                self.nft_binary, "-f", str(path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await asyncio.wait_for(result.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            result.kill()
            await result.wait()
            raise RuleApplyError("nft timed out")
        except OSError as e:
            raise RuleApplyError(f"nft unavailable: {e}") from e

        if result.returncode != 0:
            logger.error(f"nft failed: {stderr.decode().strip()}")
            raise RuleApplyError(f"nft failed: {stderr.decode().strip()}")
