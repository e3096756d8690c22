"""
NAS share mount for the daemon's download tree.
"""
import logging
import time
import urllib.parse
from pathlib import Path
from typing import Callable, Optional

import keyring
from keyring.errors import KeyringError
import psutil

from .system import run_command

logger = logging.getLogger(__name__)


class MountError(Exception):
    """The share could not be mounted."""


def wait_for_path(path: Path, timeout: float, interval: float = 5,
                  sleep: Callable[[float], None] = time.sleep,
                  clock: Callable[[], float] = time.monotonic) -> bool:
    """Bounded wait for `path` to exist as a directory."""
    deadline = clock() + timeout
    while True:
        if path.is_dir():
            return True
        if clock() >= deadline:
            return False
        sleep(interval)


class NasMount:
    """
    SMB share mounted at a fixed mount point for the daemon user.
    """

    def __init__(self, host: str, share: str, username: str, mount_point: Path,
                 keychain_service: str, owner: Optional[str] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.host = host
        self.share = share
        self.username = username
        self.mount_point = Path(mount_point)
        self.keychain_service = keychain_service
        self.owner = owner
        self._sleep = sleep

    def is_mounted(self) -> bool:
        target = str(self.mount_point)
        return any(p.mountpoint == target for p in psutil.disk_partitions(all=True))

    def wait_for_host(self, attempts: int = 60, interval: float = 5) -> bool:
        logger.info("Waiting for %s...", self.host)
        for attempt in range(1, attempts + 1):
            if run_command(['/sbin/ping', '-c', '1', '-W', '5000', self.host], timeout=10).returncode == 0:
                logger.info("Network connectivity established (attempt %d)", attempt)
                return True
            self._sleep(interval)
        logger.error("Cannot reach %s after %d attempts", self.host, attempts)
        return False

    def _password(self) -> str:
        try:
            password = keyring.get_password(self.keychain_service, self.username)
        except KeyringError as e:
            raise MountError(f"Keychain lookup failed: {e}") from e
        if not password:
            raise MountError(
                f"No NAS password in keychain (service: {self.keychain_service}, "
                f"account: {self.username})"
            )
        return password

    def mount_url(self, password: str) -> str:
        encoded = urllib.parse.quote(password, safe='')
        return f"//{self.username}:{encoded}@{self.host}/{self.share}"

    def mount(self, network_attempts: int = 60):
        """
        Mount the share unless already mounted.

        Raises:
            MountError: if the host is unreachable, the credential is
                missing or mount_smbfs fails
        """
        if self.is_mounted():
            logger.info("Already mounted at %s", self.mount_point)
            return

        if not self.wait_for_host(network_attempts):
            raise MountError(f"{self.host} unreachable")

        self.mount_point.mkdir(parents=True, exist_ok=True)
        url = self.mount_url(self._password())
        result = run_command(['/sbin/mount_smbfs', '-o', 'soft,noowners', url, str(self.mount_point)],
                             timeout=120)
        if result.returncode != 0:
            # stderr can echo the URL; don't log it
            raise MountError(f"mount_smbfs failed with status {result.returncode}")
        logger.info("NAS mounted at %s", self.mount_point)

        if self.owner:
            run_command(['/bin/chmod', '+a', f'{self.owner} allow read,execute,list,search',
                         str(self.mount_point)])
            run_command(['/usr/sbin/chown', f'{self.owner}:{self.owner}', str(self.mount_point)])
