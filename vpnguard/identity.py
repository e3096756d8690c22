"""
Daemon identity provisioning (macOS directory services).

The daemon runs as a hidden system account with no login shell, its own
data tree, and explicit ACL entries into the one operator directory it
needs to read.
"""
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Set, Tuple

from .system import run_command

logger = logging.getLogger(__name__)

DSCL = '/usr/bin/dscl'


class SetupError(Exception):
    """Install-time failure the operator has to fix."""


@dataclass(frozen=True)
class DaemonIdentity:
    name: str
    uid: int
    home: Path


def parse_id_listing(text: str) -> Set[int]:
    """Parse `dscl . -list /Users UniqueID` style output into a set of ids."""
    ids = set()
    for line in text.splitlines():
        parts = line.split()
        if len(parts) >= 2:
            try:
                ids.add(int(parts[-1]))
            except ValueError:
                continue
    return ids


def find_free_id(user_listing: str, group_listing: str,
                 start: int = 250, end: int = 400) -> int:
    """
    First id in [start, end] unused as both a UID and a GID.

    Raises:
        SetupError: if the range is exhausted
    """
    taken = parse_id_listing(user_listing) | parse_id_listing(group_listing)
    for candidate in range(start, end + 1):
        if candidate not in taken:
            return candidate
    raise SetupError(f"No available UID/GID in range {start}-{end}")


def acl_path_chain(base: Path, target: Path) -> List[Path]:
    """
    Every directory from `base` down to `target`, inclusive.

    Raises:
        ValueError: if target is not under base
    """
    relative = target.relative_to(base)
    chain = [base]
    current = base
    for part in relative.parts:
        current = current / part
        chain.append(current)
    return chain


class IdentityProvisioner:
    """
    Creates the daemon account, its data tree and its ACL grants.
    """

    def __init__(self, name: str, home: Path, real_name: str = 'Transmission Daemon',
                 id_range: Tuple[int, int] = (250, 400),
                 primary_group: Optional[int] = None):
        """
        Args:
            primary_group: Join this existing group instead of creating a
                private group with the same id as the user
        """
        self.name = name
        self.home = Path(home)
        self.real_name = real_name
        self.id_range = id_range
        self.primary_group = primary_group

    def _dscl(self, *args: str) -> str:
        result = run_command([DSCL, '.', *args])
        if result.returncode != 0:
            raise SetupError(f"dscl {' '.join(args)} failed: {result.stderr.strip()}")
        return result.stdout

    def existing(self) -> Optional[DaemonIdentity]:
        """Look up the account; None if it does not exist."""
        result = run_command([DSCL, '.', '-read', f'/Users/{self.name}', 'UniqueID'])
        if result.returncode != 0:
            return None
        ids = parse_id_listing(result.stdout)
        if not ids:
            return None
        return DaemonIdentity(self.name, ids.pop(), self.home)

    def ensure(self) -> DaemonIdentity:
        """Return the account, creating it if needed."""
        identity = self.existing()
        if identity:
            logger.info("User %s already exists (UID %d)", self.name, identity.uid)
            return identity
        return self.create()

    def create(self) -> DaemonIdentity:
        """
        Create the hidden no-login account and its primary group.

        Raises:
            SetupError: if directory services can't be queried or written
        """
        users = self._dscl('-list', '/Users', 'UniqueID')
        groups = self._dscl('-list', '/Groups', 'PrimaryGroupID')
        uid = find_free_id(users, groups, *self.id_range)
        gid = uid if self.primary_group is None else self.primary_group
        logger.info("Using UID %d, GID %d", uid, gid)

        record = f'/Users/{self.name}'
        self._dscl('-create', record)
        for key, value in (
            ('UserShell', '/usr/bin/false'),
            ('RealName', self.real_name),
            ('UniqueID', str(uid)),
            ('PrimaryGroupID', str(gid)),
            ('NFSHomeDirectory', str(self.home)),
            ('Password', '*'),
            ('IsHidden', '1'),
        ):
            self._dscl('-create', record, key, value)

        if self.primary_group is None:
            group = f'/Groups/{self.name}'
            if run_command([DSCL, '.', '-read', group, 'RecordName']).returncode != 0:
                self._dscl('-create', group)
                self._dscl('-create', group, 'PrimaryGroupID', str(uid))
            else:
                logger.info("Group %s already exists", self.name)

        logger.info("Created %s user (UID %d)", self.name, uid)
        return DaemonIdentity(self.name, uid, self.home)

    def delete(self) -> bool:
        """
        Remove the account, and its private group if it has one.

        Returns:
            True if the user record is gone
        """
        result = run_command([DSCL, '.', '-delete', f'/Users/{self.name}'])
        if result.returncode != 0:
            logger.warning("Could not delete user %s: %s", self.name, result.stderr.strip())
            return False
        if self.primary_group is None:
            run_command([DSCL, '.', '-delete', f'/Groups/{self.name}'])
        logger.info("Deleted user %s", self.name)
        return True

    def create_data_tree(self, identity: DaemonIdentity, directories: Iterable[Path]):
        """
        Create the private directories and hand the tree to the daemon user.

        Raises:
            SetupError: on any filesystem failure
        """
        try:
            for directory in directories:
                if directory.is_dir():
                    logger.info("Exists: %s", directory)
                    continue
                directory.mkdir(parents=True, mode=0o750)
                logger.info("Created: %s", directory)

            for root, dirs, files in os.walk(self.home):
                for entry in [root] + [os.path.join(root, n) for n in dirs + files]:
                    shutil.chown(entry, user=identity.uid, group=identity.uid)
        except (OSError, LookupError) as e:
            raise SetupError(f"Cannot create data tree under {self.home}: {e}") from e
        logger.info("Data directories created and owned by %s", identity.name)

    def grant_read_access(self, base: Path, target: Path) -> List[Path]:
        """
        Add per-path ACL entries so the daemon can reach `target`.

        Directories above `target` get traverse rights only; `target` also
        gets list. Missing paths and failures are logged, not fatal.

        Returns:
            Paths that received an ACL entry
        """
        granted = []
        chain = acl_path_chain(base, target)
        for path in chain:
            if not path.is_dir():
                logger.info("%s does not exist yet, skipping ACL", path)
                continue
            rights = 'read,execute,search,list' if path == target else 'read,execute,search'
            result = run_command(['/bin/chmod', '+a', f'{self.name} allow {rights}', str(path)])
            if result.returncode != 0:
                logger.warning("Failed to set ACL on %s: %s", path, result.stderr.strip())
                continue
            granted.append(path)
        return granted
