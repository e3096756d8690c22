"""
transmission-daemon settings.json handling.

The daemon reads this file only at startup and rewrites it on shutdown,
so changes must be made while it is stopped.
"""
import json
import logging
import os
import shutil
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from .tunnel import is_valid_ipv4

logger = logging.getLogger(__name__)

BIND_KEY = 'bind-address-ipv4'


class ClientSettings:
    """
    Reads and writes the client's persisted key/value configuration.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Dict[str, Any]:
        """Load settings, returning an empty dict if the file is missing."""
        if not self.path.exists():
            return {}
        with open(self.path, 'r', encoding='utf-8') as f:
            return json.load(f)

    def save(self, settings: Dict[str, Any]):
        """
        Write settings atomically, keeping the existing file mode and owner.

        The monitor runs as root while the daemon reads the file as its own
        account, so a root writer hands ownership back before the replace.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        owner = None
        mode = 0o600
        if self.path.exists():
            st = self.path.stat()
            mode = st.st_mode & 0o777
            owner = (st.st_uid, st.st_gid)

        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix='.settings-', suffix='.tmp')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(settings, f, indent=4, sort_keys=True)
                f.write('\n')
            os.chmod(tmp_name, mode)
            if owner and os.geteuid() == 0:
                os.chown(tmp_name, *owner)
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    @property
    def bind_address(self) -> Optional[str]:
        return self.load().get(BIND_KEY)

    def set_bind_address(self, address: str):
        """
        Persist a new IPv4 bind address.

        Raises:
            ValueError: if address is not a valid IPv4 address
        """
        if not is_valid_ipv4(address):
            raise ValueError(f"Invalid IPv4 bind address: {address!r}")

        settings = self.load()
        settings[BIND_KEY] = address
        self.save(settings)
        logger.info("Bind-address set to %s", address)

    def backup(self) -> Optional[Path]:
        """Copy the current file aside with a timestamp suffix."""
        if not self.path.exists():
            return None
        stamp = datetime.now().strftime('%Y%m%d%H%M%S')
        backup_path = self.path.with_name(f"{self.path.name}.bak.{stamp}")
        shutil.copy2(self.path, backup_path)
        logger.info("Backed up %s to %s", self.path, backup_path)
        return backup_path


def render_default_settings(download_dir: Path, watch_dir: Path, done_script: Path,
                            rpc_username: str, rpc_password: str,
                            rpc_port: int = 19091, peer_port: int = 40944,
                            bind_address: str = '127.0.0.1') -> Dict[str, Any]:
    """
    Default daemon settings for a fresh install.

    The bind address starts on loopback; the VPN monitor moves it onto the
    tunnel once one is seen.
    """
    return {
        "alt-speed-down": 50,
        "alt-speed-enabled": False,
        "alt-speed-up": 50,
        BIND_KEY: bind_address,
        "bind-address-ipv6": "::1",
        "blocklist-enabled": True,
        "blocklist-url": "https://github.com/Naunter/BT_BlockLists/raw/master/bt_blocklists.gz",
        "cache-size-mb": 4,
        "dht-enabled": True,
        "download-dir": str(download_dir),
        "download-queue-enabled": False,
        "encryption": 2,
        "idle-seeding-limit": 30,
        "idle-seeding-limit-enabled": True,
        "incomplete-dir-enabled": False,
        "lpd-enabled": False,
        "message-level": 2,
        "peer-limit-global": 2048,
        "peer-limit-per-torrent": 256,
        "peer-port": peer_port,
        "peer-port-random-on-start": False,
        "pex-enabled": True,
        "port-forwarding-enabled": False,
        "preallocation": 1,
        "queue-stalled-enabled": True,
        "queue-stalled-minutes": 30,
        "ratio-limit": 2,
        "ratio-limit-enabled": True,
        "rename-partial-files": True,
        "rpc-authentication-required": True,
        "rpc-bind-address": "0.0.0.0",
        "rpc-enabled": True,
        "rpc-host-whitelist-enabled": False,
        "rpc-password": rpc_password,
        "rpc-port": rpc_port,
        "rpc-url": "/transmission/",
        "rpc-username": rpc_username,
        "rpc-whitelist": "127.0.0.1,192.168.*.*",
        "rpc-whitelist-enabled": True,
        "script-torrent-done-enabled": True,
        "script-torrent-done-filename": str(done_script),
        "start-added-torrents": True,
        "trash-original-torrent-files": True,
        "umask": 18,
        "utp-enabled": True,
        "watch-dir": str(watch_dir),
        "watch-dir-enabled": True,
    }
