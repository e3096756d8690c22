"""
Bind Address Enforcer - moves the client onto a new transport address.

The client has no live reload for its bind address, so every change is a
full stop / rewrite / start cycle.
"""
import logging
import time
from typing import Callable, Optional

from .audit_log import AuditLogger
from .process import ClientProcess
from .settings import ClientSettings
from .tunnel import is_valid_ipv4

logger = logging.getLogger(__name__)


class BindAddressEnforcer:
    """
    Rewrites the client's bind address and restarts it.
    """

    def __init__(self, settings: ClientSettings, process: ClientProcess, peer_port: int,
                 verify_timeout: float = 15, verify_interval: float = 1,
                 audit_logger: Optional[AuditLogger] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        """
        Args:
            settings: Client settings file
            process: Client process controller
            peer_port: Port the client listens on for peers
            verify_timeout: Seconds to wait for the new endpoint to appear
            verify_interval: Seconds between endpoint checks
            audit_logger: Audit logger instance
        """
        self.settings = settings
        self.process = process
        self.peer_port = peer_port
        self.verify_timeout = verify_timeout
        self.verify_interval = verify_interval
        self.audit_logger = audit_logger
        self._sleep = sleep
        self._clock = clock

    def apply(self, address: str) -> bool:
        """
        Bind the client to `address`.

        Returns:
            True once the client runs with its endpoint on `address`
        """
        if not is_valid_ipv4(address):
            logger.error("Refusing to bind to invalid address %r", address)
            return False

        ok = self._cycle(address)
        if self.audit_logger:
            self.audit_logger.log_bind_change(address, ok)
        return ok

    def _cycle(self, address: str) -> bool:
        if not self.process.stop():
            logger.error("Could not stop client; bind-address unchanged")
            return False

        if not self._write(address):
            return False

        # A service manager may have respawned the client between stop and
        # write; it would then be running with the old address.
        if self.process.is_running():
            logger.warning("Client came back before restart; stopping it again")
            if not self.process.stop() or not self._write(address):
                return False

        if not self.process.start():
            logger.error("Client failed to start after bind change to %s", address)
            return False

        return self._verify(address)

    def _write(self, address: str) -> bool:
        try:
            self.settings.set_bind_address(address)
            return True
        except (OSError, ValueError) as e:
            logger.error("Failed to write bind-address %s: %s", address, e)
            return False

    def _verify(self, address: str) -> bool:
        """
        Wait until the client's listening socket sits on `address`.

        If no socket information is visible at all, fall back to reading the
        persisted value back.
        """
        deadline = self._clock() + self.verify_timeout
        observed = None
        while True:
            observed = self.process.effective_bind_address(self.peer_port)
            if observed == address:
                logger.info("Client bound to %s", address)
                return True
            if self._clock() >= deadline:
                break
            self._sleep(self.verify_interval)

        if observed is None:
            persisted = self.settings.bind_address
            logger.warning("No listening socket seen on port %d; settings report %s",
                           self.peer_port, persisted)
            return persisted == address

        logger.error("Client bound to %s, expected %s", observed, address)
        return False
