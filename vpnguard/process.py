"""
Start, stop and inspect the download client process.
"""
import logging
import time
from typing import Callable, List, Optional, Sequence, Set

import psutil

from .system import run_command

logger = logging.getLogger(__name__)


class ClientProcess:
    """
    Controls the client process by name.

    Stopping is graceful first (SIGTERM with a bounded wait) and forced
    after that (SIGKILL). Starting goes through an external start command,
    normally a launchd kickstart of the client's service.
    """

    def __init__(self, name: str, start_command: Sequence[str],
                 stop_timeout: float = 10, start_settle: float = 3,
                 sleep: Callable[[float], None] = time.sleep):
        self.name = name
        self.start_command = list(start_command)
        self.stop_timeout = stop_timeout
        self.start_settle = start_settle
        self._sleep = sleep

    def processes(self) -> List[psutil.Process]:
        found = []
        for proc in psutil.process_iter(['name']):
            try:
                if proc.info['name'] == self.name:
                    found.append(proc)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return found

    def pids(self) -> List[int]:
        return [p.pid for p in self.processes()]

    def is_running(self) -> bool:
        return bool(self.processes())

    def stop(self) -> bool:
        """
        Stop every matching process.

        Returns:
            True if nothing is left running
        """
        procs = self.processes()
        if not procs:
            logger.info("%s is not running", self.name)
            return True

        logger.info("Stopping %s (PIDs %s)...", self.name, [p.pid for p in procs])
        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(procs, timeout=self.stop_timeout)
        if alive:
            logger.warning("Graceful stop failed after %ss, force-killing %s",
                           self.stop_timeout, [p.pid for p in alive])
            for proc in alive:
                try:
                    proc.kill()
                except psutil.NoSuchProcess:
                    pass
            _, alive = psutil.wait_procs(alive, timeout=2)

        if alive:
            logger.error("%s is STILL running after force-kill: %s",
                         self.name, [p.pid for p in alive])
            return False

        logger.info("%s stopped", self.name)
        return True

    def start(self) -> bool:
        """
        Start the client and check it came up, retrying once.
        """
        for attempt in (1, 2):
            logger.info("Starting %s (attempt %d)...", self.name, attempt)
            result = run_command(self.start_command)
            if result.returncode != 0:
                logger.warning("Start command failed (%d): %s",
                               result.returncode, result.stderr.strip())
            self._sleep(self.start_settle)

            pids = self.pids()
            if pids:
                logger.info("%s running (PID %s)", self.name, pids[0])
                return True
            logger.warning("%s did not start", self.name)

        logger.error("%s failed to start", self.name)
        return False

    def bound_addresses(self, port: int) -> Set[str]:
        """
        Local addresses the client is listening on for `port`.
        """
        addresses: Set[str] = set()
        for proc in self.processes():
            try:
                conns = proc.net_connections(kind='inet')
            except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
                logger.debug("Cannot read sockets of PID %s: %s", proc.pid, e)
                continue
            for conn in conns:
                if conn.laddr and conn.laddr.port == port and conn.status in (
                        psutil.CONN_LISTEN, psutil.CONN_NONE):
                    addresses.add(conn.laddr.ip)
        return addresses

    def effective_bind_address(self, port: int) -> Optional[str]:
        """The client's IPv4 listening address on `port`, if exactly one."""
        ipv4 = {a for a in self.bound_addresses(port) if ':' not in a}
        if len(ipv4) == 1:
            return ipv4.pop()
        return None
