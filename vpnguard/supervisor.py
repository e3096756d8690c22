"""
Privileged Daemon Supervisor - boot ordering and the fail-closed start guard.

    MOUNT_PENDING -> MOUNT_READY -> FIREWALL_VERIFIED -> DAEMON_STARTED

Each stage must finish before the next begins. A stage that does not
finish within its timeout stops the boot with a non-zero exit; the client
is never started in a half-configured state.
"""
import enum
import logging
import os
import pwd
import subprocess
import time
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .audit_log import AuditLogger
from .mount import wait_for_path

logger = logging.getLogger(__name__)


class BootStage(enum.Enum):
    MOUNT_PENDING = 'mount-pending'
    MOUNT_READY = 'mount-ready'
    FIREWALL_VERIFIED = 'firewall-verified'
    DAEMON_STARTED = 'daemon-started'


class BootStageError(Exception):
    """A boot stage did not complete; the client must not start."""

    def __init__(self, stage: BootStage, message: str):
        super().__init__(message)
        self.stage = stage


class DaemonSupervisor:
    """
    Runs the boot sequence, then starts the client behind the firewall guard.
    """

    def __init__(self, firewall, ready_marker: Path, client_argv: Sequence[str],
                 mount_wait: float = 300, firewall_wait: float = 60,
                 restart_throttle: float = 360, poll_interval: float = 5,
                 run_as: Optional[str] = None,
                 audit_logger: Optional[AuditLogger] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic,
                 execv: Callable[[str, List[str]], None] = os.execv,
                 spawn: Callable[[List[str]], subprocess.Popen] = subprocess.Popen):
        """
        Args:
            firewall: object with is_active() and wait_until_active(timeout, interval)
            ready_marker: Directory that exists only once the share is mounted
            client_argv: Client command line, binary first
            mount_wait: Seconds to wait for the mount
            firewall_wait: Seconds to wait for the firewall
            restart_throttle: Minimum seconds between client starts
            run_as: Account the client runs as; the supervisor itself stays
                privileged so it can query the packet filter
        """
        self.firewall = firewall
        self.ready_marker = Path(ready_marker)
        self.client_argv = [str(a) for a in client_argv]
        self.mount_wait = mount_wait
        self.firewall_wait = firewall_wait
        self.restart_throttle = restart_throttle
        self.poll_interval = poll_interval
        self.run_as = run_as
        self.audit_logger = audit_logger
        self._sleep = sleep
        self._clock = clock
        self._execv = execv
        self._spawn = spawn
        self.stage = BootStage.MOUNT_PENDING
        self._child: Optional[subprocess.Popen] = None
        self._stopping = False

    def _advance(self, stage: BootStage, detail: str = ''):
        self.stage = stage
        logger.info("Boot stage: %s %s", stage.value, detail)
        if self.audit_logger:
            self.audit_logger.log_boot_stage(stage.value, True, detail)

    def _fail(self, stage: BootStage, message: str) -> BootStageError:
        logger.error("%s", message)
        if self.audit_logger:
            self.audit_logger.log_boot_stage(stage.value, False, message)
        return BootStageError(stage, message)

    def wait_for_mount(self):
        if not wait_for_path(self.ready_marker, self.mount_wait, self.poll_interval,
                             sleep=self._sleep, clock=self._clock):
            raise self._fail(BootStage.MOUNT_PENDING,
                             f"NAS not mounted at {self.ready_marker} after {self.mount_wait}s")
        self._advance(BootStage.MOUNT_READY, str(self.ready_marker))

    def verify_firewall(self):
        if not self.firewall.wait_until_active(self.firewall_wait, self.poll_interval):
            raise self._fail(BootStage.MOUNT_READY,
                             f"Kill-switch rules not active after {self.firewall_wait}s")
        self._advance(BootStage.FIREWALL_VERIFIED)

    def boot(self):
        """
        Run the mount and firewall stages.

        Raises:
            BootStageError: if a stage times out
        """
        self.stage = BootStage.MOUNT_PENDING
        self.wait_for_mount()
        self.verify_firewall()

    def guard(self):
        """
        Last check before the client binary runs. Fail-closed.

        Raises:
            BootStageError: if the kill-switch is not active right now
        """
        if not self.firewall.is_active():
            if self.audit_logger:
                self.audit_logger.log_guard_refusal('firewall inactive')
            raise self._fail(self.stage,
                             "PF kill-switch rules not loaded - refusing to start "
                             "without firewall protection")

    def exec_client(self):
        """
        Boot, then replace this process with the client. Does not return
        on success.
        """
        self.boot()
        self.guard()
        self._advance(BootStage.DAEMON_STARTED, ' '.join(self.client_argv))
        self.drop_privileges()
        self._execv(self.client_argv[0], self.client_argv)

    def supervise(self, max_starts: Optional[int] = None) -> int:
        """
        Boot, then keep the client running, restarting it when it exits.

        Starts are spaced at least `restart_throttle` seconds apart. The
        mount and the firewall guard are checked again before every start.

        Returns:
            Exit status of the last client run, once stopped
        """
        self.boot()
        starts = 0
        last_status = 0
        while not self._stopping:
            if starts:
                self.wait_for_mount()
            self.guard()

            started_at = self._clock()
            self._child = self._spawn(self.client_argv, **self._spawn_identity())
            self._advance(BootStage.DAEMON_STARTED, f"PID {self._child.pid}")
            starts += 1

            last_status = self._child.wait()
            self._child = None
            logger.warning("Client exited with status %s", last_status)

            if self._stopping or (max_starts is not None and starts >= max_starts):
                break

            elapsed = self._clock() - started_at
            if elapsed < self.restart_throttle:
                delay = self.restart_throttle - elapsed
                logger.info("Throttling restart for %.0fs", delay)
                self._sleep(delay)
        return last_status

    def request_stop(self):
        self._stopping = True
        if self._child and self._child.poll() is None:
            logger.info("Stopping client (PID %s)", self._child.pid)
            self._child.terminate()

    def _spawn_identity(self) -> dict:
        if not self.run_as:
            return {}
        entry = pwd.getpwnam(self.run_as)
        return {'user': entry.pw_uid, 'group': entry.pw_gid, 'extra_groups': [],
                'env': {**os.environ, 'HOME': entry.pw_dir}}

    def drop_privileges(self):
        """Switch to the daemon account before exec. No-op without run_as."""
        if not self.run_as:
            return
        entry = pwd.getpwnam(self.run_as)
        os.setgroups([])
        os.setgid(entry.pw_gid)
        os.setuid(entry.pw_uid)
        os.environ['HOME'] = entry.pw_dir
        logger.info("Running as %s (UID %d)", self.run_as, entry.pw_uid)
