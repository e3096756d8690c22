"""
launchd service descriptors for the guard's boot-time jobs.
"""
import logging
import os
import plistlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .system import command_available, run_command

logger = logging.getLogger(__name__)


@dataclass
class ServiceDescriptor:
    """One LaunchDaemon plist."""
    label: str
    program_arguments: List[str]
    log_dir: Path
    log_name: str
    keep_alive: bool = False
    throttle_interval: Optional[int] = None
    environment: Dict[str, str] = field(default_factory=dict)
    run_at_load: bool = True

    def to_dict(self) -> Dict[str, Any]:
        plist: Dict[str, Any] = {
            'Label': self.label,
            'ProgramArguments': list(self.program_arguments),
            'RunAtLoad': self.run_at_load,
            'StandardOutPath': str(self.log_dir / f"{self.log_name}-stdout.log"),
            'StandardErrorPath': str(self.log_dir / f"{self.log_name}-stderr.log"),
        }
        if self.keep_alive:
            plist['KeepAlive'] = True
        if self.throttle_interval is not None:
            plist['ThrottleInterval'] = self.throttle_interval
        if self.environment:
            plist['EnvironmentVariables'] = dict(self.environment)
        return plist

    def render(self) -> bytes:
        return plistlib.dumps(self.to_dict(), fmt=plistlib.FMT_XML)

    def write(self, directory: Path) -> Path:
        """
        Write the plist root-owned, mode 0644, and lint it if plutil exists.

        Raises:
            ValueError: if plutil rejects the file
        """
        path = directory / f"{self.label}.plist"
        path.write_bytes(self.render())
        path.chmod(0o644)
        if os.geteuid() == 0:
            os.chown(path, 0, 0)

        if command_available('plutil'):
            result = run_command(['plutil', '-lint', str(path)])
            if result.returncode != 0:
                raise ValueError(f"Invalid plist syntax in {path}: {result.stdout.strip()}")
        logger.info("Service descriptor written: %s", path)
        return path


def guard_command(python: str, main_script: Path, *args: str) -> List[str]:
    return [python, str(main_script), *args]


def build_descriptors(python: str, main_script: Path, hostname: str, label_prefix: str,
                      daemon_home: Path, log_dir: Path,
                      restart_throttle: int, path_env: str) -> List[ServiceDescriptor]:
    """
    All LaunchDaemons the guard needs, in boot order.

    The daemon job runs as root so its start guard can query PF; the
    supervisor drops to the daemon account itself before starting the client.
    """
    env = {'PATH': path_env}
    return [
        ServiceDescriptor(
            label=f"{label_prefix}.mount-nas-transmission",
            program_arguments=guard_command(python, main_script, 'mount'),
            log_dir=log_dir,
            log_name=f"{hostname}-mount",
            environment=env,
        ),
        ServiceDescriptor(
            label=f"{label_prefix}.pf-killswitch",
            program_arguments=guard_command(python, main_script, 'load-firewall'),
            log_dir=log_dir,
            log_name=f"{hostname}-pf-killswitch",
            environment=env,
        ),
        ServiceDescriptor(
            label=f"{label_prefix}.transmission-daemon",
            program_arguments=guard_command(python, main_script, 'start-daemon'),
            log_dir=log_dir,
            log_name=f"{hostname}-daemon",
            keep_alive=True,
            throttle_interval=restart_throttle,
            environment={'HOME': str(daemon_home), 'PATH': path_env},
        ),
        ServiceDescriptor(
            label=f"{label_prefix}.vpn-monitor",
            program_arguments=guard_command(python, main_script, 'monitor'),
            log_dir=log_dir,
            log_name=f"{hostname}-vpn-monitor",
            keep_alive=True,
            throttle_interval=30,
            environment=env,
        ),
    ]


def build_consent_agent(python: str, main_script: Path, hostname: str, label_prefix: str,
                        log_dir: Path, path_env: str) -> ServiceDescriptor:
    """
    Per-user LaunchAgent for the consent watcher. It has to run inside the
    operator's GUI session to see the dialog.
    """
    return ServiceDescriptor(
        label=f"{label_prefix}.pia-proxy-consent",
        program_arguments=guard_command(python, main_script, 'consent'),
        log_dir=log_dir,
        log_name=f"{hostname}-pia-proxy-consent",
        environment={'PATH': path_env},
    )
