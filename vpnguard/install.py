"""
Install-time setup for the kill-switch: account, data tree, client
settings, PF rules and boot jobs.
"""
import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .firewall import FirewallError, KillSwitchRuleSet, PFController
from .identity import IdentityProvisioner, SetupError
from .launchd import ServiceDescriptor
from .notify import notify
from .settings import ClientSettings

logger = logging.getLogger(__name__)


@dataclass
class InstallPlan:
    """Everything the installer writes, resolved up front."""
    client_binary: Path
    data_dirs: List[Path]
    operator_user: str
    operator_home: Path
    watch_dir: Path
    settings: Dict[str, Any]
    ruleset: KillSwitchRuleSet
    launch_daemons_dir: Path
    descriptors: List[ServiceDescriptor]
    consent_agent: Optional[ServiceDescriptor] = None
    written: List[Path] = field(default_factory=list)

    @property
    def launch_agents_dir(self) -> Path:
        return self.operator_home / 'Library' / 'LaunchAgents'


class KillSwitchInstaller:
    """
    Runs the install steps in order. Any step that cannot complete raises
    SetupError and stops the install.
    """

    def __init__(self, plan: InstallPlan, provisioner: IdentityProvisioner,
                 settings: ClientSettings, firewall: PFController):
        self.plan = plan
        self.provisioner = provisioner
        self.settings = settings
        self.firewall = firewall

    def run(self) -> List[Path]:
        """
        Returns:
            Files written by the install

        Raises:
            SetupError: on any unrecoverable failure
        """
        plan = self.plan
        if not plan.client_binary.exists() or not os.access(plan.client_binary, os.X_OK):
            raise SetupError(f"transmission-daemon not found at {plan.client_binary}")

        identity = self.provisioner.ensure()
        self.provisioner.create_data_tree(identity, plan.data_dirs)
        self.provisioner.grant_read_access(plan.operator_home, plan.watch_dir)

        self._write_settings(identity.uid)

        try:
            self.firewall.deploy(plan.ruleset)
        except (FirewallError, OSError) as e:
            raise SetupError(f"Cannot deploy PF rules: {e}") from e
        plan.written.append(self.firewall.anchor_file)

        self._write_descriptors()

        notify("VPN Kill-Switch", "Kill-switch install complete")
        logger.info("VPN kill-switch setup completed")
        return plan.written

    def _write_settings(self, uid: int):
        try:
            self.settings.backup()
            self.settings.save(self.plan.settings)
            self.settings.path.chmod(0o600)
            shutil.chown(self.settings.path, user=uid, group=uid)
        except (OSError, LookupError) as e:
            raise SetupError(f"Cannot write {self.settings.path}: {e}") from e
        logger.info("settings.json generated at %s", self.settings.path)
        self.plan.written.append(self.settings.path)

    def _write_descriptors(self):
        plan = self.plan
        try:
            plan.launch_daemons_dir.mkdir(parents=True, exist_ok=True)
            for descriptor in plan.descriptors:
                plan.written.append(descriptor.write(plan.launch_daemons_dir))

            if plan.consent_agent:
                plan.launch_agents_dir.mkdir(parents=True, exist_ok=True)
                path = plan.consent_agent.write(plan.launch_agents_dir)
                shutil.chown(path, user=plan.operator_user)
                plan.written.append(path)
        except (OSError, LookupError, ValueError) as e:
            raise SetupError(f"Cannot write service descriptors: {e}") from e
