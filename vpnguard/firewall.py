"""
Firewall Kill-Switch - PF anchor that confines the daemon user to the
VPN tunnel.

The ruleset is static text, written once at install time and loaded by
the boot-time loader. Nothing at runtime rewrites it.
"""
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Sequence, Tuple

from .system import run_command

logger = logging.getLogger(__name__)


class FirewallError(Exception):
    """PF rules could not be deployed or loaded."""


@dataclass(frozen=True)
class KillSwitchRuleSet:
    """
    Default-deny ruleset for one user.

    Outbound TCP/UDP from `user` is allowed only on loopback and on the
    tunnel interfaces. The peer port is reachable only through the tunnel;
    the control ports stay reachable from the LAN.
    """
    anchor: str
    user: str
    tunnel_interfaces: Tuple[str, ...]
    peer_port: int
    control_ports: Tuple[int, ...] = ()
    version: int = 1

    def render(self) -> str:
        tunnels = ' '.join(self.tunnel_interfaces)
        lines = [
            f"# {self.anchor} v{self.version}",
            f"# Default-deny for user {self.user}: loopback and VPN tunnels only.",
            "# Static file, loaded at boot. Do not edit by hand.",
            "",
        ]
        # control ports are for the LAN only, never reachable through the tunnel
        for port in self.control_ports:
            lines.append(f"block drop in quick on {{ {tunnels} }} proto tcp from any to any port {port}")
            lines.append(f"pass in quick proto tcp from any to any port {port} keep state")
        lines += [
            f"pass in quick on {{ {tunnels} }} proto {{ tcp udp }} from any to any port {self.peer_port} keep state",
            f"block drop in quick proto {{ tcp udp }} from any to any port {self.peer_port}",
            f"pass out quick on lo0 proto {{ tcp udp }} from any to any user {self.user}",
            f"pass out quick on {{ {tunnels} }} proto {{ tcp udp }} from any to any user {self.user} keep state",
            f"block drop out quick proto {{ tcp udp }} from any to any user {self.user}",
            "",
        ]
        return '\n'.join(lines)

    @classmethod
    def for_tunnels(cls, anchor: str, user: str, prefix: str, count: int, peer_port: int,
                    control_ports: Sequence[int] = (), version: int = 1) -> 'KillSwitchRuleSet':
        return cls(
            anchor=anchor,
            user=user,
            tunnel_interfaces=tuple(f"{prefix}{i}" for i in range(count)),
            peer_port=peer_port,
            control_ports=tuple(control_ports),
            version=version,
        )


@dataclass
class PFController:
    """
    Deploys, loads and verifies the kill-switch anchor via pfctl.
    """
    anchor: str
    anchor_file: Path
    pf_conf: Path = Path('/etc/pf.conf')
    pfctl: str = '/sbin/pfctl'
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    @property
    def anchor_lines(self) -> Tuple[str, str]:
        return (
            f'anchor "{self.anchor}"',
            f'load anchor "{self.anchor}" from "{self.anchor_file}"',
        )

    def deploy(self, ruleset: KillSwitchRuleSet):
        """
        Install the anchor file and reference it from pf.conf.

        Raises:
            FirewallError: if pf.conf does not validate afterwards
        """
        self.anchor_file.parent.mkdir(parents=True, exist_ok=True)
        self.anchor_file.write_text(ruleset.render(), encoding='utf-8')
        self.anchor_file.chmod(0o644)
        if os.geteuid() == 0:
            os.chown(self.anchor_file, 0, 0)
        logger.info("PF anchor deployed to %s", self.anchor_file)

        if self.wire_anchor():
            logger.info("Anchor added to %s", self.pf_conf)
        else:
            logger.info("Anchor already present in %s", self.pf_conf)

        result = run_command([self.pfctl, '-nf', str(self.pf_conf)])
        if result.returncode != 0:
            raise FirewallError(f"pf.conf failed validation: {result.stderr.strip()}")

    def wire_anchor(self) -> bool:
        """
        Append the anchor lines to pf.conf if missing.

        Returns:
            True if pf.conf was changed
        """
        content = self.pf_conf.read_text(encoding='utf-8') if self.pf_conf.exists() else ''
        missing = [line for line in self.anchor_lines if line not in content]
        if not missing:
            return False

        with open(self.pf_conf, 'a', encoding='utf-8') as f:
            if content and not content.endswith('\n'):
                f.write('\n')
            f.write("\n# Transmission VPN kill-switch\n")
            for line in missing:
                f.write(line + '\n')
        return True

    def load(self):
        """
        Load pf.conf (and with it the anchor) and enable PF.

        Raises:
            FirewallError: if either pfctl step fails
        """
        result = run_command([self.pfctl, '-f', str(self.pf_conf)])
        if result.returncode != 0:
            raise FirewallError(f"pfctl -f failed: {result.stderr.strip()}")

        # -E takes a reference on the enable count; harmless when already enabled
        result = run_command([self.pfctl, '-E'])
        if result.returncode != 0:
            raise FirewallError(f"pfctl -E failed: {result.stderr.strip()}")
        logger.info("PF rules loaded and PF enabled")

    def load_anchor_rules(self, rules: str):
        """
        Load rule text straight into the anchor, bypassing pf.conf.

        Raises:
            FirewallError: if pfctl rejects the rules
        """
        result = run_command([self.pfctl, '-a', self.anchor, '-f', '-'], input_text=rules)
        if result.returncode != 0:
            raise FirewallError(f"pfctl -a {self.anchor} -f failed: {result.stderr.strip()}")
        logger.info("Rules loaded into anchor %s", self.anchor)

    def flush_anchor(self) -> bool:
        result = run_command([self.pfctl, '-a', self.anchor, '-F', 'rules'])
        if result.returncode != 0:
            logger.warning("Could not flush anchor %s: %s", self.anchor, result.stderr.strip())
        return result.returncode == 0

    def enable(self) -> bool:
        # pfctl -e exits non-zero when PF is already enabled
        run_command([self.pfctl, '-e'])
        return self.is_enabled()

    def disable(self) -> bool:
        result = run_command([self.pfctl, '-d'])
        if result.returncode != 0:
            logger.warning("Could not disable PF: %s", result.stderr.strip())
        return result.returncode == 0

    def is_enabled(self) -> bool:
        result = run_command([self.pfctl, '-s', 'info'])
        return result.returncode == 0 and 'Status: Enabled' in result.stdout

    def is_active(self) -> bool:
        """
        True only if PF is enabled, the main ruleset references the anchor
        and the anchor holds its block rule.
        """
        if not self.is_enabled():
            logger.warning("PF is not enabled")
            return False

        main_rules = run_command([self.pfctl, '-s', 'rules'])
        if main_rules.returncode != 0 or self.anchor not in main_rules.stdout:
            logger.warning("Anchor %s is not referenced by the loaded ruleset", self.anchor)
            return False

        anchor_rules = run_command([self.pfctl, '-a', self.anchor, '-s', 'rules'])
        if anchor_rules.returncode != 0 or 'block drop out' not in anchor_rules.stdout:
            logger.warning("Anchor %s has no block rule loaded", self.anchor)
            return False
        return True

    def wait_until_active(self, timeout: float, interval: float = 5) -> bool:
        deadline = self.clock() + timeout
        while True:
            if self.is_active():
                return True
            if self.clock() >= deadline:
                return False
            self.sleep(interval)
