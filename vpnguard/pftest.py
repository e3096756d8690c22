"""
PF user-filtering self-test.

The kill-switch only works if the kernel honours PF's `user` keyword. This
test creates a throwaway account, blocks it in a scratch anchor, checks
that its traffic is dropped while everyone else's still flows, and then
removes everything it created. Run it once per OS version before relying
on the kill-switch.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .firewall import PFController
from .identity import IdentityProvisioner
from .system import run_command

logger = logging.getLogger(__name__)


class Verdict(enum.Enum):
    PASS = 0
    FAIL = 1
    INCONCLUSIVE = 2


@dataclass
class FilterTestResult:
    test_user_blocked: bool
    others_allowed: bool

    @property
    def verdict(self) -> Verdict:
        if self.test_user_blocked and self.others_allowed:
            return Verdict.PASS
        if not self.test_user_blocked and self.others_allowed:
            return Verdict.FAIL
        return Verdict.INCONCLUSIVE


class UserFilterSelfTest:
    """
    One run of the PF `user` keyword check.
    """

    def __init__(self, provisioner: IdentityProvisioner, firewall: PFController,
                 interface: str = 'en0', url: str = 'http://example.com',
                 curl_timeout: int = 5,
                 runner: Callable[..., object] = run_command):
        self.provisioner = provisioner
        self.firewall = firewall
        self.interface = interface
        self.url = url
        self.curl_timeout = curl_timeout
        self._run = runner

    @property
    def rule(self) -> str:
        return (f"block drop out quick on {self.interface} proto tcp "
                f"from any to any user {self.provisioner.name}\n")

    def _reachable(self, as_user: Optional[str] = None) -> bool:
        argv = ['/usr/bin/curl', '-s', '-o', '/dev/null',
                '--max-time', str(self.curl_timeout), self.url]
        if as_user:
            argv = ['/usr/bin/sudo', '-u', as_user] + argv
        result = self._run(argv, timeout=self.curl_timeout + 10)
        return result.returncode == 0

    def run(self) -> FilterTestResult:
        """
        Create, test, clean up. Cleanup runs however the test ends.

        Raises:
            SetupError: if the test account can't be created
            FirewallError: if the test rule can't be loaded
        """
        pf_was_enabled = self.firewall.is_enabled()
        logger.info("PF is %s", 'enabled' if pf_was_enabled else 'disabled (will enable for test)')

        user_created = False
        anchor_loaded = False
        try:
            if self.provisioner.existing():
                logger.warning("User %s already exists, deleting first", self.provisioner.name)
                self.provisioner.delete()
            identity = self.provisioner.create()
            user_created = True

            self.firewall.load_anchor_rules(self.rule)
            anchor_loaded = True
            self.firewall.enable()
            logger.info("Rule loaded: %s", self.rule.strip())

            blocked = not self._reachable(as_user=identity.name)
            logger.info("%s traffic: %s", identity.name, 'blocked' if blocked else 'NOT blocked')
            allowed = self._reachable()
            logger.info("Other traffic: %s", 'allowed' if allowed else 'BLOCKED')
        finally:
            if anchor_loaded:
                self.firewall.flush_anchor()
            if not pf_was_enabled:
                self.firewall.disable()
            if user_created:
                self.provisioner.delete()
            logger.info("Self-test cleanup complete")

        return FilterTestResult(test_user_blocked=blocked, others_allowed=allowed)
