"""
Consent Watcher - clicks "Allow" on the VPN proxy-configuration dialog.

After a reboot macOS can ask again for consent to the VPN's proxy
configuration, and the split tunnel stays down until someone answers.
This watcher runs once per login, polls for the dialog for a few minutes
and answers it. Best effort only.
"""
import logging
import time
from typing import Callable, Optional, Sequence

from .notify import notify
from .system import run_command

logger = logging.getLogger(__name__)

DIALOG_HOSTS = ('UserNotificationCenter', 'SystemUIServer', 'SecurityAgent')

_KNOWN_HOST_SCRIPT = '''
tell application "System Events"
    if exists (process "{proc}") then
        tell process "{proc}"
            repeat with w in windows
                try
                    set windowText to value of static text of w
                    repeat with t in windowText
                        if t contains "Proxy Configurations" or t contains "PIA Split Tunnel" then
                            click button "Allow" of w
                            return "clicked:{proc}"
                        end if
                    end repeat
                end try
            end repeat
        end tell
    end if
end tell
return "not_found"
'''

_SCAN_ALL_SCRIPT = '''
tell application "System Events"
    repeat with proc in processes
        try
            tell proc
                repeat with w in windows
                    try
                        set windowText to value of static text of w
                        repeat with t in windowText
                            if (t contains "Proxy" or t contains "PIA") and exists button "Allow" of w then
                                click button "Allow" of w
                                return "clicked:" & name of proc
                            end if
                        end repeat
                    end try
                end repeat
            end tell
        end try
    end repeat
end tell
return "not_found"
'''


def _osascript(script: str) -> str:
    result = run_command(['/usr/bin/osascript', '-e', script], timeout=20)
    if result.returncode != 0:
        return 'not_found'
    return result.stdout.strip()


class ConsentWatcher:
    """
    Polls for the consent dialog until it is answered or time runs out.
    """

    def __init__(self, poll_interval: float = 3, max_wait: float = 300,
                 hosts: Sequence[str] = DIALOG_HOSTS,
                 runner: Callable[[str], str] = _osascript,
                 sleep: Callable[[float], None] = time.sleep):
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self.hosts = tuple(hosts)
        self.runner = runner
        self._sleep = sleep

    def click_allow(self) -> Optional[str]:
        """
        Try the known dialog hosts, then every process.

        Returns:
            Name of the process whose dialog was answered, or None
        """
        for proc in self.hosts:
            result = self.runner(_KNOWN_HOST_SCRIPT.format(proc=proc))
            if result.startswith('clicked:'):
                return result[len('clicked:'):]

        result = self.runner(_SCAN_ALL_SCRIPT)
        if result.startswith('clicked:'):
            return result[len('clicked:'):]
        return None

    def run(self) -> bool:
        """
        Returns:
            True if a dialog was answered
        """
        logger.info("Proxy consent watcher starting (poll %ss, max wait %ss)",
                    self.poll_interval, self.max_wait)
        elapsed = 0.0
        while elapsed < self.max_wait:
            process_name = self.click_allow()
            if process_name:
                logger.info("Clicked Allow on proxy consent dialog (process: %s)", process_name)
                notify("PIA Proxy Consent", "Auto-clicked Allow for proxy configuration",
                       group='pia-proxy-consent')
                return True
            self._sleep(self.poll_interval)
            elapsed += self.poll_interval

        logger.info("No dialog seen after %ss (normal if consent persisted this boot)",
                    self.max_wait)
        return False
