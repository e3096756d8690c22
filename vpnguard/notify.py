"""
Best-effort desktop notifications.
"""
import logging

from .system import command_available, run_command

logger = logging.getLogger(__name__)


def notify(title: str, message: str, group: str = 'vpn-guard') -> bool:
    """
    Post a notification through terminal-notifier if it is installed.

    Returns True if a notification was handed off. A missing notifier or a
    failed delivery is not an error.
    """
    if not command_available('terminal-notifier'):
        logger.debug("terminal-notifier not available, skipping: %s", message)
        return False

    result = run_command(
        ['terminal-notifier', '-title', title, '-message', message, '-group', group],
        timeout=10,
    )
    if result.returncode != 0:
        logger.debug("Notification failed (%d): %s", result.returncode, result.stderr.strip())
        return False
    return True
