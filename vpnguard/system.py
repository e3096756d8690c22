"""
Thin wrappers around the OS utilities the guard shells out to.
"""
import logging
import shutil
import subprocess
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)


def run_command(args: Sequence[str], timeout: Optional[float] = 30,
                input_text: Optional[str] = None) -> subprocess.CompletedProcess:
    """
    Run a command and capture its output.

    Never raises for a non-zero exit status; callers inspect `returncode`.
    A missing binary or a timeout is reported as returncode 127 / 124 so
    every failure looks the same to the caller.
    """
    argv: List[str] = [str(a) for a in args]
    try:
        return subprocess.run(
            argv,
            capture_output=True,
            text=True,
            timeout=timeout,
            input=input_text,
        )
    except FileNotFoundError:
        logger.error("Command not found: %s", argv[0])
        return subprocess.CompletedProcess(argv, 127, '', f"{argv[0]}: not found")
    except subprocess.TimeoutExpired:
        logger.error("Command timed out after %ss: %s", timeout, ' '.join(argv))
        return subprocess.CompletedProcess(argv, 124, '', 'timeout')


def command_available(name: str) -> bool:
    return shutil.which(name) is not None
