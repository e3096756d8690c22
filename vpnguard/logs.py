"""
Per-component log files with size-based rotation.
"""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'


def _old_suffix_namer(default_name: str) -> str:
    # app.log.1 -> app.log.old
    if default_name.endswith('.1'):
        return default_name[:-2] + '.old'
    return default_name


def component_log_file(log_dir: Path, hostname: str, component: str) -> Path:
    return log_dir / f"{hostname}-{component}.log"


def make_rotating_handler(log_file: Path, max_bytes: int) -> RotatingFileHandler:
    """
    File handler that renames the current log to `<name>.old` once it
    grows past `max_bytes`, keeping a single previous generation.
    """
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=1, encoding='utf-8')
    handler.namer = _old_suffix_namer
    return handler


def configure_logging(component: str, log_dir: Path, hostname: str,
                      max_bytes: int = 5 * 1024 * 1024,
                      level: str = 'INFO',
                      stream: Optional[object] = sys.stdout) -> Path:
    """
    Configure root logging for one long-running component.

    Returns the path of the component's log file.
    """
    log_file = component_log_file(log_dir, hostname, component)
    handlers = [make_rotating_handler(log_file, max_bytes)]
    if stream is not None:
        handlers.append(logging.StreamHandler(stream))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    return log_file
