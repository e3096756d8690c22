"""
Security audit logging for kill-switch events.
Every state change that affects traffic containment is recorded here.
"""
import logging
import json
from pathlib import Path
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import hashlib

from .logs import make_rotating_handler


class AuditLogger:
    """
    Append-only audit log of containment events.
    Each line is a JSON object carrying a short integrity hash.
    """

    def __init__(self, log_dir: Path, component: str, max_bytes: int = 5 * 1024 * 1024):
        self.log_dir = log_dir
        self.log_file = self.log_dir / f"audit-{component}.log"

        self.logger = logging.getLogger(f'vpnguard.audit.{component}')
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False

        if not any(getattr(h, 'baseFilename', None) == str(self.log_file.absolute())
                   for h in self.logger.handlers):
            handler = make_rotating_handler(self.log_file, max_bytes)
            handler.setFormatter(logging.Formatter(
                '%(asctime)s | %(levelname)s | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            ))
            self.logger.addHandler(handler)

        self.log_event('AUDIT_START', {'component': component})

    def log_event(self, event_type: str, data: Dict[str, Any]):
        """
        Log security event with structured data.

        Args:
            event_type: Event classification
            data: Event details
        """
        event = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'event': event_type,
            'data': data
        }

        event_json = json.dumps(event, sort_keys=True, default=str)
        event['hash'] = hashlib.sha256(event_json.encode()).hexdigest()[:16]

        self.logger.info(json.dumps(event, default=str))

    def log_tunnel_change(self, old_phase: str, new_phase: str, address: Optional[str]):
        """Log tunnel phase transitions."""
        self.log_event('TUNNEL_STATE_CHANGE', {
            'from': old_phase,
            'to': new_phase,
            'address': address or 'NONE'
        })

    def log_bind_change(self, address: str, success: bool):
        """Log bind address rewrites."""
        self.log_event('BIND_ADDRESS_CHANGE', {
            'address': address,
            'success': success
        })

    def log_client_command(self, command: str, success: bool, error: Optional[str] = None):
        """Log pause/resume commands sent to the client."""
        self.log_event('CLIENT_COMMAND', {
            'command': command,
            'success': success,
            'error': error
        })

    def log_boot_stage(self, stage: str, success: bool, detail: str = ''):
        """Log daemon boot sequence progress."""
        self.log_event('BOOT_STAGE', {
            'stage': stage,
            'success': success,
            'detail': detail
        })

    def log_guard_refusal(self, reason: str):
        """Log a refused client start."""
        self.log_event('GUARD_REFUSED', {'reason': reason})
