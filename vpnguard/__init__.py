"""
VPN Guard Core Package

Keeps a torrent daemon's traffic inside the VPN tunnel: tunnel monitoring,
bind-address enforcement, PF kill-switch and the daemon's boot guard.
"""

__version__ = "0.3.0"
__author__ = "VPN Guard Contributors"

# Import main classes for easier access
from .tunnel import TunnelDetector, TunnelState
from .settings import ClientSettings
from .process import ClientProcess
from .enforcer import BindAddressEnforcer
from .transmission import TransmissionRPC, RPCError
from .monitor import VPNMonitor, MonitorState, Phase, plan_transition
from .firewall import KillSwitchRuleSet, PFController, FirewallError
from .supervisor import DaemonSupervisor, BootStage, BootStageError
from .identity import IdentityProvisioner, SetupError
from .mount import NasMount, MountError
from .consent import ConsentWatcher
from .pftest import UserFilterSelfTest, Verdict
from .audit_log import AuditLogger

__all__ = [
    # Tunnel state
    'TunnelDetector',
    'TunnelState',
    'VPNMonitor',
    'MonitorState',
    'Phase',
    'plan_transition',

    # Client
    'ClientSettings',
    'ClientProcess',
    'BindAddressEnforcer',
    'TransmissionRPC',
    'RPCError',

    # Boot-time
    'KillSwitchRuleSet',
    'PFController',
    'FirewallError',
    'DaemonSupervisor',
    'BootStage',
    'BootStageError',
    'NasMount',
    'MountError',
    'IdentityProvisioner',
    'SetupError',

    # Support
    'ConsentWatcher',
    'UserFilterSelfTest',
    'Verdict',
    'AuditLogger',
]
