"""
Deployment configuration for the VPN guard.

Every value can be overridden through the environment or a `.env` file
next to this module.
"""
from pathlib import Path
import os

from dotenv import load_dotenv

BASE_DIR = Path(__file__).parent.resolve()
load_dotenv(BASE_DIR / '.env')


def _env_str(name, default):
    return os.environ.get(name, default)


def _env_int(name, default):
    return int(os.environ.get(name, default))


def _env_float(name, default):
    return float(os.environ.get(name, default))


def _env_bool(name, default):
    return os.environ.get(name, str(default)).strip().lower() in ('1', 'true', 'yes')


# Version
VERSION = "0.3.0"

# Host identity
SERVER_NAME = _env_str('VPNGUARD_SERVER_NAME', 'homeserver')
HOSTNAME_LOWER = SERVER_NAME.lower()
LABEL_PREFIX = f"com.{HOSTNAME_LOWER}"

# Daemon identity
DAEMON_USER = _env_str('VPNGUARD_DAEMON_USER', '_transmission')
DAEMON_REAL_NAME = "Transmission Daemon"
DAEMON_ID_RANGE = (250, 400)
DAEMON_HOME = Path(_env_str('VPNGUARD_DAEMON_HOME', '/var/lib/transmission'))
CLIENT_CONFIG_DIR = DAEMON_HOME / '.config' / 'transmission-daemon'
SETTINGS_FILE = CLIENT_CONFIG_DIR / 'settings.json'
HOOKS_DIR = DAEMON_HOME / '.local' / 'bin'
DONE_SCRIPT = HOOKS_DIR / 'transmission-done.sh'
MOUNT_ROOT = DAEMON_HOME / 'mnt'
DAEMON_DOWNLOADS = DAEMON_HOME / 'Downloads'

# Interactive operator account (owner of the watch folder)
OPERATOR_USERNAME = _env_str('VPNGUARD_OPERATOR', 'operator')
OPERATOR_HOME = Path(_env_str('VPNGUARD_OPERATOR_HOME', f'/Users/{OPERATOR_USERNAME}'))
WATCH_DIR = Path(_env_str('VPNGUARD_WATCH_DIR', str(OPERATOR_HOME / '.local' / 'sync' / 'dropbox')))

# Download client
CLIENT_PROCESS_NAME = 'transmission-daemon'
CLIENT_BINARY = Path(_env_str('VPNGUARD_CLIENT_BINARY', '/opt/homebrew/bin/transmission-daemon'))
CLIENT_LABEL = f"{LABEL_PREFIX}.transmission-daemon"
CLIENT_START_COMMAND = ['/bin/launchctl', 'kickstart', f'system/{CLIENT_LABEL}']
PEER_PORT = _env_int('VPNGUARD_PEER_PORT', 40944)
RPC_HOST = _env_str('VPNGUARD_RPC_HOST', '127.0.0.1')
RPC_PORT = _env_int('VPNGUARD_RPC_PORT', 19091)
RPC_PATH = '/transmission/rpc'
RPC_USERNAME = _env_str('VPNGUARD_RPC_USERNAME', HOSTNAME_LOWER)
RPC_PASSWORD = _env_str('VPNGUARD_RPC_PASSWORD', HOSTNAME_LOWER)
RPC_TIMEOUT = _env_float('VPNGUARD_RPC_TIMEOUT', 10)
LOOPBACK_ADDRESS = '127.0.0.1'

# Tunnel detection
TUNNEL_PREFIX = _env_str('VPNGUARD_TUNNEL_PREFIX', 'utun')
TUNNEL_COUNT = _env_int('VPNGUARD_TUNNEL_COUNT', 16)

# Monitor timing (seconds)
POLL_INTERVAL = _env_float('VPNGUARD_POLL_INTERVAL', 5)
REBIND_COOLDOWN = _env_float('VPNGUARD_REBIND_COOLDOWN', 10)
STOP_TIMEOUT = _env_float('VPNGUARD_STOP_TIMEOUT', 10)
START_SETTLE = _env_float('VPNGUARD_START_SETTLE', 3)
BIND_VERIFY_TIMEOUT = _env_float('VPNGUARD_BIND_VERIFY_TIMEOUT', 15)
ROUTE_MONITOR_ENABLED = _env_bool('VPNGUARD_ROUTE_MONITOR', False)

# Firewall
PF_ANCHOR = 'transmission-killswitch'
PF_ANCHOR_FILE = Path('/etc/pf.anchors') / PF_ANCHOR
PF_CONF = Path('/etc/pf.conf')
PF_RULESET_VERSION = 1
PF_LOADER_LABEL = f"{LABEL_PREFIX}.pf-killswitch"
FIREWALL_WAIT = _env_float('VPNGUARD_FIREWALL_WAIT', 60)

# PF user-filtering self-test
PF_TEST_USER = _env_str('VPNGUARD_PF_TEST_USER', '_pftest')
PF_TEST_UID = _env_int('VPNGUARD_PF_TEST_UID', 299)
PF_TEST_GROUP = 20  # staff
PF_TEST_ANCHOR = 'pftest'
PF_TEST_INTERFACE = _env_str('VPNGUARD_PF_TEST_INTERFACE', 'en0')
PF_TEST_URL = _env_str('VPNGUARD_PF_TEST_URL', 'http://example.com')
PF_TEST_TIMEOUT = _env_int('VPNGUARD_PF_TEST_TIMEOUT', 5)

# NAS share
NAS_HOSTNAME = _env_str('VPNGUARD_NAS_HOSTNAME', 'nas.local')
NAS_USERNAME = _env_str('VPNGUARD_NAS_USERNAME', 'plex')
NAS_SHARE_NAME = _env_str('VPNGUARD_NAS_SHARE', 'DSMedia')
NAS_KEYCHAIN_SERVICE = f"plex-nas-{HOSTNAME_LOWER}"
NAS_MOUNT_POINT = MOUNT_ROOT / NAS_SHARE_NAME
NAS_READY_MARKER = NAS_MOUNT_POINT / 'Media'
DOWNLOAD_DIR = NAS_READY_MARKER / 'Torrents' / 'pending-move'
MOUNT_WAIT = _env_float('VPNGUARD_MOUNT_WAIT', 300)
NETWORK_ATTEMPTS = _env_int('VPNGUARD_NETWORK_ATTEMPTS', 60)
MOUNT_LABEL = f"{LABEL_PREFIX}.mount-nas-transmission"

# Supervisor
RESTART_THROTTLE = _env_float('VPNGUARD_RESTART_THROTTLE', 360)
MONITOR_LABEL = f"{LABEL_PREFIX}.vpn-monitor"

# Consent watcher
CONSENT_LABEL = f"{LABEL_PREFIX}.pia-proxy-consent"
CONSENT_POLL_INTERVAL = _env_float('VPNGUARD_CONSENT_POLL', 3)
CONSENT_MAX_WAIT = _env_float('VPNGUARD_CONSENT_MAX_WAIT', 300)

# Logging
LOGS_DIR = Path(_env_str('VPNGUARD_LOG_DIR', str(DAEMON_HOME / 'logs')))
MAX_LOG_SIZE = _env_int('VPNGUARD_MAX_LOG_SIZE', 5 * 1024 * 1024)
LOG_LEVEL = _env_str('VPNGUARD_LOG_LEVEL', 'INFO')

# Service descriptors
LAUNCH_DAEMONS_DIR = Path('/Library/LaunchDaemons')
LAUNCHD_PATH = '/opt/homebrew/bin:/usr/local/bin:/usr/bin:/bin:/usr/sbin:/sbin'
