"""
VPN Guard Entry Point

One sub-command per long-running component; each is started by its own
launchd job and logs to its own file.
"""
import argparse
import logging
import os
import signal
import sys
from pathlib import Path

import config
from vpnguard.logs import configure_logging

logger = logging.getLogger(__name__)


def setup_logging(component, log_dir=None):
    log_file = configure_logging(
        component,
        log_dir or config.LOGS_DIR,
        config.HOSTNAME_LOWER,
        max_bytes=config.MAX_LOG_SIZE,
        level=config.LOG_LEVEL,
    )
    logger.info("=" * 50)
    logger.info("%s starting (log: %s)", component, log_file)
    logger.info("=" * 50)


def build_firewall():
    from vpnguard.firewall import PFController
    return PFController(anchor=config.PF_ANCHOR, anchor_file=config.PF_ANCHOR_FILE,
                        pf_conf=config.PF_CONF)


def build_ruleset():
    from vpnguard.firewall import KillSwitchRuleSet
    return KillSwitchRuleSet.for_tunnels(
        anchor=config.PF_ANCHOR,
        user=config.DAEMON_USER,
        prefix=config.TUNNEL_PREFIX,
        count=config.TUNNEL_COUNT,
        peer_port=config.PEER_PORT,
        control_ports=(config.RPC_PORT,),
        version=config.PF_RULESET_VERSION,
    )


def cmd_monitor(args):
    """Run the VPN monitor until signalled."""
    from vpnguard.audit_log import AuditLogger
    from vpnguard.enforcer import BindAddressEnforcer
    from vpnguard.monitor import RouteChangeTrigger, VPNMonitor
    from vpnguard.process import ClientProcess
    from vpnguard.settings import ClientSettings
    from vpnguard.transmission import TransmissionRPC
    from vpnguard.tunnel import TunnelDetector

    setup_logging('vpn-monitor')
    audit_logger = AuditLogger(config.LOGS_DIR, 'vpn-monitor', config.MAX_LOG_SIZE)

    process = ClientProcess(config.CLIENT_PROCESS_NAME, config.CLIENT_START_COMMAND,
                            stop_timeout=config.STOP_TIMEOUT,
                            start_settle=config.START_SETTLE)
    enforcer = BindAddressEnforcer(ClientSettings(config.SETTINGS_FILE), process,
                                   peer_port=config.PEER_PORT,
                                   verify_timeout=config.BIND_VERIFY_TIMEOUT,
                                   audit_logger=audit_logger)
    controller = TransmissionRPC.for_endpoint(config.RPC_HOST, config.RPC_PORT, config.RPC_PATH,
                                              config.RPC_USERNAME, config.RPC_PASSWORD,
                                              timeout=config.RPC_TIMEOUT)
    monitor = VPNMonitor(TunnelDetector(config.TUNNEL_PREFIX, config.TUNNEL_COUNT),
                         enforcer, controller,
                         poll_interval=config.POLL_INTERVAL,
                         cooldown=config.REBIND_COOLDOWN,
                         loopback=config.LOOPBACK_ADDRESS,
                         audit_logger=audit_logger)

    # Re-derive the current binding from the live client instead of saved state
    monitor.state.last_bound_address = process.effective_bind_address(config.PEER_PORT)
    logger.info("Client currently bound to %s", monitor.state.last_bound_address or 'nothing')

    def handle_signal(signum, frame):
        logger.info("VPN monitor stopping (signal %d received)", signum)
        monitor.request_stop()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    trigger = None
    if config.ROUTE_MONITOR_ENABLED:
        trigger = RouteChangeTrigger(monitor.wake)
        trigger.start()
    try:
        monitor.run()
    finally:
        if trigger:
            trigger.stop()
    return 0


def cmd_start_daemon(args):
    """Boot sequence, start guard, then the client."""
    from vpnguard.audit_log import AuditLogger
    from vpnguard.supervisor import BootStageError, DaemonSupervisor

    setup_logging('daemon')
    audit_logger = AuditLogger(config.LOGS_DIR, 'daemon', config.MAX_LOG_SIZE)
    supervisor = DaemonSupervisor(
        build_firewall(),
        ready_marker=config.NAS_READY_MARKER,
        client_argv=[config.CLIENT_BINARY, '--foreground', '--config-dir', config.CLIENT_CONFIG_DIR],
        mount_wait=config.MOUNT_WAIT,
        firewall_wait=config.FIREWALL_WAIT,
        restart_throttle=config.RESTART_THROTTLE,
        run_as=config.DAEMON_USER,
        audit_logger=audit_logger,
    )

    def handle_signal(signum, frame):
        logger.info("Supervisor stopping (signal %d received)", signum)
        supervisor.request_stop()

    try:
        if args.supervise:
            signal.signal(signal.SIGTERM, handle_signal)
            signal.signal(signal.SIGINT, handle_signal)
            return supervisor.supervise()
        supervisor.exec_client()
    except BootStageError as e:
        logger.critical("Refusing to start client (stage %s): %s", e.stage.value, e)
        return 1
    except OSError as e:
        logger.critical("Failed to start client: %s", e)
        return 1
    return 0


def cmd_load_firewall(args):
    """Boot-time loader for the kill-switch anchor."""
    from vpnguard.firewall import FirewallError

    setup_logging('pf-killswitch')
    firewall = build_firewall()
    try:
        firewall.load()
    except FirewallError as e:
        logger.critical("%s", e)
        return 1
    if not firewall.is_active():
        logger.critical("PF loaded but kill-switch anchor is not active")
        return 1
    logger.info("Kill-switch active")
    return 0


def cmd_pf_selftest(args):
    """Check that PF's user keyword is enforced on this host."""
    from vpnguard.firewall import FirewallError, PFController
    from vpnguard.identity import IdentityProvisioner, SetupError
    from vpnguard.pftest import UserFilterSelfTest, Verdict

    if os.geteuid() != 0:
        print("This command must be run as root (use sudo).", file=sys.stderr)
        return 1

    setup_logging('pf-selftest', Path.home() / '.local' / 'state')
    selftest = UserFilterSelfTest(
        IdentityProvisioner(config.PF_TEST_USER, Path('/tmp'), 'PF Filter Test',
                            id_range=(config.PF_TEST_UID, config.PF_TEST_UID),
                            primary_group=config.PF_TEST_GROUP),
        PFController(anchor=config.PF_TEST_ANCHOR,
                     anchor_file=config.PF_ANCHOR_FILE.parent / config.PF_TEST_ANCHOR,
                     pf_conf=config.PF_CONF),
        interface=config.PF_TEST_INTERFACE,
        url=config.PF_TEST_URL,
        curl_timeout=config.PF_TEST_TIMEOUT,
    )
    try:
        result = selftest.run()
    except (SetupError, FirewallError) as e:
        logger.error("Self-test could not run: %s", e)
        return 1

    verdict = result.verdict
    print("=" * 43)
    if verdict is Verdict.PASS:
        print("VERDICT: PASS - PF user-based filtering works on this host.")
        print(f"  {config.PF_TEST_USER} was blocked on {config.PF_TEST_INTERFACE} "
              "while other users were unaffected.")
    elif verdict is Verdict.FAIL:
        print("VERDICT: FAIL - PF user keyword is NOT enforced.")
        print("  The kill-switch firewall cannot be relied on; keep the VPN monitor only.")
    else:
        print("VERDICT: INCONCLUSIVE - unexpected results.")
        print(f"  Test user blocked: {result.test_user_blocked}")
        print(f"  Other traffic allowed: {result.others_allowed}")
        print("  Check network connectivity and try again.")
    print("=" * 43)
    return verdict.value


def cmd_mount(args):
    """Mount the NAS share for the daemon."""
    from vpnguard.mount import MountError, NasMount

    setup_logging('mount')
    nas = NasMount(config.NAS_HOSTNAME, config.NAS_SHARE_NAME, config.NAS_USERNAME,
                   config.NAS_MOUNT_POINT, config.NAS_KEYCHAIN_SERVICE,
                   owner=config.DAEMON_USER)
    try:
        nas.mount(network_attempts=config.NETWORK_ATTEMPTS)
    except MountError as e:
        logger.error("%s", e)
        return 1
    return 0


def cmd_consent(args):
    """Answer the VPN proxy consent dialog once after login."""
    from vpnguard.consent import ConsentWatcher

    setup_logging('pia-proxy-consent', Path.home() / '.local' / 'state')
    ConsentWatcher(config.CONSENT_POLL_INTERVAL, config.CONSENT_MAX_WAIT).run()
    return 0


def confirm(prompt):
    response = input(f"{prompt} (yes/no): ").strip().lower()
    return response == 'yes'


def cmd_install(args):
    """Provision the daemon account, settings, PF rules and boot jobs."""
    from vpnguard.identity import IdentityProvisioner, SetupError
    from vpnguard.install import InstallPlan, KillSwitchInstaller
    from vpnguard.launchd import build_consent_agent, build_descriptors
    from vpnguard.settings import ClientSettings, render_default_settings

    setup_logging('setup', Path.home() / '.local' / 'state')
    logger.info("Server: %s", config.SERVER_NAME)
    logger.info("Operator: %s", config.OPERATOR_USERNAME)

    print("\nThis will:")
    print(f"  1. Create the {config.DAEMON_USER} system account")
    print(f"  2. Create data directories in {config.DAEMON_HOME}")
    print("  3. Generate transmission-daemon settings.json")
    print("  4. Deploy PF kill-switch rules")
    print("  5. Create LaunchDaemons for mount, PF loader, daemon and VPN monitor\n")
    if not args.force and not confirm("Proceed with VPN kill-switch setup?"):
        logger.info("Setup cancelled by user")
        return 0

    main_script = Path(__file__).resolve()
    plan = InstallPlan(
        client_binary=config.CLIENT_BINARY,
        data_dirs=[config.DAEMON_HOME, config.CLIENT_CONFIG_DIR, config.HOOKS_DIR,
                   config.MOUNT_ROOT, config.DAEMON_DOWNLOADS, config.LOGS_DIR],
        operator_user=config.OPERATOR_USERNAME,
        operator_home=config.OPERATOR_HOME,
        watch_dir=config.WATCH_DIR,
        settings=render_default_settings(
            download_dir=config.DOWNLOAD_DIR,
            watch_dir=config.WATCH_DIR,
            done_script=config.DONE_SCRIPT,
            rpc_username=config.RPC_USERNAME,
            rpc_password=config.RPC_PASSWORD,
            rpc_port=config.RPC_PORT,
            peer_port=config.PEER_PORT,
            bind_address=config.LOOPBACK_ADDRESS,
        ),
        ruleset=build_ruleset(),
        launch_daemons_dir=config.LAUNCH_DAEMONS_DIR,
        descriptors=build_descriptors(
            sys.executable, main_script, config.HOSTNAME_LOWER, config.LABEL_PREFIX,
            config.DAEMON_HOME, config.LOGS_DIR, int(config.RESTART_THROTTLE),
            config.LAUNCHD_PATH,
        ),
        consent_agent=build_consent_agent(
            sys.executable, main_script, config.HOSTNAME_LOWER, config.LABEL_PREFIX,
            config.OPERATOR_HOME / '.local' / 'state', config.LAUNCHD_PATH,
        ),
    )
    installer = KillSwitchInstaller(
        plan,
        IdentityProvisioner(config.DAEMON_USER, config.DAEMON_HOME,
                            config.DAEMON_REAL_NAME, config.DAEMON_ID_RANGE),
        ClientSettings(config.SETTINGS_FILE),
        build_firewall(),
    )
    try:
        written = installer.run()
    except SetupError as e:
        logger.error("%s", e)
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    for path in written:
        logger.info("  wrote %s", path)
    logger.info("Load the LaunchDaemons in this order:")
    for descriptor in plan.descriptors:
        logger.info("  sudo launchctl load %s/%s.plist", plan.launch_daemons_dir, descriptor.label)
    return 0


def cmd_status(args):
    """Print tunnel, firewall and client state."""
    from vpnguard.process import ClientProcess
    from vpnguard.settings import ClientSettings
    from vpnguard.transmission import RPCError, TransmissionRPC
    from vpnguard.tunnel import TunnelDetector

    logging.basicConfig(level=logging.WARNING, format='%(levelname)s | %(message)s')
    tunnel = TunnelDetector(config.TUNNEL_PREFIX, config.TUNNEL_COUNT).find_tunnel()
    process = ClientProcess(config.CLIENT_PROCESS_NAME, config.CLIENT_START_COMMAND)
    print(f"Tunnel:       {f'{tunnel.interface_id} {tunnel.assigned_address}' if tunnel else 'DOWN'}")
    print(f"Kill-switch:  {'active' if build_firewall().is_active() else 'INACTIVE'}")
    print(f"Client PIDs:  {process.pids() or 'not running'}")
    print(f"Configured:   {ClientSettings(config.SETTINGS_FILE).bind_address}")
    print(f"Bound:        {process.effective_bind_address(config.PEER_PORT)}")
    try:
        rpc = TransmissionRPC.for_endpoint(config.RPC_HOST, config.RPC_PORT, config.RPC_PATH,
                                           config.RPC_USERNAME, config.RPC_PASSWORD,
                                           timeout=config.RPC_TIMEOUT)
        stats = rpc.session_stats()
        print(f"Torrents:     {stats.get('activeTorrentCount')} active, "
              f"{stats.get('pausedTorrentCount')} paused")
    except RPCError as e:
        print(f"Control API:  {e}")
    return 0


def build_parser():
    parser = argparse.ArgumentParser(prog='vpn-guard',
                                     description='VPN kill-switch for transmission-daemon')
    parser.add_argument('--version', action='version', version=f'%(prog)s {config.VERSION}')
    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('monitor', help='run the VPN monitor').set_defaults(func=cmd_monitor)

    daemon = sub.add_parser('start-daemon', help='boot sequence and guarded client start')
    daemon.add_argument('--supervise', action='store_true',
                        help='keep the client as a child and restart it, instead of exec')
    daemon.set_defaults(func=cmd_start_daemon)

    sub.add_parser('load-firewall', help='load PF rules and enable PF').set_defaults(func=cmd_load_firewall)
    sub.add_parser('pf-selftest', help='verify PF user filtering works on this host'
                   ).set_defaults(func=cmd_pf_selftest)
    sub.add_parser('mount', help='mount the NAS share').set_defaults(func=cmd_mount)
    sub.add_parser('consent', help='answer the VPN proxy consent dialog').set_defaults(func=cmd_consent)

    install = sub.add_parser('install', help='install the kill-switch')
    install.add_argument('--force', action='store_true', help='skip confirmation prompt')
    install.set_defaults(func=cmd_install)

    sub.add_parser('status', help='show current state').set_defaults(func=cmd_status)
    return parser


def main(argv=None):
    """Main application entry point."""
    args = build_parser().parse_args(argv)
    sys.exit(args.func(args))


if __name__ == '__main__':
    main()
