"""
VPN Monitor - keeps the download client's bind address and transfer state
in line with the live tunnel.

  tunnel lost     -> pause all, bind to loopback
  tunnel restored -> bind to tunnel, resume all (if we paused)
  address change  -> bind to the new address, transfers keep running

The packet filter is the real guarantee; this loop keeps the client useful
and quiet, it does not have to be perfect.
"""
import enum
import logging
import subprocess
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from .audit_log import AuditLogger
from .notify import notify
from .tunnel import TunnelState

logger = logging.getLogger(__name__)


class Phase(enum.Enum):
    INIT = 'init'
    UP = 'up'
    DOWN = 'down'


@dataclass
class MonitorState:
    """Monitor memory for the lifetime of the process. Never saved."""
    phase: Phase = Phase.INIT
    tunnel_address: Optional[str] = None
    last_bound_address: Optional[str] = None
    pause_owned_by_monitor: bool = False


@dataclass(frozen=True)
class Action:
    kind: str  # 'pause' | 'rebind' | 'resume'
    address: Optional[str] = None


PAUSE = Action('pause')
RESUME = Action('resume')


def rebind(address: str) -> Action:
    return Action('rebind', address)


@dataclass(frozen=True)
class Transition:
    phase: Phase
    tunnel_address: Optional[str]
    actions: Tuple[Action, ...] = ()
    pause_owned: bool = False
    event: Optional[str] = None  # 'up' | 'lost' | 'restored' | 'changed'


def plan_transition(state: MonitorState, tunnel: Optional[TunnelState],
                    loopback: str = '127.0.0.1') -> Transition:
    """
    Decide what to do for one observation. Pure; touches nothing.
    """
    if tunnel is None:
        if state.phase is Phase.DOWN:
            actions = () if state.last_bound_address == loopback else (rebind(loopback),)
            return Transition(Phase.DOWN, None, actions, state.pause_owned_by_monitor)
        # INIT or UP: contain first, then move off the tunnel
        return Transition(Phase.DOWN, None, (PAUSE, rebind(loopback)), True, 'lost')

    address = tunnel.assigned_address

    if state.phase is Phase.DOWN:
        actions: Tuple[Action, ...] = (rebind(address),)
        if state.pause_owned_by_monitor:
            actions += (RESUME,)
        return Transition(Phase.UP, address, actions, False, 'restored')

    if state.phase is Phase.INIT:
        actions = () if state.last_bound_address == address else (rebind(address),)
        return Transition(Phase.UP, address, actions, False, 'up')

    # UP
    if address != state.tunnel_address:
        return Transition(Phase.UP, address, (rebind(address),), False, 'changed')
    if state.last_bound_address != address:
        # earlier rebind failed; try again
        return Transition(Phase.UP, address, (rebind(address),), False)
    return Transition(Phase.UP, address)


class VPNMonitor:
    """
    Polls for the tunnel and applies transitions.

    Single-threaded: at most one rebind is ever in flight.
    """

    def __init__(self, detector, enforcer, controller,
                 poll_interval: float = 5, cooldown: float = 10,
                 loopback: str = '127.0.0.1',
                 audit_logger: Optional[AuditLogger] = None,
                 notifier: Callable[[str, str], object] = notify):
        """
        Args:
            detector: object with find_tunnel() -> Optional[TunnelState]
            enforcer: object with apply(address) -> bool
            controller: object with pause_all() / resume_all()
            poll_interval: Seconds between polls
            cooldown: Extra seconds to wait after a successful rebind
            audit_logger: Audit logger instance
        """
        self.detector = detector
        self.enforcer = enforcer
        self.controller = controller
        self.poll_interval = poll_interval
        self.cooldown = cooldown
        self.loopback = loopback
        self.audit_logger = audit_logger
        self.notifier = notifier
        self.state = MonitorState()
        self._stop = threading.Event()
        self._wake = threading.Event()

    # -- loop ---------------------------------------------------------------

    def run(self, max_ticks: Optional[int] = None):
        """
        Poll until stopped. A stop request takes effect at the next poll
        boundary; a rebind in progress always completes.
        """
        logger.info("VPN monitor starting (poll %ss, cool-down %ss)",
                    self.poll_interval, self.cooldown)
        ticks = 0
        while not self._stop.is_set():
            rebound = self.tick()
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            if rebound and self.cooldown > 0:
                self._stop.wait(self.cooldown)
            self._wake.wait(self.poll_interval)
            self._wake.clear()
        logger.info("VPN monitor stopped")

    def request_stop(self):
        self._stop.set()
        self._wake.set()

    def wake(self):
        """Poll now instead of at the next tick."""
        self._wake.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    # -- one poll -----------------------------------------------------------

    def tick(self) -> bool:
        """
        Observe once and act.

        Returns:
            True if a rebind succeeded during this tick
        """
        tunnel = self.detector.find_tunnel()
        transition = plan_transition(self.state, tunnel, self.loopback)
        previous = self.state.phase

        rebound = False
        for action in transition.actions:
            if action.kind == 'pause':
                self._client_command('pause-all', self.controller.pause_all)
            elif action.kind == 'resume':
                self._client_command('resume-all', self.controller.resume_all)
            elif action.kind == 'rebind':
                if self._rebind(action.address):
                    rebound = True

        self.state.phase = transition.phase
        self.state.tunnel_address = transition.tunnel_address
        self.state.pause_owned_by_monitor = transition.pause_owned

        if transition.event:
            self._report(transition, previous, tunnel)
        return rebound

    def _rebind(self, address: str) -> bool:
        for attempt in (1, 2):
            try:
                ok = self.enforcer.apply(address)
            except Exception as e:
                logger.error("Rebind to %s raised: %s", address, e)
                ok = False
            if ok:
                self.state.last_bound_address = address
                return True
            logger.warning("Rebind to %s failed (attempt %d)", address, attempt)
        logger.error("Rebind to %s abandoned; firewall remains the backstop", address)
        return False

    def _client_command(self, name: str, fn: Callable[[], object]) -> bool:
        try:
            fn()
        except Exception as e:
            logger.error("Client %s failed: %s", name, e)
            if self.audit_logger:
                self.audit_logger.log_client_command(name, False, str(e))
            return False
        if self.audit_logger:
            self.audit_logger.log_client_command(name, True)
        return True

    def _report(self, transition: Transition, previous: Phase, tunnel: Optional[TunnelState]):
        address = transition.tunnel_address
        if transition.event == 'lost':
            logger.warning("VPN DOWN detected - client paused and moved to %s", self.loopback)
            self.notifier("VPN Monitor", "VPN connection lost - transfers paused")
        elif transition.event == 'restored':
            logger.info("VPN RESTORED on %s with IP %s", tunnel.interface_id, address)
            self.notifier("VPN Monitor", f"VPN restored ({address})")
        elif transition.event == 'changed':
            logger.info("VPN IP changed to %s", address)
            self.notifier("VPN Monitor", f"VPN IP changed to {address}")
        else:
            logger.info("Initial VPN IP: %s (%s)", address, tunnel.interface_id)

        if self.audit_logger:
            self.audit_logger.log_tunnel_change(previous.value, transition.phase.value, address)


ROUTE_EVENTS = ('RTM_NEWADDR', 'RTM_DELADDR', 'RTM_IFINFO')


def is_interface_event(line: str) -> bool:
    """True for `route -n monitor` messages about addresses or interfaces."""
    return line.strip().startswith(ROUTE_EVENTS)


class RouteChangeTrigger:
    """
    Follows `route -n monitor` and calls `on_change` when an interface or
    address changes. It only wakes the monitor; all state handling stays
    on the monitor's thread.
    """

    def __init__(self, on_change: Callable[[], None],
                 command: Optional[List[str]] = None):
        self.on_change = on_change
        self.command = command or ['/sbin/route', '-n', 'monitor']
        self._proc: Optional[subprocess.Popen] = None
        self._thread: Optional[threading.Thread] = None

    def start(self):
        try:
            self._proc = subprocess.Popen(self.command, stdout=subprocess.PIPE,
                                          stderr=subprocess.DEVNULL, text=True)
        except OSError as e:
            logger.warning("Route monitor unavailable, using timer only: %s", e)
            return
        self._thread = threading.Thread(target=self._follow, daemon=True)
        self._thread.start()
        logger.info("Route change trigger started")

    def _follow(self):
        for line in self._proc.stdout:
            if is_interface_event(line):
                self.on_change()

    def stop(self):
        if self._proc and self._proc.poll() is None:
            self._proc.terminate()
            try:
                self._proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self._proc.kill()
        if self._thread:
            self._thread.join(timeout=5)
