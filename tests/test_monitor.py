"""
Test the VPN monitor state machine and poll loop.
"""
import threading

import pytest
from unittest.mock import Mock

from vpnguard.monitor import (
    PAUSE, RESUME, MonitorState, Phase, RouteChangeTrigger, VPNMonitor, is_interface_event,
    plan_transition, rebind,
)
from vpnguard.tunnel import TunnelState

from tests.conftest import FakeEnforcer


@pytest.fixture
def monitor(detector, enforcer, controller):
    return VPNMonitor(detector, enforcer, controller, poll_interval=0, cooldown=0,
                      notifier=Mock())


class TestPlanTransition:
    """Pure transition planning."""

    def test_init_without_tunnel_pauses_and_binds_loopback(self):
        t = plan_transition(MonitorState(), None)
        assert t.phase is Phase.DOWN
        assert t.actions == (PAUSE, rebind('127.0.0.1'))
        assert t.pause_owned
        assert t.event == 'lost'

    def test_down_without_tunnel_is_quiet_once_on_loopback(self):
        state = MonitorState(Phase.DOWN, None, '127.0.0.1', True)
        t = plan_transition(state, None)
        assert t.actions == ()
        assert t.pause_owned

    def test_down_without_tunnel_retries_loopback_bind(self):
        state = MonitorState(Phase.DOWN, None, '10.10.0.5', True)
        t = plan_transition(state, None)
        assert t.actions == (rebind('127.0.0.1'),)
        assert PAUSE not in t.actions

    def test_restore_resumes_only_when_monitor_paused(self):
        tunnel = TunnelState('utun3', '10.10.0.5')
        owned = plan_transition(MonitorState(Phase.DOWN, None, '127.0.0.1', True), tunnel)
        assert owned.actions == (rebind('10.10.0.5'), RESUME)
        assert not owned.pause_owned

        not_owned = plan_transition(MonitorState(Phase.DOWN, None, '127.0.0.1', False), tunnel)
        assert not_owned.actions == (rebind('10.10.0.5'),)

    def test_init_with_tunnel_already_bound_does_nothing(self):
        tunnel = TunnelState('utun3', '10.10.0.5')
        t = plan_transition(MonitorState(last_bound_address='10.10.0.5'), tunnel)
        assert t.phase is Phase.UP
        assert t.actions == ()

    def test_up_with_stale_binding_rebinds_without_event(self):
        tunnel = TunnelState('utun3', '10.10.0.5')
        state = MonitorState(Phase.UP, '10.10.0.5', '127.0.0.1', False)
        t = plan_transition(state, tunnel)
        assert t.actions == (rebind('10.10.0.5'),)
        assert t.event is None


class TestScenarios:
    """End-to-end monitor behaviour against fakes."""

    def test_cold_start_without_tunnel(self, monitor, enforcer, controller):
        monitor.tick()

        assert monitor.state.phase is Phase.DOWN
        assert controller.calls == ['pause']
        assert enforcer.applied == ['127.0.0.1']
        assert monitor.state.last_bound_address == '127.0.0.1'
        assert monitor.state.pause_owned_by_monitor

    def test_tunnel_appears_while_down(self, monitor, interfaces, enforcer, controller):
        monitor.tick()
        interfaces.tunnel_up('10.10.0.5')
        monitor.tick()

        assert monitor.state.phase is Phase.UP
        assert monitor.state.tunnel_address == '10.10.0.5'
        assert enforcer.applied[-1] == '10.10.0.5'
        assert controller.calls.count('resume') == 1
        assert not monitor.state.pause_owned_by_monitor

    def test_address_drift_while_up(self, monitor, interfaces, enforcer, controller):
        interfaces.tunnel_up('10.10.0.5')
        monitor.tick()
        interfaces.tunnel_up('10.10.0.9')
        monitor.tick()

        assert enforcer.applied == ['10.10.0.5', '10.10.0.9']
        assert controller.calls == []
        assert monitor.state.tunnel_address == '10.10.0.9'

    def test_drop_and_return_with_same_address(self, monitor, interfaces, enforcer, controller):
        interfaces.tunnel_up('10.10.0.5')
        monitor.tick()
        enforcer.applied.clear()

        interfaces.tunnel_down()
        monitor.tick()
        interfaces.tunnel_up('10.10.0.5')
        monitor.tick()

        assert controller.calls == ['pause', 'resume']
        assert enforcer.applied == ['127.0.0.1', '10.10.0.5']


class TestProperties:

    def test_unchanged_observation_is_idempotent(self, monitor, interfaces, enforcer, controller):
        interfaces.tunnel_up('10.10.0.5')
        monitor.tick()
        for _ in range(5):
            assert monitor.tick() is False

        assert enforcer.applied == ['10.10.0.5']
        assert controller.calls == []

    def test_repeated_down_pauses_once(self, monitor, enforcer, controller):
        for _ in range(4):
            monitor.tick()
        assert controller.calls == ['pause']
        assert enforcer.applied == ['127.0.0.1']

    def test_no_resume_without_monitor_pause(self, detector, controller, interfaces):
        enforcer = FakeEnforcer()
        monitor = VPNMonitor(detector, enforcer, controller, notifier=Mock())
        monitor.state = MonitorState(Phase.DOWN, None, '127.0.0.1', False)
        interfaces.tunnel_up('10.10.0.5')
        monitor.tick()
        assert controller.calls == []

    def test_failed_pause_still_binds_loopback(self, monitor, enforcer, controller):
        controller.fail = True
        monitor.tick()

        assert enforcer.applied == ['127.0.0.1']
        assert monitor.state.phase is Phase.DOWN
        assert monitor.state.pause_owned_by_monitor

    def test_rebind_retried_once_then_next_tick(self, detector, interfaces, controller):
        enforcer = FakeEnforcer(results=[False, False, True])
        monitor = VPNMonitor(detector, enforcer, controller, notifier=Mock())
        interfaces.tunnel_up('10.10.0.5')

        assert monitor.tick() is False
        assert enforcer.applied == ['10.10.0.5', '10.10.0.5']
        assert monitor.state.last_bound_address is None

        assert monitor.tick() is True
        assert len(enforcer.applied) == 3
        assert monitor.state.last_bound_address == '10.10.0.5'
        assert controller.calls == []

    def test_enforcer_exception_does_not_stop_monitor(self, detector, interfaces, controller):
        enforcer = Mock()
        enforcer.apply.side_effect = RuntimeError("boom")
        monitor = VPNMonitor(detector, enforcer, controller, notifier=Mock())
        interfaces.tunnel_up('10.10.0.5')

        assert monitor.tick() is False
        assert monitor.state.phase is Phase.UP
        assert enforcer.apply.call_count == 2

    def test_enumeration_failure_treated_as_down(self, monitor, interfaces, controller):
        interfaces.error = OSError("no interfaces")
        monitor.tick()
        assert monitor.state.phase is Phase.DOWN
        assert controller.calls == ['pause']

    def test_notifications_on_loss_and_restore(self, monitor, interfaces):
        monitor.tick()
        interfaces.tunnel_up('10.10.0.5')
        monitor.tick()

        titles = [c.args[1] for c in monitor.notifier.call_args_list]
        assert titles[0] == "VPN connection lost - transfers paused"
        assert titles[1] == "VPN restored (10.10.0.5)"

    def test_audit_records_tunnel_changes(self, detector, enforcer, controller):
        audit = Mock()
        monitor = VPNMonitor(detector, enforcer, controller, audit_logger=audit, notifier=Mock())
        monitor.tick()
        audit.log_tunnel_change.assert_called_once_with('init', 'down', None)
        audit.log_client_command.assert_called_once_with('pause-all', True)


class TestRunLoop:

    def test_run_stops_after_max_ticks(self, monitor, enforcer):
        monitor.run(max_ticks=3)
        assert monitor.state.phase is Phase.DOWN
        assert enforcer.applied == ['127.0.0.1']

    def test_request_stop_ends_loop(self, monitor):
        monitor.request_stop()
        monitor.run()
        assert monitor.stopping
        assert monitor.state.phase is Phase.INIT

    def test_cooldown_only_after_successful_rebind(self, detector, interfaces, enforcer, controller):
        monitor = VPNMonitor(detector, enforcer, controller, poll_interval=0, cooldown=10,
                             notifier=Mock())
        monitor._stop.wait = Mock(return_value=False)
        interfaces.tunnel_up('10.10.0.5')

        monitor.run(max_ticks=3)

        assert enforcer.applied == ['10.10.0.5']
        monitor._stop.wait.assert_called_once_with(10)

    def test_no_cooldown_after_failed_rebind(self, detector, interfaces, controller):
        enforcer = FakeEnforcer(results=[False, False, False, False])
        monitor = VPNMonitor(detector, enforcer, controller, poll_interval=0, cooldown=10,
                             notifier=Mock())
        monitor._stop.wait = Mock(return_value=False)
        interfaces.tunnel_up('10.10.0.5')

        monitor.run(max_ticks=2)

        assert len(enforcer.applied) == 4
        monitor._stop.wait.assert_not_called()

    def test_wake_cuts_poll_short(self, monitor):
        monitor.poll_interval = 60
        monitor.wake()
        monitor.run(max_ticks=2)
        assert monitor.state.phase is Phase.DOWN


class TestRouteEvents:

    def test_interface_events(self):
        assert is_interface_event("RTM_NEWADDR: address being added to iface")
        assert is_interface_event("RTM_DELADDR: address being removed from iface")
        assert is_interface_event("RTM_IFINFO: iface status change")
        assert not is_interface_event("RTM_GET: Report Metrics")
        assert not is_interface_event("")


class TestRouteChangeTrigger:

    def test_address_event_fires(self):
        fired = threading.Event()
        trigger = RouteChangeTrigger(fired.set, command=['printf', 'RTM_NEWADDR: x\n'])
        trigger.start()
        try:
            assert fired.wait(5)
        finally:
            trigger.stop()

    def test_other_messages_ignored(self):
        on_change = Mock()
        trigger = RouteChangeTrigger(on_change, command=['printf', 'RTM_GET: Report Metrics\n'])
        trigger.start()
        trigger.stop()
        on_change.assert_not_called()

    def test_missing_command_leaves_timer_only(self):
        trigger = RouteChangeTrigger(Mock(), command=['/nonexistent/route', '-n', 'monitor'])
        trigger.start()
        assert trigger._thread is None
        trigger.stop()
