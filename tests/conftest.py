"""
Shared fakes for the OS-facing seams.
"""
import subprocess

import pytest

from vpnguard.tunnel import TunnelDetector


class FakeInterfaces:
    """Interface provider backed by a plain dict."""

    def __init__(self, interfaces=None):
        self.interfaces = dict(interfaces or {})
        self.error = None

    def __call__(self):
        if self.error:
            raise self.error
        return self.interfaces

    def tunnel_up(self, address, name='utun3'):
        self.interfaces[name] = [address]

    def tunnel_down(self, name='utun3'):
        self.interfaces.pop(name, None)


class FakeEnforcer:
    """Records requested bind addresses; results are popped from `results`."""

    def __init__(self, results=None):
        self.applied = []
        self.results = list(results or [])

    def apply(self, address):
        self.applied.append(address)
        if self.results:
            return self.results.pop(0)
        return True


class FakeController:
    def __init__(self):
        self.calls = []
        self.fail = False

    def pause_all(self):
        self.calls.append('pause')
        if self.fail:
            raise ConnectionError("control API unreachable")

    def resume_all(self):
        self.calls.append('resume')
        if self.fail:
            raise ConnectionError("control API unreachable")


class FakeFirewall:
    def __init__(self, active=True):
        self.active = active
        self.checks = 0

    def is_active(self):
        self.checks += 1
        return self.active

    def wait_until_active(self, timeout, interval=5):
        return self.is_active()


class FakeClock:
    """Monotonic clock advanced only by sleep()."""

    def __init__(self):
        self.now = 1000.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def completed(stdout='', returncode=0, stderr=''):
    return subprocess.CompletedProcess([], returncode, stdout, stderr)


@pytest.fixture
def interfaces():
    return FakeInterfaces({'lo0': ['127.0.0.1'], 'en0': ['192.168.1.20']})


@pytest.fixture
def detector(interfaces):
    return TunnelDetector('utun', 16, provider=interfaces)


@pytest.fixture
def enforcer():
    return FakeEnforcer()


@pytest.fixture
def controller():
    return FakeController()


@pytest.fixture
def clock():
    return FakeClock()
