"""
Test client process control.
"""
from unittest.mock import Mock, patch

import psutil
import pytest

from vpnguard.process import ClientProcess

from tests.conftest import completed


def fake_proc(pid, conns=()):
    proc = Mock()
    proc.pid = pid
    proc.net_connections.return_value = list(conns)
    return proc


def listening(ip, port, status=psutil.CONN_LISTEN):
    return Mock(laddr=Mock(ip=ip, port=port), status=status)


@pytest.fixture
def client():
    return ClientProcess('transmission-daemon', ['launchctl', 'kickstart', 'system/x'],
                         stop_timeout=1, start_settle=0, sleep=Mock())


class TestBoundAddress:

    def test_single_ipv4_listener(self, client):
        proc = fake_proc(10, [listening('10.10.0.5', 40944), listening('::1', 40944),
                              listening('0.0.0.0', 19091)])
        with patch.object(client, 'processes', return_value=[proc]):
            assert client.effective_bind_address(40944) == '10.10.0.5'

    def test_established_connections_ignored(self, client):
        proc = fake_proc(10, [listening('10.10.0.5', 40944, psutil.CONN_ESTABLISHED)])
        with patch.object(client, 'processes', return_value=[proc]):
            assert client.effective_bind_address(40944) is None

    def test_ambiguous_listeners(self, client):
        proc = fake_proc(10, [listening('10.10.0.5', 40944), listening('127.0.0.1', 40944)])
        with patch.object(client, 'processes', return_value=[proc]):
            assert client.effective_bind_address(40944) is None

    def test_access_denied(self, client):
        proc = fake_proc(10)
        proc.net_connections.side_effect = psutil.AccessDenied(10)
        with patch.object(client, 'processes', return_value=[proc]):
            assert client.bound_addresses(40944) == set()


class TestStopStart:

    def test_stop_when_not_running(self, client):
        with patch.object(client, 'processes', return_value=[]):
            assert client.stop()

    @patch('vpnguard.process.psutil.wait_procs')
    def test_graceful_stop(self, mock_wait, client):
        proc = fake_proc(10)
        mock_wait.return_value = ([proc], [])
        with patch.object(client, 'processes', return_value=[proc]):
            assert client.stop()
        proc.terminate.assert_called_once()
        proc.kill.assert_not_called()

    @patch('vpnguard.process.psutil.wait_procs')
    def test_force_kill_after_timeout(self, mock_wait, client):
        proc = fake_proc(10)
        mock_wait.side_effect = [([], [proc]), ([proc], [])]
        with patch.object(client, 'processes', return_value=[proc]):
            assert client.stop()
        proc.kill.assert_called_once()

    @patch('vpnguard.process.psutil.wait_procs')
    def test_unkillable(self, mock_wait, client):
        proc = fake_proc(10)
        mock_wait.return_value = ([], [proc])
        with patch.object(client, 'processes', return_value=[proc]):
            assert not client.stop()

    @patch('vpnguard.process.run_command', return_value=completed())
    def test_start_retries_once(self, mock_run, client):
        with patch.object(client, 'pids', side_effect=[[], [42]]):
            assert client.start()
        assert mock_run.call_count == 2

    @patch('vpnguard.process.run_command', return_value=completed(returncode=1))
    def test_start_gives_up(self, mock_run, client):
        with patch.object(client, 'pids', return_value=[]):
            assert not client.start()
        assert mock_run.call_count == 2
