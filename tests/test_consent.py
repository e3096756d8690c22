"""
Test the proxy consent watcher.
"""
from unittest.mock import Mock, patch

from vpnguard.consent import ConsentWatcher


class ScriptedRunner:
    def __init__(self, results):
        self.results = list(results)
        self.scripts = []

    def __call__(self, script):
        self.scripts.append(script)
        return self.results.pop(0) if self.results else 'not_found'


class TestConsentWatcher:

    def test_known_host_clicked(self):
        runner = ScriptedRunner(['not_found', 'clicked:SystemUIServer'])
        watcher = ConsentWatcher(hosts=('UserNotificationCenter', 'SystemUIServer'), runner=runner)
        assert watcher.click_allow() == 'SystemUIServer'
        assert len(runner.scripts) == 2

    def test_falls_back_to_scan(self):
        runner = ScriptedRunner(['not_found', 'clicked:coreautha'])
        watcher = ConsentWatcher(hosts=('SecurityAgent',), runner=runner)
        assert watcher.click_allow() == 'coreautha'

    @patch('vpnguard.consent.notify')
    def test_run_until_clicked(self, mock_notify):
        sleep = Mock()
        runner = ScriptedRunner(['not_found'] * 4 + ['clicked:UserNotificationCenter'])
        watcher = ConsentWatcher(poll_interval=3, max_wait=300, hosts=('UserNotificationCenter',),
                                 runner=runner, sleep=sleep)

        assert watcher.run()
        assert sleep.call_count == 2
        mock_notify.assert_called_once()

    @patch('vpnguard.consent.notify')
    def test_gives_up_after_max_wait(self, mock_notify):
        sleep = Mock()
        watcher = ConsentWatcher(poll_interval=3, max_wait=9, runner=ScriptedRunner([]), sleep=sleep)
        assert not watcher.run()
        assert sleep.call_count == 3
        mock_notify.assert_not_called()
