"""
Test daemon identity provisioning helpers.
"""
from pathlib import Path
from unittest.mock import patch

import pytest

from vpnguard.identity import (
    IdentityProvisioner, SetupError, acl_path_chain, find_free_id, parse_id_listing,
)

from tests.conftest import completed

USERS = """_www                     70
_transmission_old        250
_spotlight               89
daemon                   1
alice                    501
"""

GROUPS = """_www                     70
staff                    20
_custom                  251
"""


class TestIdAllocation:

    def test_parse(self):
        assert parse_id_listing(USERS) == {70, 250, 89, 1, 501}

    def test_parse_skips_noise(self):
        assert parse_id_listing("header\nname notanumber\nbob 502\n") == {502}

    def test_first_id_free_as_uid_and_gid(self):
        assert find_free_id(USERS, GROUPS, 250, 400) == 252

    def test_range_exhausted(self):
        listing = '\n'.join(f"u{i} {i}" for i in range(250, 256))
        with pytest.raises(SetupError):
            find_free_id(listing, '', 250, 255)


class TestAclChain:

    def test_chain(self):
        chain = acl_path_chain(Path('/Users/alice'), Path('/Users/alice/Downloads/torrents'))
        assert chain == [Path('/Users/alice'), Path('/Users/alice/Downloads'),
                         Path('/Users/alice/Downloads/torrents')]

    def test_target_outside_base(self):
        with pytest.raises(ValueError):
            acl_path_chain(Path('/Users/alice'), Path('/tmp/watch'))


class TestProvisioner:

    @patch('vpnguard.identity.run_command')
    def test_existing_account(self, mock_run):
        mock_run.return_value = completed("UniqueID: 262\n")
        identity = IdentityProvisioner('_transmission', Path('/var/lib/transmission')).ensure()
        assert identity.uid == 262
        assert mock_run.call_count == 1

    @patch('vpnguard.identity.run_command')
    def test_create_account(self, mock_run):
        def dscl(args, **kwargs):
            if args[2] == '-read':
                return completed(returncode=56, stderr='eDSRecordNotFound')
            if args[2:4] == ['-list', '/Users']:
                return completed(USERS)
            if args[2:4] == ['-list', '/Groups']:
                return completed(GROUPS)
            return completed()

        mock_run.side_effect = dscl
        identity = IdentityProvisioner('_transmission', Path('/var/lib/transmission')).ensure()

        assert identity.uid == 252
        writes = [c.args[0][3:] for c in mock_run.call_args_list if c.args[0][2] == '-create']
        assert ['/Users/_transmission', 'UserShell', '/usr/bin/false'] in writes
        assert ['/Users/_transmission', 'IsHidden', '1'] in writes
        assert ['/Groups/_transmission', 'PrimaryGroupID', '252'] in writes

    @patch('vpnguard.identity.run_command')
    def test_directory_service_failure(self, mock_run):
        def dscl(args, **kwargs):
            if args[2] == '-read':
                return completed(returncode=56)
            return completed(returncode=1, stderr='permission denied')

        mock_run.side_effect = dscl
        with pytest.raises(SetupError, match='permission denied'):
            IdentityProvisioner('_transmission', Path('/var/lib/transmission')).ensure()

    @patch('vpnguard.identity.run_command', return_value=completed())
    def test_grant_read_access(self, mock_run, tmp_path):
        target = tmp_path / 'Downloads' / 'torrents'
        target.mkdir(parents=True)
        granted = IdentityProvisioner('_transmission', tmp_path).grant_read_access(tmp_path, target)

        assert granted == [tmp_path, tmp_path / 'Downloads', target]
        rights = [c.args[0][2] for c in mock_run.call_args_list]
        assert rights[0] == '_transmission allow read,execute,search'
        assert rights[-1] == '_transmission allow read,execute,search,list'

    @patch('vpnguard.identity.run_command', return_value=completed())
    def test_grant_skips_missing(self, mock_run, tmp_path):
        granted = IdentityProvisioner('_transmission', tmp_path).grant_read_access(
            tmp_path, tmp_path / 'Downloads')
        assert granted == [tmp_path]

    @patch('vpnguard.identity.run_command')
    def test_create_in_shared_group(self, mock_run):
        def dscl(args, **kwargs):
            if args[2] == '-read':
                return completed(returncode=56)
            if args[2] == '-list':
                return completed(USERS if args[3] == '/Users' else GROUPS)
            return completed()

        mock_run.side_effect = dscl
        provisioner = IdentityProvisioner('_pftest', Path('/tmp'), 'PF Filter Test',
                                          id_range=(299, 299), primary_group=20)
        identity = provisioner.create()

        assert identity.uid == 299
        writes = [c.args[0][3:] for c in mock_run.call_args_list if c.args[0][2] == '-create']
        assert ['/Users/_pftest', 'PrimaryGroupID', '20'] in writes
        assert not any(w[0].startswith('/Groups/') for w in writes)

    @patch('vpnguard.identity.run_command', return_value=completed())
    def test_delete(self, mock_run):
        assert IdentityProvisioner('_transmission', Path('/var/lib/transmission')).delete()
        deleted = [c.args[0][3] for c in mock_run.call_args_list]
        assert deleted == ['/Users/_transmission', '/Groups/_transmission']

    @patch('vpnguard.identity.run_command', return_value=completed(returncode=56))
    def test_delete_missing_user(self, mock_run):
        provisioner = IdentityProvisioner('_pftest', Path('/tmp'), primary_group=20)
        assert not provisioner.delete()
        assert mock_run.call_count == 1
