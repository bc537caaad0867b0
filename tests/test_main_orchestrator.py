#!/usr/bin/env python3
"""
Unit tests for the main sync orchestrator.

Runs the orchestrator against a temporary SQLite database with the directory
client mocked out.
"""

import os
import sys
import shutil
import tempfile
import unittest
from unittest.mock import MagicMock, Mock, patch

import yaml
from sqlalchemy import select

# Add parent directory to path to import directory_sync modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.database import create_db_engine, create_session_factory
from directory_sync.ldap_client import DirectoryMember, GroupNotFoundError, LDAPConnectionError
from directory_sync.main import (
    SyncOrchestrator, EXIT_SUCCESS, EXIT_COMPLETED_WITH_ERRORS,
    EXIT_CONFIGURATION_ERROR, EXIT_DIRECTORY_UNREACHABLE
)
from directory_sync.models import ActivityLog, LocalUser, Role
from directory_sync.reconciler import SyncRunResult
from directory_sync.store import UserStoreError


class TestSyncOrchestrator(unittest.TestCase):
    """Test cases for SyncOrchestrator class."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp(prefix='directory_sync_test_')
        self.db_url = f"sqlite:///{os.path.join(self.temp_dir, 'test.db')}"
        self.test_config = {
            'active_directory': {
                'enabled': True,
                'server_url': 'ldap://dc01.example.com',
                'domain': 'example.com',
                'bind_dn': 'CN=svc-sync,OU=Service,DC=example,DC=com',
                'bind_password': 'test_password'
            },
            'group_mappings': [
                {'group': 'Lost Found Admins', 'role': 'Admin'},
                {'group': 'Lost Found Staff', 'role': 'User'}
            ],
            'database': {'url': self.db_url},
            'logging': {'level': 'INFO', 'log_dir': os.path.join(self.temp_dir, 'logs')},
            'error_handling': {'max_retries': 0, 'retry_wait_seconds': 0},
            'notifications': {'enable_email': False}
        }

        logging_patcher = patch('directory_sync.main.setup_logging')
        logging_patcher.start()
        self.addCleanup(logging_patcher.stop)

        provider_patcher = patch('directory_sync.reconciler.DirectoryProvider')
        self.mock_provider_class = provider_patcher.start()
        self.addCleanup(provider_patcher.stop)

        self.provider = MagicMock()
        self.provider.resolve_group_members.side_effect = self.resolve_group
        self.mock_provider_class.return_value.__enter__.return_value = self.provider
        self.groups = {
            'Lost Found Admins': [DirectoryMember('jdoe', 'Jane Doe', 'jane.doe@example.com')],
            'Lost Found Staff': [DirectoryMember('jdoe', 'Jane Doe'), DirectoryMember('bsmith', 'Bob Smith')]
        }

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def resolve_group(self, group_name):
        if group_name not in self.groups:
            raise GroupNotFoundError(f"AD group '{group_name}' not found in directory.")
        return self.groups[group_name]

    def write_config(self) -> str:
        path = os.path.join(self.temp_dir, 'config.yaml')
        with open(path, 'w') as f:
            yaml.dump(self.test_config, f)
        return path

    def read_rows(self, model):
        engine = create_db_engine({'url': self.db_url})
        try:
            with create_session_factory(engine)() as session:
                return list(session.scalars(select(model).order_by(model.id)))
        finally:
            engine.dispose()

    def test_run_creates_users_and_records_activity(self):
        orchestrator = SyncOrchestrator(self.write_config())

        self.assertEqual(orchestrator.run(), EXIT_SUCCESS)

        users = {u.user_name: u for u in self.read_rows(LocalUser)}
        self.assertEqual(set(users), {'jdoe', 'bsmith'})
        self.assertEqual(users['jdoe'].role, Role.ADMIN)
        self.assertEqual(users['bsmith'].role, Role.USER)

        entries = self.read_rows(ActivityLog)
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].action, 'AD Sync')
        self.assertEqual(entries[0].category, 'ADSync')
        self.assertEqual(entries[0].performed_by, 'System (CLI)')
        self.assertTrue(entries[0].details.startswith('Sync completed. Created: 2'))

    def test_run_with_group_errors(self):
        del self.groups['Lost Found Staff']
        orchestrator = SyncOrchestrator(self.write_config())

        with patch('directory_sync.main.send_sync_result_notification') as mock_notify:
            self.assertEqual(orchestrator.run(), EXIT_COMPLETED_WITH_ERRORS)

        mock_notify.assert_called_once()
        self.assertEqual(len(self.read_rows(LocalUser)), 1)

    @patch('directory_sync.main.send_directory_connection_failure')
    def test_directory_unreachable(self, mock_notify):
        self.provider.connect.side_effect = LDAPConnectionError("Failed to connect to directory after 1 attempts")
        orchestrator = SyncOrchestrator(self.write_config())

        self.assertEqual(orchestrator.run(), EXIT_DIRECTORY_UNREACHABLE)

        mock_notify.assert_called_once()
        self.assertIn("AD sync failed", mock_notify.call_args[0][0])
        self.assertEqual(self.read_rows(LocalUser), [])
        self.assertEqual(self.read_rows(ActivityLog)[0].status, 'Failed')

    def test_missing_config_file(self):
        orchestrator = SyncOrchestrator(os.path.join(self.temp_dir, 'missing.yaml'))
        self.assertEqual(orchestrator.run(), EXIT_CONFIGURATION_ERROR)

    @patch('directory_sync.main.send_sync_result_notification')
    def test_disabled_integration(self, mock_notify):
        self.test_config['active_directory'] = {'enabled': False}
        orchestrator = SyncOrchestrator(self.write_config())

        self.assertEqual(orchestrator.run(), EXIT_CONFIGURATION_ERROR)
        mock_notify.assert_not_called()
        self.mock_provider_class.assert_not_called()

    def test_scheduled_run_is_recorded_as_scheduled(self):
        orchestrator = SyncOrchestrator(self.write_config())
        orchestrator.initialize()
        try:
            orchestrator._record_result(SyncRunResult(success=True), 'System (Scheduled)', 'Scheduled')
        finally:
            orchestrator._cleanup()

        entry = self.read_rows(ActivityLog)[0]
        self.assertEqual(entry.action, 'Scheduled AD Sync')
        self.assertEqual(entry.performed_by, 'System (Scheduled)')

    def test_validate_credentials_records_attempt(self):
        orchestrator = SyncOrchestrator(self.write_config())
        orchestrator.initialize()
        orchestrator.credential_validator = Mock()
        orchestrator.credential_validator.validate.side_effect = [False, True]
        try:
            self.assertFalse(orchestrator.validate_credentials('jdoe', 'wrong', ip_address='10.0.0.5'))
            self.assertTrue(orchestrator.validate_credentials('jdoe', 'Passw0rd!'))
        finally:
            orchestrator._cleanup()

        failed, succeeded = self.read_rows(ActivityLog)
        self.assertEqual(failed.action, 'AD Login Failed')
        self.assertEqual(failed.status, 'Failed')
        self.assertEqual(failed.category, 'Auth')
        self.assertEqual(failed.ip_address, '10.0.0.5')
        self.assertEqual(succeeded.action, 'AD Login')

    def test_group_mapping_administration(self):
        orchestrator = SyncOrchestrator(self.write_config())
        orchestrator.initialize()
        try:
            self.assertEqual([m['group'] for m in orchestrator.list_group_mappings()],
                             ['Lost Found Admins', 'Lost Found Staff'])

            orchestrator.add_group_mapping('Lost Found Supervisors', 'Supervisor')
            with self.assertRaises(UserStoreError):
                orchestrator.add_group_mapping('lost found supervisors', 'User')
            with self.assertRaises(UserStoreError):
                orchestrator.add_group_mapping('Owners', 'SuperAdmin')

            self.assertTrue(orchestrator.remove_group_mapping('Lost Found Staff'))
            self.assertFalse(orchestrator.remove_group_mapping('Lost Found Staff'))

            mappings = orchestrator.list_group_mappings()
        finally:
            orchestrator._cleanup()

        self.assertEqual([(m['group'], m['role']) for m in mappings],
                         [('Lost Found Admins', 'Admin'), ('Lost Found Supervisors', 'Supervisor')])
        actions = [e.action for e in self.read_rows(ActivityLog)]
        self.assertEqual(actions, ['Add AD Group', 'Remove AD Group'])

    def test_seeding_is_idempotent(self):
        path = self.write_config()
        for _ in range(2):
            orchestrator = SyncOrchestrator(path)
            orchestrator.initialize()
            mappings = orchestrator.list_group_mappings()
            orchestrator._cleanup()

        self.assertEqual(len(mappings), 2)

    def test_clear_activity_log(self):
        orchestrator = SyncOrchestrator(self.write_config())
        orchestrator.initialize()
        try:
            orchestrator.sync_now()
            self.assertEqual(orchestrator.clear_activity_log(), 1)
        finally:
            orchestrator._cleanup()

        entries = self.read_rows(ActivityLog)
        self.assertEqual([e.action for e in entries], ['Clear Logs'])

    def test_health_check_with_directory_disabled(self):
        self.test_config['active_directory'] = {'enabled': False}
        health = SyncOrchestrator(self.write_config()).health_check()

        self.assertEqual(health['status'], 'healthy')
        self.assertEqual(health['checks']['configuration']['status'], 'pass')
        self.assertEqual(health['checks']['database']['status'], 'pass')
        self.assertEqual(health['checks']['directory']['status'], 'skip')
        self.assertEqual(health['checks']['notifications']['status'], 'skip')

    @patch('directory_sync.main.DirectoryProvider')
    def test_health_check_directory_failure(self, mock_provider_class):
        provider = MagicMock()
        provider.test_connection.return_value = False
        mock_provider_class.return_value.__enter__.return_value = provider

        health = SyncOrchestrator(self.write_config()).health_check()

        self.assertEqual(health['status'], 'unhealthy')
        self.assertEqual(health['checks']['directory']['status'], 'fail')
        provider.test_connection.assert_called_once()
        provider.connect.assert_not_called()

    @patch('directory_sync.main.get_logging_stats')
    @patch('directory_sync.main.DirectoryProvider')
    def test_health_check_reports_log_files(self, mock_provider_class, mock_stats):
        provider = MagicMock()
        provider.test_connection.return_value = True
        mock_provider_class.return_value.__enter__.return_value = provider
        mock_stats.return_value = {
            'configured': True,
            'log_directory': 'logs',
            'retention_days': 7,
            'log_files_count': 3,
            'total_size_bytes': 2048
        }

        health = SyncOrchestrator(self.write_config()).health_check()

        self.assertEqual(health['status'], 'healthy')
        self.assertEqual(health['checks']['directory']['status'], 'pass')
        self.assertEqual(health['checks']['logging']['status'], 'pass')
        self.assertEqual(health['checks']['logging']['message'], '3 log files, 2048 bytes in logs')

    @patch('directory_sync.main.get_logging_stats')
    def test_health_check_without_file_logging(self, mock_stats):
        self.test_config['active_directory'] = {'enabled': False}
        mock_stats.return_value = {'configured': False, 'log_directory': None, 'retention_days': 7,
                                   'log_files_count': 0, 'total_size_bytes': 0}

        health = SyncOrchestrator(self.write_config()).health_check()

        self.assertEqual(health['status'], 'healthy')
        self.assertEqual(health['checks']['logging']['status'], 'skip')

    def test_health_check_bad_config(self):
        health = SyncOrchestrator(os.path.join(self.temp_dir, 'missing.yaml')).health_check()

        self.assertEqual(health['status'], 'unhealthy')
        self.assertEqual(health['checks']['configuration']['status'], 'fail')


if __name__ == '__main__':
    unittest.main()
