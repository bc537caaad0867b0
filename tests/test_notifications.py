#!/usr/bin/env python3
"""
Unit tests for email notifications.
"""

import os
import sys
import smtplib
import unittest
from unittest.mock import MagicMock, patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.notifications import (
    send_directory_connection_failure, send_email, send_failure_notification,
    send_success_summary, send_sync_result_notification, send_test_notification
)
from directory_sync.reconciler import SyncRunResult


class TestSendEmail(unittest.TestCase):

    def setUp(self):
        self.config = {
            'enable_email': True,
            'email_on_failure': True,
            'email_on_success': False,
            'smtp_server': 'smtp.example.com',
            'smtp_port': 587,
            'smtp_tls': True,
            'smtp_username': 'alerts@example.com',
            'smtp_password': 'smtppass',
            'email_from': 'alerts@example.com',
            'email_to': ['admin@example.com', 'ops@example.com']
        }

    @patch('smtplib.SMTP')
    def test_send_with_tls_and_auth(self, mock_smtp):
        server = MagicMock()
        mock_smtp.return_value = server

        self.assertTrue(send_email('Subject', 'Body', self.config))

        mock_smtp.assert_called_once_with('smtp.example.com', 587)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with('alerts@example.com', 'smtppass')
        args = server.sendmail.call_args[0]
        self.assertEqual(args[0], 'alerts@example.com')
        self.assertEqual(args[1], ['admin@example.com', 'ops@example.com'])
        self.assertIn('Subject: Subject', args[2])
        server.quit.assert_called_once()

    @patch('smtplib.SMTP_SSL')
    def test_implicit_ssl_port(self, mock_smtp_ssl):
        self.config['smtp_port'] = 465
        server = MagicMock()
        mock_smtp_ssl.return_value = server

        self.assertTrue(send_email('Subject', 'Body', self.config))
        server.starttls.assert_not_called()

    @patch('smtplib.SMTP')
    def test_disabled(self, mock_smtp):
        self.config['enable_email'] = False

        self.assertFalse(send_email('Subject', 'Body', self.config))
        mock_smtp.assert_not_called()

    @patch('smtplib.SMTP')
    def test_missing_recipients(self, mock_smtp):
        self.config['email_to'] = []

        self.assertFalse(send_email('Subject', 'Body', self.config))
        mock_smtp.assert_not_called()

    @patch('smtplib.SMTP')
    def test_single_recipient_string(self, mock_smtp):
        server = MagicMock()
        mock_smtp.return_value = server
        self.config['email_to'] = 'admin@example.com'

        self.assertTrue(send_email('Subject', 'Body', self.config))
        self.assertEqual(server.sendmail.call_args[0][1], ['admin@example.com'])

    @patch('smtplib.SMTP')
    def test_send_error_still_quits(self, mock_smtp):
        server = MagicMock()
        server.sendmail.side_effect = smtplib.SMTPRecipientsRefused({})
        mock_smtp.return_value = server

        self.assertFalse(send_email('Subject', 'Body', self.config))
        server.quit.assert_called_once()

    @patch('smtplib.SMTP')
    def test_connection_error(self, mock_smtp):
        mock_smtp.side_effect = ConnectionRefusedError("refused")
        self.assertFalse(send_email('Subject', 'Body', self.config))


class TestSyncNotifications(unittest.TestCase):

    def setUp(self):
        self.config = {
            'enable_email': True,
            'email_on_failure': True,
            'email_on_success': False,
            'smtp_server': 'smtp.example.com',
            'email_to': ['admin@example.com']
        }

    @patch('directory_sync.notifications.send_email', return_value=True)
    def test_failed_run_sends_failure_report(self, mock_send):
        result = SyncRunResult(success=False, errors=["AD sync failed: boom"])

        self.assertTrue(send_sync_result_notification(result, self.config, 'Scheduled'))

        subject, body, _ = mock_send.call_args[0]
        self.assertEqual(subject, 'Directory Sync Alert: Sync Failed')
        self.assertIn('AD sync failed: boom', body)
        self.assertIn('Trigger: Scheduled', body)

    @patch('directory_sync.notifications.send_email', return_value=True)
    def test_completed_with_errors(self, mock_send):
        errors = [f"Failed to sync user 'user{i}': error" for i in range(12)]
        result = SyncRunResult(success=True, users_created=3, errors=errors)

        send_sync_result_notification(result, self.config)

        subject, body, _ = mock_send.call_args[0]
        self.assertEqual(subject, 'Directory Sync Alert: Sync Completed With Errors')
        self.assertIn("10. Failed to sync user 'user9'", body)
        self.assertNotIn("'user10'", body)
        self.assertIn('... and 2 more errors', body)
        self.assertIn('Users created: 3', body)

    @patch('directory_sync.notifications.send_email', return_value=True)
    def test_clean_run_not_sent_by_default(self, mock_send):
        result = SyncRunResult(success=True, users_created=1)

        self.assertFalse(send_sync_result_notification(result, self.config))
        mock_send.assert_not_called()

    @patch('directory_sync.notifications.send_email', return_value=True)
    def test_success_summary_when_enabled(self, mock_send):
        self.config['email_on_success'] = True
        result = SyncRunResult(success=True, users_created=4, users_deactivated=1)

        self.assertTrue(send_success_summary(result, self.config, 'Manual'))

        subject, body, _ = mock_send.call_args[0]
        self.assertEqual(subject, 'Directory Sync: Successful Completion')
        self.assertIn('Users created: 4', body)
        self.assertIn('Users deactivated: 1', body)

    @patch('directory_sync.notifications.send_email', return_value=True)
    def test_failure_emails_can_be_disabled(self, mock_send):
        self.config['email_on_failure'] = False

        self.assertFalse(send_failure_notification('Sync Failed', 'boom', self.config))
        mock_send.assert_not_called()

    @patch('directory_sync.notifications.send_email', return_value=True)
    def test_connection_failure(self, mock_send):
        send_directory_connection_failure('Failed to connect to directory after 3 attempts', self.config, 3)

        subject, body, _ = mock_send.call_args[0]
        self.assertEqual(subject, 'Directory Sync Alert: Directory Connection Failed')
        self.assertIn('Retry Attempts: 3', body)
        self.assertIn('no accounts were changed', body)

    @patch('directory_sync.notifications.send_email', return_value=False)
    def test_test_notification_reports_failure(self, mock_send):
        self.assertFalse(send_test_notification(self.config))
        self.assertIn('Recipients: admin@example.com', mock_send.call_args[0][1])


if __name__ == '__main__':
    unittest.main()
