#!/usr/bin/env python3
"""
Unit tests for email notifications.
"""

import os
import sys
import smtplib
import unittest
from unittest.mock import patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.notifications import (
    send_email, send_failure_notification, send_job_error_notification,
    send_success_summary, test_notification_config as check_notification_config
)


class TestNotifications(unittest.TestCase):
    """Test cases for the notification helpers."""

    def setUp(self):
        self.config = {
            'enable_email': True,
            'email_on_failure': True,
            'email_on_success': True,
            'smtp_server': 'smtp.example.com',
            'smtp_port': 587,
            'smtp_tls': True,
            'smtp_username': 'alerts@example.com',
            'smtp_password': 'password123',
            'email_from': 'alerts@example.com',
            'email_to': ['admin@example.com']
        }

    @patch('directory_sync.notifications.smtplib.SMTP')
    def test_send_email_with_tls_and_auth(self, mock_smtp):
        server = mock_smtp.return_value

        self.assertTrue(send_email('Subject', 'Body', self.config))

        mock_smtp.assert_called_once_with('smtp.example.com', 587)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with('alerts@example.com', 'password123')
        from_addr, to_addrs, message = server.sendmail.call_args[0]
        self.assertEqual(to_addrs, ['admin@example.com'])
        self.assertIn('Subject: Subject', message)
        server.quit.assert_called_once()

    @patch('directory_sync.notifications.smtplib.SMTP_SSL')
    def test_send_email_over_ssl_port(self, mock_smtp_ssl):
        self.config['smtp_port'] = 465
        self.config['email_to'] = 'single@example.com'
        self.assertTrue(send_email('Subject', 'Body', self.config))
        mock_smtp_ssl.assert_called_once_with('smtp.example.com', 465)

    def test_disabled(self):
        self.config['enable_email'] = False
        self.assertFalse(send_email('Subject', 'Body', self.config))

    def test_missing_server(self):
        del self.config['smtp_server']
        self.assertFalse(send_email('Subject', 'Body', self.config))

    @patch('directory_sync.notifications.smtplib.SMTP')
    def test_smtp_failure_reported_as_false(self, mock_smtp):
        mock_smtp.return_value.login.side_effect = smtplib.SMTPAuthenticationError(535, b'bad credentials')
        self.assertFalse(send_email('Subject', 'Body', self.config))
        mock_smtp.return_value.quit.assert_called_once()

    @patch('directory_sync.notifications.send_email', return_value=True)
    def test_failure_notification(self, mock_send):
        self.assertTrue(send_failure_notification('Job Failed: x', 'boom', self.config, {'Component': 'Jobs'}))
        subject, body = mock_send.call_args[0][:2]
        self.assertEqual(subject, 'Directory Group Sync Alert: Job Failed: x')
        self.assertIn('Error Message: boom', body)
        self.assertIn('Component: Jobs', body)

    @patch('directory_sync.notifications.send_email', return_value=True)
    def test_failure_notification_disabled(self, mock_send):
        self.config['email_on_failure'] = False
        self.assertFalse(send_failure_notification('Job Failed: x', 'boom', self.config))
        mock_send.assert_not_called()

    @patch('directory_sync.notifications.send_email', return_value=True)
    def test_job_errors_truncated(self, mock_send):
        errors = [f"error {i}" for i in range(15)]
        send_job_error_notification('workspace-groups', errors, self.config)
        body = mock_send.call_args[0][1]
        self.assertIn('Error Count: 15', body)
        self.assertIn('10. error 9', body)
        self.assertNotIn('error 10\n', body)
        self.assertIn('... and 5 more errors', body)

    @patch('directory_sync.notifications.send_email', return_value=True)
    def test_success_summary(self, mock_send):
        run_stats = {
            'runtime_seconds': 75,
            'jobs_processed': 1,
            'jobs_failed': 0,
            'totals': {'added': 3, 'removed': 1, 'updated': 0, 'skipped': 2, 'errors': 0, 'total_input': 6},
            'job_details': {
                'workspace-groups': {
                    'status': 'completed',
                    'runtime_seconds': 75,
                    'summary': {'added': 3, 'removed': 1, 'updated': 0, 'skipped': 2, 'errors': 0}
                }
            }
        }
        self.assertTrue(send_success_summary(run_stats, self.config))
        body = mock_send.call_args[0][1]
        self.assertIn('Total runtime: 1m 15.0s', body)
        self.assertIn('workspace-groups (completed):', body)
        self.assertIn('Added: 3', body)

    @patch('directory_sync.notifications.send_email', return_value=True)
    def test_success_summary_disabled_by_default(self, mock_send):
        del self.config['email_on_success']
        self.assertFalse(send_success_summary({}, self.config))
        mock_send.assert_not_called()

    @patch('directory_sync.notifications.send_email', return_value=True)
    def test_notification_config_check(self, mock_send):
        self.assertTrue(check_notification_config(self.config))
        self.assertIn('smtp.example.com', mock_send.call_args[0][1])


if __name__ == '__main__':
    unittest.main()
