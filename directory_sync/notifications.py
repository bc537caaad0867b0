"""
Email notification utilities for Directory Sync.

This module sends email notifications for failed sync runs, directory
connection failures and, optionally, successful run summaries.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any, Optional
from datetime import datetime

logger = logging.getLogger(__name__)

MAX_LISTED_ERRORS = 10


class NotificationError(Exception):
    """Exception raised when notification sending fails."""
    pass


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send email notification using SMTP.

    Args:
        subject: Email subject line
        body: Email body content
        config: Notification configuration dictionary

    Returns:
        True if email sent successfully, False otherwise
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

    try:
        smtp_server = config.get('smtp_server')
        smtp_port = config.get('smtp_port', 587)
        smtp_username = config.get('smtp_username')
        smtp_password = config.get('smtp_password')
        smtp_tls = config.get('smtp_tls', True)

        email_from = config.get('email_from', smtp_username)
        email_to = config.get('email_to', [])

        if not smtp_server:
            raise NotificationError("SMTP server not configured")

        if not email_to:
            raise NotificationError("No email recipients configured")

        if isinstance(email_to, str):
            email_to = [email_to]

        logger.debug(f"Sending email to {len(email_to)} recipients via {smtp_server}:{smtp_port}")

        msg = MIMEMultipart()
        msg['From'] = email_from
        msg['To'] = ', '.join(email_to)
        msg['Subject'] = subject
        msg.attach(MIMEText(body, 'plain'))

        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port)
            if smtp_tls:
                server.starttls()

        try:
            if smtp_username and smtp_password:
                server.login(smtp_username, smtp_password)
            server.sendmail(email_from, email_to, msg.as_string())
        finally:
            server.quit()

        logger.info(f"Email notification sent successfully: {subject}")
        return True

    except Exception as e:
        logger.error(f"Failed to send email notification: {e}")
        return False


def _format_errors(errors: List[str]) -> List[str]:
    lines = []
    for i, error in enumerate(errors[:MAX_LISTED_ERRORS], 1):
        lines.append(f"  {i}. {error}")
    if len(errors) > MAX_LISTED_ERRORS:
        lines.append(f"  ... and {len(errors) - MAX_LISTED_ERRORS} more errors")
    return lines


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Send notification for sync failures.

    Args:
        title: Failure title/type
        error_message: Error description
        config: Notification configuration
        additional_info: Optional additional context

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    body_lines = [
        "Directory Sync Failure Report",
        f"Timestamp: {timestamp}",
        "",
        f"Failure Type: {title}",
        f"Error Message: {error_message}",
        ""
    ]

    if additional_info:
        body_lines.append("Additional Information:")
        for key, value in additional_info.items():
            body_lines.append(f"  {key}: {value}")
        body_lines.append("")

    body_lines.extend([
        "Please check the application logs for more detailed information.",
        "",
        "This is an automated message from Directory Sync."
    ])

    return send_email(f"Directory Sync Alert: {title}", '\n'.join(body_lines), config)


def send_sync_result_notification(result, config: Dict[str, Any], trigger: str = 'Manual') -> bool:
    """
    Send the notification matching a finished sync run.

    Failed runs and runs with recorded errors go out as failure reports;
    clean runs are only sent when success summaries are enabled.

    Args:
        result: SyncRunResult of the run
        config: Notification configuration
        trigger: What started the run, e.g. 'Manual' or 'Scheduled'
    """
    if not result.success or result.errors:
        title = "Sync Failed" if not result.success else "Sync Completed With Errors"
        additional_info = {
            'Trigger': trigger,
            'Users created': result.users_created,
            'Users updated': result.users_updated,
            'Users deactivated': result.users_deactivated,
            'Roles changed': result.roles_changed,
            'Error count': len(result.errors),
        }
        message = '\n'.join(["", *_format_errors(result.errors)]) if result.errors else result.summary
        return send_failure_notification(title, message, config, additional_info)

    return send_success_summary(result, config, trigger)


def send_success_summary(result, config: Dict[str, Any], trigger: str = 'Manual') -> bool:
    """
    Send summary notification for a successful sync.

    Args:
        result: SyncRunResult of the run
        config: Notification configuration
        trigger: What started the run

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    runtime_seconds = result.runtime_seconds
    if runtime_seconds > 60:
        minutes = int(runtime_seconds // 60)
        seconds = runtime_seconds % 60
        runtime_str = f"{minutes}m {seconds:.1f}s"
    else:
        runtime_str = f"{runtime_seconds:.2f} seconds"

    body_lines = [
        "Directory Sync Summary Report",
        f"Timestamp: {timestamp}",
        f"Trigger: {trigger}",
        "",
        "Sync completed successfully!",
        "",
        f"  Total runtime: {runtime_str}",
        f"  Users created: {result.users_created}",
        f"  Users updated: {result.users_updated}",
        f"  Users deactivated: {result.users_deactivated}",
        f"  Roles changed: {result.roles_changed}",
        "",
        "This is an automated message from Directory Sync."
    ]

    return send_email("Directory Sync: Successful Completion", '\n'.join(body_lines), config)


def send_directory_connection_failure(
    error_message: str,
    config: Dict[str, Any],
    retry_count: int = 0
) -> bool:
    """
    Send notification for directory connection failures.

    Args:
        error_message: Directory error description
        config: Notification configuration
        retry_count: Number of retries attempted

    Returns:
        True if notification sent successfully
    """
    additional_info = {
        'Component': 'Directory Connection',
        'Retry Attempts': retry_count,
        'Impact': 'Sync aborted - no accounts were changed'
    }

    return send_failure_notification(
        "Directory Connection Failed",
        error_message,
        config,
        additional_info
    )


def send_test_notification(config: Dict[str, Any]) -> bool:
    """
    Test email notification configuration by sending a test email.

    Args:
        config: Notification configuration to test

    Returns:
        True if test email sent successfully
    """
    recipients = config.get('email_to', [])
    if isinstance(recipients, str):
        recipients = [recipients]

    test_body = """This is a test email from Directory Sync.

If you receive this message, your email notification configuration is working correctly.

Test details:
- SMTP Server: {}
- SMTP Port: {}
- From Address: {}
- Recipients: {}

This is an automated test message.""".format(
        config.get('smtp_server', 'not configured'),
        config.get('smtp_port', 'not configured'),
        config.get('email_from', 'not configured'),
        ', '.join(recipients)
    )

    result = send_email("Directory Sync: Configuration Test", test_body, config)
    if result:
        logger.info("Test notification sent successfully")
    else:
        logger.error("Test notification failed")
    return result
