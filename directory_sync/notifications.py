"""
Email notifications for Directory Group Sync.

Operators are mailed when a run cannot start (configuration or directory
authentication problems), when a job fails or records errors, and, if
``email_on_success`` is set, with the counters of every completed run.
All mail goes through :func:`send_email`, which never raises.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any, Optional, Tuple
from datetime import datetime

logger = logging.getLogger(__name__)

SUBJECT_PREFIX = "Directory Group Sync"
FOOTER = "This is an automated message from Directory Group Sync."
MAX_LISTED_ERRORS = 10

COUNTERS = (
    ('total_input', 'Input entries'),
    ('added', 'Added'),
    ('removed', 'Removed'),
    ('updated', 'Updated'),
    ('skipped', 'Skipped'),
    ('errors', 'Errors'),
)

Section = Tuple[str, List[str]]


def _format_runtime(runtime_seconds: float) -> str:
    if runtime_seconds > 60:
        return f"{int(runtime_seconds // 60)}m {runtime_seconds % 60:.1f}s"
    return f"{runtime_seconds:.2f} seconds"


def _recipients(config: Dict[str, Any]) -> List[str]:
    email_to = config.get('email_to') or []
    if isinstance(email_to, str):
        return [email_to]
    return list(email_to)


def _compose(heading: str, sections: List[Section], closing: Optional[List[str]] = None) -> str:
    """Lay out a plain text report: heading, timestamp, titled sections, footer."""
    lines = [heading, f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}", ""]
    for title, section_lines in sections:
        if title:
            lines.append(f"{title}:")
        lines.extend(section_lines)
        lines.append("")
    if closing:
        lines.extend(closing)
        lines.append("")
    lines.append(FOOTER)
    return '\n'.join(lines)


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send a plain text email.

    Port 465 uses implicit TLS; any other port uses STARTTLS unless
    ``smtp_tls`` is false.

    Args:
        subject: Email subject line
        body: Email body content
        config: The ``notifications`` configuration block

    Returns:
        True if the message was handed to the SMTP server
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

    smtp_server = config.get('smtp_server')
    smtp_port = config.get('smtp_port', 587)
    username = config.get('smtp_username')
    password = config.get('smtp_password')
    recipients = _recipients(config)
    sender = config.get('email_from', username)

    if not smtp_server:
        logger.error("SMTP server not configured")
        return False
    if not recipients:
        logger.error("No email recipients configured")
        return False

    msg = MIMEMultipart()
    msg['From'] = sender
    msg['To'] = ', '.join(recipients)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    logger.debug(f"Sending '{subject}' to {len(recipients)} recipients via {smtp_server}:{smtp_port}")
    try:
        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port)
            if config.get('smtp_tls', True):
                server.starttls()
        try:
            if username and password:
                server.login(username, password)
            server.sendmail(sender, recipients, msg.as_string())
        finally:
            server.quit()
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification '{subject}': {e}")
        return False

    logger.info(f"Email notification sent: {subject}")
    return True


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Mail a failure report.

    Args:
        title: Short failure description, used in the subject
        error_message: The error text
        config: Notification configuration
        additional_info: Extra key/value lines for the report

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    sections = [('', [f"Failure Type: {title}", f"Error Message: {error_message}"])]
    if additional_info:
        sections.append(('Additional Information', [f"  {key}: {value}" for key, value in additional_info.items()]))

    body = _compose(f"{SUBJECT_PREFIX} Failure Report", sections,
                    ["Please check the application logs for more detailed information."])
    return send_email(f"{SUBJECT_PREFIX} Alert: {title}", body, config)


def send_job_error_notification(job_name: str, errors: List[str], config: Dict[str, Any]) -> bool:
    """
    Mail the individual failures of a job that otherwise completed.

    Only the first MAX_LISTED_ERRORS messages are listed.
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    listed = [f"  {i}. {error}" for i, error in enumerate(errors[:MAX_LISTED_ERRORS], 1)]
    if len(errors) > MAX_LISTED_ERRORS:
        listed.append(f"  ... and {len(errors) - MAX_LISTED_ERRORS} more errors")

    body = _compose(
        f"{SUBJECT_PREFIX} Job Error Report",
        [('', [f"Job: {job_name}", f"Error Count: {len(errors)}"]), ('Error Details', listed)],
        ["All other changes of the job were applied.",
         "Check the application logs for complete error details."]
    )
    return send_email(f"{SUBJECT_PREFIX} Alert: {job_name} Errors", body, config)


def send_success_summary(run_stats: Dict[str, Any], config: Dict[str, Any]) -> bool:
    """
    Mail the counters of a completed run when ``email_on_success`` is set.

    Args:
        run_stats: ``SyncOrchestrator.run_stats``
        config: Notification configuration

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False

    totals = run_stats.get('totals', {})
    overall = [
        f"  Total runtime: {_format_runtime(run_stats.get('runtime_seconds', 0))}",
        f"  Jobs processed: {run_stats.get('jobs_processed', 0)}",
        f"  Jobs failed: {run_stats.get('jobs_failed', 0)}",
    ]
    overall.extend(f"  {label}: {totals.get(key, 0)}" for key, label in COUNTERS)
    sections = [('Overall Statistics', overall)]

    job_lines = []
    for job_name, job_stats in run_stats.get('job_details', {}).items():
        summary = job_stats.get('summary', {})
        job_lines.append(f"  {job_name} ({job_stats.get('status', 'unknown')}):")
        job_lines.append(f"    Runtime: {job_stats.get('runtime_seconds', 0):.2f}s")
        job_lines.extend(f"    {label}: {summary.get(key, 0)}" for key, label in COUNTERS[1:])
    if job_lines:
        sections.append(('Job Details', job_lines))

    body = _compose(f"{SUBJECT_PREFIX} Summary Report", sections)
    return send_email(f"{SUBJECT_PREFIX}: Run Completed", body, config)


def send_authentication_failure(directory_name: str, error_message: str, config: Dict[str, Any]) -> bool:
    """Mail that a directory rejected the configured credentials."""
    return send_failure_notification(
        "Directory Authentication Failed",
        error_message,
        config,
        {'Component': f'Directory {directory_name}', 'Impact': 'Sync aborted before any change was made'}
    )


def send_configuration_error(error_message: str, config_path: Optional[str], config: Dict[str, Any]) -> bool:
    """Mail a configuration error; ``config`` may be partial or empty."""
    return send_failure_notification(
        "Configuration Error",
        error_message,
        config,
        {
            'Component': 'Configuration',
            'Config Path': config_path or 'default',
            'Impact': 'Sync aborted before any change was made'
        }
    )


def test_notification_config(config: Dict[str, Any]) -> bool:
    """
    Send a test email with the configured settings.

    Returns:
        True if test email sent successfully
    """
    settings = [
        f"  SMTP Server: {config.get('smtp_server', 'not configured')}",
        f"  SMTP Port: {config.get('smtp_port', 'not configured')}",
        f"  From Address: {config.get('email_from', 'not configured')}",
        f"  Recipients: {', '.join(_recipients(config))}",
    ]
    body = _compose(
        f"{SUBJECT_PREFIX} Test Message",
        [('', ["If you receive this message, email notifications are configured correctly."]),
         ('Settings', settings)]
    )

    result = send_email(f"{SUBJECT_PREFIX}: Configuration Test", body, config)
    if result:
        logger.info("Test notification sent successfully")
    else:
        logger.error("Test notification failed")
    return result
