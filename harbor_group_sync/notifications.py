"""
Email notification utilities for Harbor LDAP Group Sync.

Sends email for failed or aborted sync runs and, optionally, a summary of
successful runs. Sending problems are logged and never interrupt a run.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any, Optional
from datetime import datetime

logger = logging.getLogger(__name__)

SUBJECT_PREFIX = "Harbor LDAP Group Sync"
FOOTER = "This is an automated message from Harbor LDAP Group Sync."
MAX_LISTED_ERRORS = 10


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

    smtp_server = config.get('smtp_server')
    smtp_port = config.get('smtp_port', 587)
    smtp_username = config.get('smtp_username')
    smtp_password = config.get('smtp_password')
    smtp_tls = config.get('smtp_tls', True)

    email_from = config.get('email_from', smtp_username)
    email_to = config.get('email_to', [])

    if not smtp_server:
        logger.error("SMTP server not configured")
        return False

    if not email_to:
        logger.error("No email recipients configured")
        return False

    if isinstance(email_to, str):
        email_to = [email_to]

    msg = MIMEMultipart()
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    try:
        logger.debug(f"Sending email to {len(email_to)} recipients via {smtp_server}:{smtp_port}")

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

    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False


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
        f"{SUBJECT_PREFIX} Failure Report",
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
        FOOTER
    ])

    return send_email(f"{SUBJECT_PREFIX} Alert: {title}", '\n'.join(body_lines), config)


def send_group_errors_notification(errors: List[str], config: Dict[str, Any], aborted: bool = False) -> bool:
    """
    Send notification listing the groups that failed to converge.

    Args:
        errors: Error messages, one per failed group operation
        config: Notification configuration
        aborted: Whether the run stopped early because of the errors

    Returns:
        True if notification sent successfully
    """
    body_lines = [f"Error Count: {len(errors)}", "", "Error Details:"]

    for i, error in enumerate(errors[:MAX_LISTED_ERRORS], 1):
        body_lines.append(f"  {i}. {error}")
    if len(errors) > MAX_LISTED_ERRORS:
        body_lines.append(f"  ... and {len(errors) - MAX_LISTED_ERRORS} more errors")

    if aborted:
        body_lines.extend(["", "The sync run was aborted due to excessive errors."])

    title = "Sync Aborted" if aborted else "Group Sync Errors"
    return send_failure_notification(title, '\n'.join(body_lines), config)


def send_success_summary(sync_stats: Dict[str, Any], config: Dict[str, Any]) -> bool:
    """
    Send summary notification for successful sync.

    Args:
        sync_stats: Dictionary containing sync statistics
        config: Notification configuration

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    body_lines = [
        f"{SUBJECT_PREFIX} Summary Report",
        f"Timestamp: {timestamp}",
        "",
        "Sync completed successfully!",
        "",
        "Overall Statistics:",
        f"  Total runtime: {format_runtime(sync_stats.get('runtime_seconds', 0))}",
        f"  Groups declared: {sync_stats.get('groups_declared', 0)}",
        f"  Groups created: {sync_stats.get('groups_created', 0)}",
        f"  Groups renamed: {sync_stats.get('groups_renamed', 0)}",
        f"  Groups deleted: {sync_stats.get('groups_deleted', 0)}",
        f"  Groups unchanged: {sync_stats.get('groups_unchanged', 0)}",
        f"  Total errors: {sync_stats.get('total_errors', 0)}",
        "",
        FOOTER
    ]

    return send_email(f"{SUBJECT_PREFIX}: Successful Completion", '\n'.join(body_lines), config)


def format_runtime(runtime_seconds: float) -> str:
    if runtime_seconds > 60:
        minutes = int(runtime_seconds // 60)
        seconds = runtime_seconds % 60
        return f"{minutes}m {seconds:.1f}s"
    return f"{runtime_seconds:.2f} seconds"
