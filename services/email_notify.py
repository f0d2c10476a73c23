"""
Email Notification Service for Pre-Trade Applications

Sends the approval-request email to the approver mailbox over SMTP.
Supports demo mode, where messages are recorded instead of sent.
"""

import smtplib
from collections import deque
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from datetime import datetime
from html import escape
from typing import Dict, Any, List, Optional, Tuple
from urllib.parse import quote

from .errors import NotifyFailed

logger = logging.getLogger(__name__)

DEFAULT_SENDER = 'Pre-Trade Applications <noreply@example.com>'

# Most recent demo-mode emails kept in memory
MAX_DEMO_EMAILS = 100


# =============================================================================
# EMAIL TEMPLATES
# =============================================================================

BASE_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
</head>
<body style="font-family: 'Segoe UI', Arial, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px;">
    <div style="background-color: #2c5f7e; color: white; padding: 30px; text-align: center; border-radius: 8px 8px 0 0;">
        <h1 style="margin: 0; font-size: 24px;">{heading}</h1>
    </div>

    {content}

    <div style="margin-top: 30px; padding-top: 20px; border-top: 1px solid #dee2e6; font-size: 12px; color: #6c757d; text-align: center;">
        <p><strong>Pre-Trade Application System</strong></p>
        <p>This is an automated message. Please do not reply to this email.</p>
    </div>
</body>
</html>
"""

TEMPLATES = {
    'approval_request': {
        'subject': 'New {application_type} Application for Approval - {client_name}',
        'heading': 'New Application Requires Approval',
        'content': """
        <h2 style="color: #2c5f7e; font-size: 18px;">Application Details</h2>

        <table style="width: 100%; border-collapse: collapse; margin-bottom: 20px; background-color: #f8f9fa; border-left: 4px solid #2c5f7e;">
            <tr>
                <td style="padding: 8px; width: 160px; color: #2c5f7e;"><strong>Client Name:</strong></td>
                <td style="padding: 8px;">{client_name}</td>
            </tr>
            <tr>
                <td style="padding: 8px; color: #2c5f7e;"><strong>Application Type:</strong></td>
                <td style="padding: 8px;">{application_type}</td>
            </tr>
            <tr>
                <td style="padding: 8px; color: #2c5f7e;"><strong>Submission Date:</strong></td>
                <td style="padding: 8px;">{submitted_at}</td>
            </tr>
            <tr>
                <td style="padding: 8px; color: #2c5f7e;"><strong>Folder Name:</strong></td>
                <td style="padding: 8px;">{client_folder}</td>
            </tr>
        </table>

        <p style="font-size: 16px;">A new {application_type_lower} application has been submitted and requires your review and approval.</p>

        <div style="text-align: center; margin: 30px 0;">
            <a href="{folder_link}" style="display: inline-block; background-color: #2c5f7e; color: white; padding: 14px 32px; margin: 8px; text-decoration: none; border-radius: 6px; font-weight: bold;">View Documents</a>
            <br>
            <a href="{approval_url}" style="display: inline-block; background-color: #28a745; color: white; padding: 14px 32px; margin: 8px; text-decoration: none; border-radius: 6px; font-weight: bold;">APPROVE APPLICATION</a>
        </div>

        <div style="background-color: #fff3cd; border-left: 4px solid #ffc107; padding: 15px; border-radius: 4px;">
            <strong>Important:</strong> Please review all documents before approving. Once approved,
            a Legal Approval PDF will be generated and saved to the client's folder.
        </div>
        """,
        'text': """New Application Requires Approval

Client Name: {client_name}
Application Type: {application_type}
Submission Date: {submitted_at}
Folder Name: {client_folder}

View documents: {folder_link}
Approve application: {approval_url}

Please review all documents before approving. Once approved, a Legal Approval
PDF will be generated and saved to the client's folder.
"""
    }
}


def _render_template(template_name: str, **kwargs) -> Tuple[str, str, str]:
    """
    Render an email template with the given variables.

    All string values are HTML-escaped to prevent XSS attacks.

    Returns:
        Tuple of (subject, html_body, text_body)
    """
    if template_name not in TEMPLATES:
        raise ValueError(f"Unknown template: {template_name}")

    template = TEMPLATES[template_name]

    escaped_kwargs = {}
    for key, value in kwargs.items():
        if isinstance(value, str):
            escaped_kwargs[key] = escape(value)
        else:
            escaped_kwargs[key] = value

    # Subject and text part are plain text, not HTML
    subject = template['subject'].format(**kwargs)
    text_body = template['text'].format(**kwargs)
    content = template['content'].format(**escaped_kwargs)
    html_body = BASE_TEMPLATE.format(heading=escape(template['heading']), content=content)

    return subject, html_body, text_body


def build_approval_url(base_url: str, client_folder: str) -> str:
    """Approval link for a client folder, as embedded in the email"""
    return f"{base_url.rstrip('/')}/api/approve?client={quote(client_folder, safe='')}"


def render_approval_request(
    client_name: str,
    application_type: str,
    folder_link: str,
    client_folder: str,
    approval_url: str,
    submitted_at: datetime
) -> Tuple[str, str, str]:
    """Build the approval-request email, returns (subject, html_body, text_body)"""
    return _render_template(
        'approval_request',
        client_name=client_name,
        application_type=application_type,
        application_type_lower=application_type.lower(),
        submitted_at=submitted_at.strftime('%A, %d %B %Y at %H:%M'),
        client_folder=client_folder,
        folder_link=folder_link,
        approval_url=approval_url
    )


class EmailNotifier:
    """Sends notifications to the approver mailbox fixed by configuration"""

    def __init__(
        self,
        recipient: str,
        host: str = '',
        port: int = 587,
        user: str = '',
        password: str = '',
        sender: str = DEFAULT_SENDER,
        use_tls: bool = True,
        demo_mode: bool = False
    ):
        self.recipient = recipient
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender
        self.use_tls = use_tls
        self.demo_mode = demo_mode
        # Emails recorded in demo mode, oldest dropped first
        self.sent_emails = deque(maxlen=MAX_DEMO_EMAILS)

    @classmethod
    def from_config(cls, config) -> 'EmailNotifier':
        return cls(
            recipient=config.get('NOTIFICATION_APPROVER_EMAIL', ''),
            host=config.get('SMTP_HOST', ''),
            port=config.get('SMTP_PORT', 587),
            user=config.get('SMTP_USER', ''),
            password=config.get('SMTP_PASSWORD', ''),
            sender=config.get('SMTP_FROM') or DEFAULT_SENDER,
            use_tls=config.get('SMTP_USE_TLS', True),
            demo_mode=config.get('DEMO_MODE', False)
        )

    def get_sent_emails(self) -> List[Dict[str, Any]]:
        """Emails recorded in demo mode (for testing)."""
        return list(self.sent_emails)

    def clear_sent_emails(self):
        """Clear emails recorded in demo mode (for testing)."""
        self.sent_emails.clear()

    def notify(self, subject: str, html_body: str, text_body: Optional[str] = None) -> None:
        """
        Send one email to the approver.

        Raises:
            NotifyFailed: If the mailer is not configured or sending fails
        """
        if self.demo_mode:
            self.sent_emails.append({
                'to': [self.recipient],
                'subject': subject,
                'html_body': html_body,
                'text_body': text_body,
                'sent_at': datetime.now().isoformat(),
                'demo_mode': True
            })
            logger.info("[DEMO] Email would be sent:")
            logger.info(f"  To: {self.recipient}")
            logger.info(f"  Subject: {subject}")
            return

        if not self.recipient:
            raise NotifyFailed('No approver email configured')
        if not self.host:
            raise NotifyFailed('SMTP is not configured')

        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = self.sender
        msg['To'] = self.recipient

        if text_body:
            msg.attach(MIMEText(text_body, 'plain'))
        msg.attach(MIMEText(html_body, 'html'))

        try:
            with smtplib.SMTP(self.host, self.port) as server:
                if self.use_tls:
                    server.starttls()
                if self.user:
                    server.login(self.user, self.password)
                server.sendmail(self.sender, [self.recipient], msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP error sending email: {e}")
            raise NotifyFailed(f'SMTP error: {e}') from e

        logger.info(f"Email sent to {self.recipient}: {subject}")
