# trading_scanner/alerts.py
"""
Notifications and Email Alerts

Every automated outcome worth a human's attention becomes a stored
notification (info, success, warning, error) shown in the notification
center. Error notifications are additionally emailed when SMTP credentials
are configured. The mode label distinguishes LIVE from PAPER mail.
"""

import smtplib
import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional, Tuple

from . import config
from .config import TradingMode
from .models import NotificationType
from .utils import format_datetime_for_display, get_eastern_now, log_audit_event

logger = logging.getLogger(__name__)


COLORS = {
    'bg_main': '#0b1120',
    'bg_card': '#151e32',
    'text_main': '#f1f5f9',
    'text_muted': '#94a3b8',
    'danger': '#ff5252',
    'live_accent': '#ff9800',
    'paper_accent': '#38bdf8'
}


class AlertSender:
    """
    Sends email alerts over Gmail SMTP.
    """

    def __init__(self, trading_mode=None):
        self.gmail_user = config.GMAIL_USER
        self.gmail_password = config.GMAIL_APP_PASSWORD

        raw_recipient = config.RECIPIENT_EMAIL
        if raw_recipient:
            # First address only when several are given
            self.recipient = raw_recipient.strip().strip('"').strip("'").strip()
            for separator in (',', ';'):
                if separator in self.recipient:
                    self.recipient = self.recipient.split(separator)[0].strip()
        else:
            self.recipient = None

        self.is_live = config.resolve_trading_mode(trading_mode) == TradingMode.LIVE

    def _get_mode_indicator(self) -> Tuple[str, str, str]:
        """
        Get the trading mode indicator for emails.

        Returns:
            Tuple of (emoji, label, color)
        """
        if self.is_live:
            return ('💰', 'LIVE TRADING', COLORS['live_accent'])
        return ('🧪', 'PAPER TRADING', COLORS['paper_accent'])

    def is_configured(self) -> bool:
        return bool(self.gmail_user and self.gmail_password and self.recipient)

    def send_alert(self, subject: str, html_content: str, text_content: str) -> bool:
        """
        Send an email alert.

        Returns:
            True if sent successfully
        """
        if not self.is_configured():
            logger.debug("Email alerts not configured; skipping")
            return False

        if '@' not in self.recipient or ' ' in self.recipient:
            logger.error(f"Invalid recipient email format: '{self.recipient}'")
            return False

        try:
            msg = MIMEMultipart('alternative')
            msg['Subject'] = subject
            msg['From'] = self.gmail_user
            msg['To'] = self.recipient
            msg.attach(MIMEText(text_content, 'plain'))
            msg.attach(MIMEText(html_content, 'html'))

            with smtplib.SMTP_SSL('smtp.gmail.com', 465) as server:
                server.login(self.gmail_user, self.gmail_password)
                server.sendmail(self.gmail_user, self.recipient, msg.as_string())

            log_audit_event('ALERT_SENT', {'subject': subject, 'recipient': self.recipient})
            logger.info(f"✅ Alert sent successfully: {subject}")
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(f"❌ Gmail authentication failed - check GMAIL_USER and GMAIL_APP_PASSWORD: {e}")
            log_audit_event('ALERT_FAILED', {
                'subject': subject,
                'error': f"Authentication failed: {e}"
            }, outcome='ERROR')
            return False

        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"❌ Failed to send alert '{subject}' to {self.recipient}: {e}")
            log_audit_event('ALERT_FAILED', {
                'subject': subject,
                'recipient': self.recipient,
                'error': str(e)
            }, outcome='ERROR')
            return False

    def send_error_alert(self, title: str, message: str, symbol: Optional[str] = None) -> bool:
        """Email an error notification."""
        mode_emoji, mode_label, mode_color = self._get_mode_indicator()
        timestamp = format_datetime_for_display(get_eastern_now())
        subject = f"⚠️ {mode_emoji} {title}" + (f" - {symbol}" if symbol else "")

        html = f'''<html>
<body style="background:{COLORS['bg_main']};color:{COLORS['text_main']};font-family:Arial,sans-serif;">
  <div style="background:{COLORS['bg_card']};padding:20px;border-left:4px solid {COLORS['danger']};">
    <div style="color:{mode_color};font-size:12px;font-weight:bold;">{mode_label}</div>
    <h2 style="color:{COLORS['danger']};">{title}</h2>
    <p>{message}</p>
    <p style="color:{COLORS['text_muted']};font-size:12px;">{timestamp}</p>
  </div>
</body>
</html>'''

        text = f"""{'='*50}
⚠️ [{mode_label}] {title}
{'='*50}

{message}

Time: {timestamp}

{'='*50}
Trading Scanner - Automated Trading
"""
        return self.send_alert(subject, html, text)


class Notifier:
    """
    Records notifications in the store and forwards errors by email.
    """

    def __init__(self, store, alert_sender: Optional[AlertSender] = None, trading_mode=None):
        self.store = store
        self.trading_mode = config.resolve_trading_mode(trading_mode)
        self.alert_sender = alert_sender or AlertSender(self.trading_mode)

    def enabled(self) -> bool:
        return str(self.store.get_app_setting('notifications_enabled', 'true')).lower() != 'false'

    def notify(
        self,
        notification_type: str,
        title: str,
        message: str,
        profile_id: Optional[int] = None,
        symbol: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Store a notification and, for errors, email it.

        Returns:
            The stored notification, or None when notifications are disabled
        """
        notification_type = NotificationType(notification_type).value
        log = logger.error if notification_type == NotificationType.ERROR.value else logger.info
        log(f"[{notification_type.upper()}] {title}: {message}")

        if not self.enabled():
            return None

        record = self.store.add_notification(notification_type, title, message, profile_id, symbol)

        if notification_type == NotificationType.ERROR.value and self.alert_sender.is_configured():
            self.alert_sender.send_error_alert(title, message, symbol)

        return record


def create_notifier(store, trading_mode=None) -> Notifier:
    """Create and return a Notifier instance."""
    return Notifier(store, trading_mode=trading_mode)


if __name__ == '__main__':
    sender = AlertSender()
    print(f"Alert sender configured for: {config.TRADING_MODE} trading")
    print(f"Email alerts: {'ENABLED' if sender.is_configured() else 'DISABLED'}")
    print(f"Recipient: {sender.recipient}")
