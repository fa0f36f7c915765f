"""Notifier storage and email forwarding."""

from unittest.mock import MagicMock, patch

import pytest

from trading_scanner.alerts import AlertSender, Notifier
from trading_scanner.config import TradingMode


@pytest.fixture
def sender():
    s = MagicMock()
    s.is_configured.return_value = True
    return s


def test_notification_is_stored(store, sender):
    notifier = Notifier(store, sender, TradingMode.PAPER)

    record = notifier.notify('success', 'Order Submitted', 'BUY 5 AAPL', symbol='AAPL')

    assert record['related_symbol'] == 'AAPL'
    assert store.list_notifications()[0]['title'] == 'Order Submitted'
    sender.send_error_alert.assert_not_called()


def test_errors_are_emailed(store, sender):
    Notifier(store, sender, TradingMode.PAPER).notify('error', 'Auto-Sell Failed', 'boom', symbol='TSLA')
    sender.send_error_alert.assert_called_once_with('Auto-Sell Failed', 'boom', 'TSLA')


def test_disabled_notifications_are_not_stored(store, sender):
    store.set_app_setting('notifications_enabled', 'false')

    assert Notifier(store, sender, TradingMode.PAPER).notify('error', 'Scan Error', 'x') is None
    assert store.list_notifications() == []
    sender.send_error_alert.assert_not_called()


def test_unknown_type_rejected(store, sender):
    with pytest.raises(ValueError):
        Notifier(store, sender, TradingMode.PAPER).notify('panic', 'x', 'y')


# ─── AlertSender ─────────────────────────────────────────────────────────────

@patch('trading_scanner.alerts.config')
def test_first_recipient_used(mock_config):
    mock_config.GMAIL_USER = 'bot@example.com'
    mock_config.GMAIL_APP_PASSWORD = 'secret'
    mock_config.RECIPIENT_EMAIL = '"ops@example.com, desk@example.com"'
    mock_config.resolve_trading_mode.return_value = TradingMode.LIVE

    sender = AlertSender(TradingMode.LIVE)

    assert sender.recipient == 'ops@example.com'
    assert sender.is_configured()
    assert sender._get_mode_indicator()[1] == 'LIVE TRADING'


@patch('trading_scanner.alerts.smtplib.SMTP_SSL')
@patch('trading_scanner.alerts.config')
def test_send_alert_uses_smtp(mock_config, mock_smtp):
    mock_config.GMAIL_USER = 'bot@example.com'
    mock_config.GMAIL_APP_PASSWORD = 'secret'
    mock_config.RECIPIENT_EMAIL = 'ops@example.com'
    mock_config.resolve_trading_mode.return_value = TradingMode.PAPER

    assert AlertSender().send_error_alert('Trade Error', 'rejected', 'AAPL')

    server = mock_smtp.return_value.__enter__.return_value
    server.login.assert_called_once_with('bot@example.com', 'secret')
    assert server.sendmail.call_args.args[1] == 'ops@example.com'
