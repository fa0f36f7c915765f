# trading_scanner/config.py
"""
Configuration for the Trading Scanner automation core

This module contains all configuration parameters for the scan/trade/monitor loop.
Values come from environment variables (optionally a .env file) with conservative
defaults matching the persisted schema defaults.
"""

import os
from enum import Enum
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path(__file__).parent / '.env')


class TradingMode(str, Enum):
    """Account the components operate against."""
    PAPER = 'paper'
    LIVE = 'live'


# =============================================================================
# TRADING MODE
# =============================================================================
# Default mode only. Components take an explicit trading_mode argument so that
# switching modes at runtime never leaks through shared state.
TRADING_MODE = os.getenv('ALPACA_TRADING_MODE', 'paper')  # 'paper' or 'live'

# =============================================================================
# ALPACA API CREDENTIALS
# =============================================================================
ALPACA_PAPER_API_KEY = os.getenv('ALPACA_PAPER_API_KEY')
ALPACA_PAPER_SECRET_KEY = os.getenv('ALPACA_PAPER_SECRET_KEY')

ALPACA_LIVE_API_KEY = os.getenv('ALPACA_LIVE_API_KEY')
ALPACA_LIVE_SECRET_KEY = os.getenv('ALPACA_LIVE_SECRET_KEY')

ALPACA_PAPER_BASE_URL = 'https://paper-api.alpaca.markets'
ALPACA_LIVE_BASE_URL = 'https://api.alpaca.markets'

# =============================================================================
# RISK SETTINGS DEFAULTS (seeded into the store on first run)
# =============================================================================
DEFAULT_RISK_SETTINGS = {
    'max_transaction_amount': 1000.0,
    'daily_spend_limit': 5000.0,
    'weekly_spend_limit': 20000.0,
    'max_positions': 10,
    'enabled': True,
    'stop_loss_default': 5.0,       # percent
    'take_profit_default': 10.0,    # percent
    'allow_duplicate_positions': False
}

SPEND_WINDOW_DAYS = 7            # trailing window for the weekly spend cap

# =============================================================================
# RATE LIMITS (per provider, user-configurable at runtime)
# =============================================================================
# None means "no cap" for that window
DEFAULT_RATE_LIMITS = {
    'alpaca': {'max_per_minute': 10000, 'max_per_day': None},       # paid plan
    'alpha_vantage': {'max_per_minute': 5, 'max_per_day': 25}       # free tier
}

RATE_LIMIT_WAIT_TIMEOUT_SECONDS = 30

# =============================================================================
# POSITION MONITORING
# =============================================================================
MONITOR_INTERVAL_SECONDS = int(os.getenv('MONITOR_INTERVAL_SECONDS', '60'))
MIN_MONITOR_INTERVAL_SECONDS = 10

# =============================================================================
# SCHEDULER
# =============================================================================
DEFAULT_SCHEDULE_INTERVAL_MINUTES = 15

# =============================================================================
# BACKTESTING
# =============================================================================
BACKTEST_STEP_DAYS = 7
# 'historical' replays yfinance daily closes; 'simulated' uses seeded random prices
BACKTEST_MODE = os.getenv('BACKTEST_MODE', 'historical').lower()
BACKTEST_STOP_LOSS_FACTOR = 0.95       # exit at -5%
BACKTEST_TAKE_PROFIT_FACTOR = 1.15     # exit at +15%
BACKTEST_MAX_OPEN_POSITIONS = 10
BACKTEST_INITIAL_CAPITAL = 10000.0
BACKTEST_POSITION_SIZE = 1000.0
BACKTEST_SIGNAL_HIT_RATE = 0.3         # simulated mode only
BACKTEST_CANDIDATE_UNIVERSE = [
    'AAPL', 'MSFT', 'GOOGL', 'AMZN', 'TSLA', 'NVDA', 'META', 'AMD', 'NFLX', 'DIS'
]
TRADING_DAYS_PER_YEAR = 252
PROFIT_FACTOR_SENTINEL = 999.0         # reported instead of infinity

# =============================================================================
# DATA FILES
# =============================================================================
DATA_DIR = os.getenv(
    'TRADING_SCANNER_DATA_DIR',
    os.path.join(os.path.dirname(__file__), 'data')
)

AUDIT_LOG_FILE = os.path.join(DATA_DIR, 'audit_log.jsonl')

# =============================================================================
# EMAIL ALERTS
# =============================================================================
GMAIL_USER = os.getenv('GMAIL_USER')
GMAIL_APP_PASSWORD = os.getenv('GMAIL_APP_PASSWORD')
RECIPIENT_EMAIL = os.getenv('RECIPIENT_EMAIL')

# =============================================================================
# LOGGING
# =============================================================================
LOG_LEVEL = os.getenv('TRADING_SCANNER_LOG_LEVEL', 'INFO')
LOG_FILE = os.path.join(DATA_DIR, 'trading_scanner.log')

# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def resolve_trading_mode(mode=None) -> TradingMode:
    """Normalize a mode value (enum, string or None for the configured default)."""
    if mode is None:
        mode = TRADING_MODE
    return TradingMode(str(getattr(mode, 'value', mode)).lower())


def get_api_credentials(mode=None):
    """Get the API credentials for the given trading mode."""
    if resolve_trading_mode(mode) == TradingMode.LIVE:
        return {
            'api_key': ALPACA_LIVE_API_KEY,
            'secret_key': ALPACA_LIVE_SECRET_KEY,
            'base_url': ALPACA_LIVE_BASE_URL
        }
    else:
        return {
            'api_key': ALPACA_PAPER_API_KEY,
            'secret_key': ALPACA_PAPER_SECRET_KEY,
            'base_url': ALPACA_PAPER_BASE_URL
        }


def email_alerts_configured() -> bool:
    return bool(GMAIL_USER and GMAIL_APP_PASSWORD and RECIPIENT_EMAIL)


def validate_config(mode=None):
    """Validate critical configuration settings."""
    errors = []

    try:
        mode = resolve_trading_mode(mode)
    except ValueError:
        return [f"Invalid TRADING_MODE: {mode} (must be 'paper' or 'live')"]

    creds = get_api_credentials(mode)
    if not creds['api_key']:
        errors.append(f"Missing API key for {mode.value} trading")
    if not creds['secret_key']:
        errors.append(f"Missing secret key for {mode.value} trading")

    if MONITOR_INTERVAL_SECONDS < MIN_MONITOR_INTERVAL_SECONDS:
        errors.append(
            f"MONITOR_INTERVAL_SECONDS ({MONITOR_INTERVAL_SECONDS}) is below the "
            f"{MIN_MONITOR_INTERVAL_SECONDS}s floor"
        )

    if BACKTEST_MODE not in ('historical', 'simulated'):
        errors.append(f"Invalid BACKTEST_MODE: {BACKTEST_MODE} (must be 'historical' or 'simulated')")

    return errors


def print_config_summary(mode=None):
    """Print a summary of current configuration."""
    mode = resolve_trading_mode(mode)
    mode_emoji = "🧪" if mode == TradingMode.PAPER else "💰"
    risk = DEFAULT_RISK_SETTINGS

    print(f"""
{'='*60}
{mode_emoji} TRADING SCANNER CONFIGURATION
{'='*60}

Mode:           {mode.value.upper()} TRADING
Data Dir:       {DATA_DIR}

Risk Defaults:
  Max Transaction:  ${risk['max_transaction_amount']:,.2f}
  Daily Spend:      ${risk['daily_spend_limit']:,.2f}
  Weekly Spend:     ${risk['weekly_spend_limit']:,.2f}
  Max Positions:    {risk['max_positions']}
  Stop Loss:        {risk['stop_loss_default']:.1f}%
  Take Profit:      {risk['take_profit_default']:.1f}%

Monitoring:
  Interval:         {MONITOR_INTERVAL_SECONDS}s (floor {MIN_MONITOR_INTERVAL_SECONDS}s)

Email Alerts:   {'ENABLED' if email_alerts_configured() else 'DISABLED'}

{'='*60}
""")


if __name__ == '__main__':
    print_config_summary()

    errors = validate_config()
    if errors:
        print("⚠️  Configuration Errors:")
        for err in errors:
            print(f"  - {err}")
    else:
        print("✅ Configuration validated successfully")
