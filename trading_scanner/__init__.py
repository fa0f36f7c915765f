# trading_scanner/__init__.py
"""
Alpaca Trading Scanner

Automated screening, risk-gated order execution and stop-loss/take-profit
monitoring on Alpaca, with profile scheduling and backtesting. Every automated
decision is recorded in an append-only audit trail.

Directory Structure:
    trading_scanner/
    ├── __init__.py           # This file
    ├── __main__.py           # Command line entry point
    ├── config.py             # Environment configuration and defaults
    ├── models.py             # Enums, errors and result types
    ├── utils.py              # Audit log, JSON IO, Eastern-time helpers
    ├── storage.py            # TradingStore (locked JSON record store)
    ├── rate_limiter.py       # Per-provider call budgets
    ├── alpaca_client.py      # Rate-budgeted Alpaca wrapper
    ├── market_data.py        # Historical daily prices (yfinance)
    ├── risk_gate.py          # Pre-trade risk checks
    ├── order_executor.py     # Validation, submission, fill sync, liquidation
    ├── position_monitor.py   # Stop-loss / take-profit polling loop
    ├── reconciliation.py     # Broker -> local position sync
    ├── scanner.py            # Profile price/volume screening
    ├── scheduler.py          # Recurring profile scans
    ├── backtest.py           # Profile backtesting and metrics
    ├── alerts.py             # Notifications and email alerts
    └── service.py            # TradingService facade

    data/
        ├── profiles.json, positions.json, closed_positions.json
        ├── trade_history.json, daily_stats.json, risk_settings.json
        ├── notifications.json, app_settings.json
        └── audit_log.jsonl        # Immutable audit trail

Safety Features:
    - Risk gate with transaction, daily, weekly and position limits
    - Spend reservation in the same transaction as the limit check
    - Explicit paper/live mode on every component
    - Per-provider rate budgets
    - Failures isolated per position and per scheduled profile
"""

__version__ = "1.0.0"
__author__ = "Trading Scanner"
