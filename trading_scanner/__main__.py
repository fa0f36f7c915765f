# trading_scanner/__main__.py
"""
Command line entry point: python -m trading_scanner <command> ...

    run                         monitor positions (and resume the scheduler) until Ctrl-C
    scan PROFILE_ID             run one profile scan
    trade SYMBOL QTY SIDE       risk-gated order (--type, --limit-price, ...)
    positions | close SYMBOL | sync | tick | status
    scheduler start|stop|status
    rate-limits [--provider P --per-minute N --per-day N]
    risk | stats | history | notifications | audit
    backtest PROFILE_ID START END
    config
"""

import os
import sys
import json
import time
import logging
import argparse

from . import config
from .models import AlpacaClientError, InvalidOrder, ProfileNotFound, RiskSettingsUnavailable


def _setup_logging() -> None:
    os.makedirs(os.path.dirname(config.LOG_FILE), exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(config.LOG_FILE),
            logging.StreamHandler()
        ]
    )


def _limit_value(raw):
    """'none' removes a cap; anything else must be an integer."""
    if raw is None or raw.lower() == 'none':
        return None
    return int(raw)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='trading_scanner',
        description='Risk-gated scanning, trading and position monitoring on Alpaca'
    )
    parser.add_argument('--mode', choices=['paper', 'live'], help='Trading mode (default: ALPACA_TRADING_MODE)')
    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('run', help='Run the position monitor (and scheduler, if it was running)')
    sub.add_parser('config', help='Print configuration summary')

    scan = sub.add_parser('scan', help='Run a profile scan')
    scan.add_argument('profile_id', type=int)

    trade = sub.add_parser('trade', help='Place a risk-gated order')
    trade.add_argument('symbol')
    trade.add_argument('quantity', type=int)
    trade.add_argument('side', choices=['buy', 'sell'])
    trade.add_argument('--type', dest='order_type', default='market',
                       choices=['market', 'limit', 'stop', 'stop_limit', 'trailing_stop'])
    trade.add_argument('--limit-price', type=float)
    trade.add_argument('--stop-price', type=float)
    trade.add_argument('--trail-percent', type=float)
    trade.add_argument('--profile-id', type=int)

    sub.add_parser('positions', help='List open positions')
    close = sub.add_parser('close', help='Close a position at market')
    close.add_argument('symbol')
    sub.add_parser('sync', help='Rebuild local positions from the broker')
    sub.add_parser('tick', help='Run one position monitor pass')
    sub.add_parser('status', help='Position monitor and scheduler status')

    scheduler = sub.add_parser('scheduler', help='Scheduler control')
    scheduler.add_argument('action', choices=['start', 'stop', 'status'])

    rate = sub.add_parser('rate-limits', help='Show or update rate limits')
    rate.add_argument('--provider')
    rate.add_argument('--per-minute', help="Max calls per minute ('none' removes the cap)")
    rate.add_argument('--per-day', help="Max calls per day ('none' removes the cap)")

    sub.add_parser('risk', help='Show risk settings')
    stats = sub.add_parser('stats', help='Daily stats')
    stats.add_argument('--date', help='YYYY-MM-DD (default: today, US/Eastern)')
    history = sub.add_parser('history', help='Trade history')
    history.add_argument('--symbol')
    history.add_argument('--status', choices=['pending', 'filled', 'rejected', 'cancelled'])
    history.add_argument('--limit', type=int, default=50)
    sub.add_parser('notifications', help='Unread notifications')
    audit = sub.add_parser('audit', help='Recent audit events')
    audit.add_argument('--event-type')
    audit.add_argument('--limit', type=int, default=20)

    backtest = sub.add_parser('backtest', help='Backtest a profile')
    backtest.add_argument('profile_id', type=int)
    backtest.add_argument('start_date')
    backtest.add_argument('end_date')
    backtest.add_argument('--capital', type=float, default=config.BACKTEST_INITIAL_CAPITAL)
    backtest.add_argument('--position-size', type=float, default=config.BACKTEST_POSITION_SIZE)
    backtest.add_argument('--backtest-mode', choices=['historical', 'simulated'])

    return parser


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _run_forever(service) -> None:
    service.start()
    print("Trading scanner running. Press Ctrl-C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        service.shutdown()


def main(argv=None) -> int:
    """Main entry point for the trading scanner."""
    args = build_parser().parse_args(argv)
    _setup_logging()
    logger = logging.getLogger('trading_scanner')

    if args.command == 'config':
        config.print_config_summary(args.mode)
        for problem in config.validate_config(args.mode):
            print(f"⚠️  {problem}")
        return 0

    from .service import TradingService

    try:
        service = TradingService(args.mode)

        if args.command == 'run':
            _run_forever(service)
        elif args.command == 'scan':
            _print(service.scan(args.profile_id))
        elif args.command == 'trade':
            _print(service.execute_trade(
                args.symbol, args.quantity, args.side, args.order_type,
                limit_price=args.limit_price, stop_price=args.stop_price,
                trail_percent=args.trail_percent, profile_id=args.profile_id
            ))
        elif args.command == 'positions':
            _print(service.list_positions())
        elif args.command == 'close':
            _print(service.close_position(args.symbol))
        elif args.command == 'sync':
            _print(service.sync_positions())
        elif args.command == 'tick':
            _print(service.monitor.tick())
        elif args.command == 'status':
            _print({'monitor': service.monitor_status(), 'scheduler': service.scheduler_status()})
        elif args.command == 'scheduler':
            action = {
                'start': service.start_scheduler,
                'stop': service.stop_scheduler,
                'status': service.scheduler_status
            }[args.action]
            _print(action())
        elif args.command == 'rate-limits':
            if args.provider and (args.per_minute is not None or args.per_day is not None):
                changes = {}
                if args.per_minute is not None:
                    changes['max_per_minute'] = _limit_value(args.per_minute)
                if args.per_day is not None:
                    changes['max_per_day'] = _limit_value(args.per_day)
                _print(service.update_rate_limits(args.provider, **changes))
            else:
                _print(service.get_rate_limit_status(args.provider))
        elif args.command == 'risk':
            _print(service.get_risk_settings())
        elif args.command == 'stats':
            _print(service.get_daily_stats(args.date))
        elif args.command == 'history':
            _print(service.get_trade_history(symbol=args.symbol, status=args.status, limit=args.limit))
        elif args.command == 'notifications':
            _print(service.list_notifications(unread_only=True))
        elif args.command == 'audit':
            _print(service.get_audit_events(args.event_type, limit=args.limit))
        elif args.command == 'backtest':
            result = service.run_backtest(
                args.profile_id, args.start_date, args.end_date,
                initial_capital=args.capital, position_size=args.position_size,
                mode=args.backtest_mode
            )
            _print({k: v for k, v in result.items() if k != 'trades'})

    except (InvalidOrder, ProfileNotFound, KeyError, ValueError) as e:
        logger.error(f"Request failed: {e}")
        return 2
    except (AlpacaClientError, RiskSettingsUnavailable) as e:
        logger.error(f"Engine error: {e}")
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
