# trading_scanner/storage.py
"""
Trading Store

Durable record store for the automation core. Each entity lives in its own
JSON document inside the data directory:

    data/
    ├── profiles.json           # Screening profiles
    ├── positions.json          # Open positions (one per symbol per mode)
    ├── closed_positions.json   # Completed round trips (append-only)
    ├── trade_history.json      # One row per execution attempt
    ├── risk_settings.json      # RiskSettings singleton
    ├── daily_stats.json        # Per-date activity and spend aggregates
    ├── notifications.json      # Notification center
    └── app_settings.json       # Key/value application settings

All read-modify-write operations run inside `transaction()`, which holds a
re-entrant in-process lock plus an exclusive fcntl lock on `.store.lock`, so a
risk check and the spend write that follows it are one atomic unit.
"""

import os
import fcntl
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from . import config
from .models import (
    AssetType,
    RiskSettingsUnavailable,
    ProfileNotFound,
    StoreError,
    TradeStatus,
    NotificationType
)
from .utils import load_json_file, save_json_file, now_iso, trading_date_str

logger = logging.getLogger(__name__)


DAILY_STAT_FIELDS = (
    'scans_run',
    'matches_found',
    'orders_placed',
    'orders_filled',
    'orders_rejected',
    'total_spent',
    'positions_opened',
    'positions_closed',
    'realized_pl'
)

RISK_SETTING_TYPES = {
    'max_transaction_amount': (int, float),
    'daily_spend_limit': (int, float),
    'weekly_spend_limit': (int, float),
    'max_positions': (int,),
    'enabled': (bool,),
    'stop_loss_default': (int, float, type(None)),
    'take_profit_default': (int, float, type(None)),
    'allow_duplicate_positions': (bool,)
}

DEFAULT_APP_SETTINGS = {
    'notifications_enabled': 'true',
    'scheduler_running': 'false',
    'default_order_type': 'limit',
    'limit_price_offset_percent': '0.5',
    'monitor_interval_seconds': str(config.MONITOR_INTERVAL_SECONDS)
}

TERMINAL_TRADE_STATUSES = {
    TradeStatus.FILLED.value,
    TradeStatus.REJECTED.value,
    TradeStatus.CANCELLED.value
}


def _mode_value(trading_mode) -> str:
    return config.resolve_trading_mode(trading_mode).value


class TradingStore:
    """
    JSON-file backed store for positions, trades, settings and statistics.

    Safe for concurrent use from the monitor thread, scheduler jobs and
    request handlers within one process, and across processes sharing the
    same data directory.
    """

    FILES = {
        'profiles': 'profiles.json',
        'positions': 'positions.json',
        'closed_positions': 'closed_positions.json',
        'trades': 'trade_history.json',
        'risk_settings': 'risk_settings.json',
        'daily_stats': 'daily_stats.json',
        'notifications': 'notifications.json',
        'app_settings': 'app_settings.json'
    }

    def __init__(self, data_dir: Optional[str] = None):
        self.data_dir = data_dir or config.DATA_DIR
        self._lock = threading.RLock()
        self._depth = 0
        self._lock_handle = None
        os.makedirs(self.data_dir, exist_ok=True)

    # =========================================================================
    # Transactions and raw document access
    # =========================================================================

    @contextmanager
    def transaction(self):
        """Serialize a read-modify-write sequence (re-entrant)."""
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self._lock_handle = open(os.path.join(self.data_dir, '.store.lock'), 'w')
                fcntl.flock(self._lock_handle.fileno(), fcntl.LOCK_EX)
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
                if outermost:
                    fcntl.flock(self._lock_handle.fileno(), fcntl.LOCK_UN)
                    self._lock_handle.close()
                    self._lock_handle = None

    def _path(self, name: str) -> str:
        return os.path.join(self.data_dir, self.FILES[name])

    def _load(self, name: str, default: Any) -> Any:
        data = load_json_file(self._path(name), default=None)
        return default if data is None else data

    def _save(self, name: str, data: Any) -> None:
        if not save_json_file(self._path(name), data):
            raise StoreError(f"Failed to write {self.FILES[name]}")

    def _load_collection(self, name: str, key: str) -> Dict[str, Any]:
        doc = self._load(name, {})
        doc.setdefault('next_id', 1)
        doc.setdefault(key, [])
        return doc

    @staticmethod
    def _assign_id(doc: Dict[str, Any]) -> int:
        new_id = doc['next_id']
        doc['next_id'] = new_id + 1
        return new_id

    def initialize(self) -> None:
        """Seed default risk settings and app settings (insert-if-absent)."""
        with self.transaction():
            if not os.path.exists(self._path('risk_settings')):
                self._save('risk_settings', dict(config.DEFAULT_RISK_SETTINGS, id=1))
                logger.info("Seeded default risk settings")

            doc = self._load('app_settings', {})
            settings = doc.setdefault('settings', {})
            changed = False
            for key, value in DEFAULT_APP_SETTINGS.items():
                if key not in settings:
                    settings[key] = {'value': value, 'updated_at': now_iso()}
                    changed = True
            if changed:
                self._save('app_settings', doc)

    # =========================================================================
    # Risk settings (singleton)
    # =========================================================================

    @staticmethod
    def _check_risk_settings(settings: Any) -> Dict[str, Any]:
        if not isinstance(settings, dict):
            raise RiskSettingsUnavailable("Risk settings are missing or unreadable")

        for key, types in RISK_SETTING_TYPES.items():
            if key not in settings:
                raise RiskSettingsUnavailable(f"Risk settings missing '{key}'")
            value = settings[key]
            if not isinstance(value, types) or (isinstance(value, bool) and bool not in types):
                raise RiskSettingsUnavailable(f"Risk setting '{key}' has invalid value {value!r}")

        return settings

    def get_risk_settings(self) -> Dict[str, Any]:
        """
        Load the RiskSettings singleton.

        Raises:
            RiskSettingsUnavailable: if the record is missing or malformed
        """
        return self._check_risk_settings(load_json_file(self._path('risk_settings'), default=None))

    def update_risk_settings(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply a partial update to the RiskSettings singleton.

        Raises:
            ValueError: unknown keys or values of the wrong type (nothing written)
        """
        unknown = set(updates) - set(RISK_SETTING_TYPES)
        if unknown:
            raise ValueError(f"Unknown risk settings: {', '.join(sorted(unknown))}")

        with self.transaction():
            current = load_json_file(self._path('risk_settings'), default=None)
            if not isinstance(current, dict):
                current = dict(config.DEFAULT_RISK_SETTINGS, id=1)
            current.update(updates)
            try:
                self._check_risk_settings(current)
            except RiskSettingsUnavailable as e:
                raise ValueError(str(e)) from e
            self._save('risk_settings', current)
            return current

    # =========================================================================
    # Profiles
    # =========================================================================

    def list_profiles(self, schedule_enabled: Optional[bool] = None) -> List[Dict[str, Any]]:
        profiles = self._load_collection('profiles', 'profiles')['profiles']
        if schedule_enabled is not None:
            profiles = [p for p in profiles if bool(p.get('schedule_enabled')) == schedule_enabled]
        return profiles

    def get_profile(self, profile_id: int) -> Optional[Dict[str, Any]]:
        for profile in self.list_profiles():
            if profile['id'] == profile_id:
                return profile
        return None

    def create_profile(self, profile: Dict[str, Any]) -> Dict[str, Any]:
        if not profile.get('name'):
            raise ValueError("Profile name is required")
        asset_type = AssetType(profile.get('asset_type', AssetType.STOCK.value)).value

        with self.transaction():
            doc = self._load_collection('profiles', 'profiles')
            record = {
                'id': self._assign_id(doc),
                'name': profile['name'],
                'asset_type': asset_type,
                'parameters': profile.get('parameters') or {},
                'schedule_enabled': bool(profile.get('schedule_enabled', False)),
                'schedule_interval': int(
                    profile.get('schedule_interval') or config.DEFAULT_SCHEDULE_INTERVAL_MINUTES
                ),
                'schedule_market_hours_only': bool(profile.get('schedule_market_hours_only', True)),
                'auto_execute': bool(profile.get('auto_execute', False)),
                'max_transaction_amount': profile.get('max_transaction_amount'),
                'created_at': now_iso(),
                'updated_at': now_iso()
            }
            doc['profiles'].append(record)
            self._save('profiles', doc)
            return record

    def update_profile(self, profile_id: int, updates: Dict[str, Any]) -> Dict[str, Any]:
        with self.transaction():
            doc = self._load_collection('profiles', 'profiles')
            for profile in doc['profiles']:
                if profile['id'] == profile_id:
                    for key, value in updates.items():
                        if key in ('id', 'created_at'):
                            continue
                        profile[key] = value
                    profile['updated_at'] = now_iso()
                    self._save('profiles', doc)
                    return profile
        raise ProfileNotFound(f"Profile {profile_id} not found")

    def delete_profile(self, profile_id: int) -> bool:
        with self.transaction():
            doc = self._load_collection('profiles', 'profiles')
            remaining = [p for p in doc['profiles'] if p['id'] != profile_id]
            if len(remaining) == len(doc['profiles']):
                return False
            doc['profiles'] = remaining
            self._save('profiles', doc)
            return True

    # =========================================================================
    # Open positions
    # =========================================================================

    def list_positions(self, trading_mode=None) -> List[Dict[str, Any]]:
        mode = _mode_value(trading_mode)
        positions = self._load_collection('positions', 'positions')['positions']
        return [p for p in positions if p.get('trading_mode') == mode]

    def count_positions(self, trading_mode=None) -> int:
        return len(self.list_positions(trading_mode))

    def get_position(self, symbol: str, trading_mode=None) -> Optional[Dict[str, Any]]:
        for position in self.list_positions(trading_mode):
            if position['symbol'] == symbol:
                return position
        return None

    def upsert_position(self, position: Dict[str, Any], trading_mode=None) -> Dict[str, Any]:
        """Insert a position, or replace the row for the same symbol and mode."""
        mode = _mode_value(trading_mode)
        with self.transaction():
            doc = self._load_collection('positions', 'positions')
            for index, existing in enumerate(doc['positions']):
                if existing['symbol'] == position['symbol'] and existing.get('trading_mode') == mode:
                    record = dict(existing, **position)
                    record['trading_mode'] = mode
                    record['last_updated'] = now_iso()
                    doc['positions'][index] = record
                    self._save('positions', doc)
                    return record

            record = dict(position)
            record['id'] = self._assign_id(doc)
            record['trading_mode'] = mode
            record.setdefault('opened_at', now_iso())
            record['last_updated'] = now_iso()
            doc['positions'].append(record)
            self._save('positions', doc)
            return record

    def update_position(self, symbol: str, updates: Dict[str, Any], trading_mode=None) -> Optional[Dict[str, Any]]:
        mode = _mode_value(trading_mode)
        with self.transaction():
            doc = self._load_collection('positions', 'positions')
            for position in doc['positions']:
                if position['symbol'] == symbol and position.get('trading_mode') == mode:
                    position.update(updates)
                    position['last_updated'] = now_iso()
                    self._save('positions', doc)
                    return position
        return None

    def delete_position(self, symbol: str, trading_mode=None) -> Optional[Dict[str, Any]]:
        mode = _mode_value(trading_mode)
        with self.transaction():
            doc = self._load_collection('positions', 'positions')
            for index, position in enumerate(doc['positions']):
                if position['symbol'] == symbol and position.get('trading_mode') == mode:
                    removed = doc['positions'].pop(index)
                    self._save('positions', doc)
                    return removed
        return None

    # =========================================================================
    # Closed positions (append-only)
    # =========================================================================

    def append_closed_position(self, record: Dict[str, Any], trading_mode=None) -> Dict[str, Any]:
        with self.transaction():
            doc = self._load_collection('closed_positions', 'closed_positions')
            entry = dict(record)
            entry['id'] = self._assign_id(doc)
            entry['trading_mode'] = _mode_value(trading_mode)
            entry.setdefault('closed_at', now_iso())
            doc['closed_positions'].append(entry)
            self._save('closed_positions', doc)
            return entry

    def list_closed_positions(self, trading_mode=None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        mode = _mode_value(trading_mode)
        records = self._load_collection('closed_positions', 'closed_positions')['closed_positions']
        records = [r for r in records if r.get('trading_mode') == mode]
        records.sort(key=lambda r: r.get('closed_at', ''), reverse=True)
        return records[:limit] if limit else records

    # =========================================================================
    # Trade history
    # =========================================================================

    def append_trade(self, trade: Dict[str, Any], trading_mode=None) -> Dict[str, Any]:
        status = TradeStatus(trade['status']).value
        with self.transaction():
            doc = self._load_collection('trades', 'trades')
            record = {
                'id': self._assign_id(doc),
                'profile_id': trade.get('profile_id'),
                'symbol': trade['symbol'],
                'side': trade['side'],
                'quantity': trade['quantity'],
                'order_type': trade['order_type'],
                'limit_price': trade.get('limit_price'),
                'stop_price': trade.get('stop_price'),
                'trail_percent': trade.get('trail_percent'),
                'estimated_cost': trade.get('estimated_cost'),
                'filled_price': trade.get('filled_price'),
                'filled_quantity': trade.get('filled_quantity'),
                'status': status,
                'rejection_reason': trade.get('rejection_reason'),
                'order_id': trade.get('order_id'),
                'trading_mode': _mode_value(trading_mode),
                'trade_date': trade.get('trade_date') or trading_date_str(),
                'executed_at': trade.get('executed_at') or now_iso(),
                'filled_at': trade.get('filled_at')
            }
            doc['trades'].append(record)
            self._save('trades', doc)
            return record

    def update_trade_status(self, trade_id: int, status: str, **fields) -> Dict[str, Any]:
        """
        Transition a pending trade to a terminal status.

        Raises:
            ValueError: unknown trade or a transition other than pending -> terminal
        """
        status = TradeStatus(status).value
        if status not in TERMINAL_TRADE_STATUSES:
            raise ValueError(f"Cannot transition trade to '{status}'")

        with self.transaction():
            doc = self._load_collection('trades', 'trades')
            for trade in doc['trades']:
                if trade['id'] != trade_id:
                    continue
                if trade['status'] != TradeStatus.PENDING.value:
                    raise ValueError(
                        f"Trade {trade_id} is already {trade['status']}; only pending trades change status"
                    )
                trade['status'] = status
                for key in ('filled_price', 'filled_quantity', 'filled_at', 'rejection_reason'):
                    if key in fields:
                        trade[key] = fields[key]
                self._save('trades', doc)
                return trade
        raise ValueError(f"Trade {trade_id} not found")

    def list_trades(
        self,
        trading_mode=None,
        symbol: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        mode = _mode_value(trading_mode)
        trades = [
            t for t in self._load_collection('trades', 'trades')['trades']
            if t.get('trading_mode') == mode
            and (symbol is None or t['symbol'] == symbol)
            and (status is None or t['status'] == status)
        ]
        trades.sort(key=lambda t: (t.get('executed_at', ''), t['id']), reverse=True)
        return trades[:limit] if limit else trades

    def list_pending_trades(self, trading_mode=None) -> List[Dict[str, Any]]:
        return self.list_trades(trading_mode, status=TradeStatus.PENDING.value)

    # =========================================================================
    # Daily statistics
    # =========================================================================

    @staticmethod
    def _stat_key(date_str: str, mode: str) -> str:
        return f"{mode}:{date_str}"

    @staticmethod
    def _empty_stat(date_str: str, mode: str) -> Dict[str, Any]:
        stat = {field: 0 for field in DAILY_STAT_FIELDS}
        stat['total_spent'] = 0.0
        stat['realized_pl'] = 0.0
        stat['date'] = date_str
        stat['trading_mode'] = mode
        return stat

    def get_daily_stat(self, date_str: Optional[str] = None, trading_mode=None) -> Dict[str, Any]:
        mode = _mode_value(trading_mode)
        date_str = date_str or trading_date_str()
        stats = self._load('daily_stats', {}).get('stats', {})
        return stats.get(self._stat_key(date_str, mode)) or self._empty_stat(date_str, mode)

    def increment_daily_stat(self, date_str: Optional[str] = None, trading_mode=None, **deltas) -> Dict[str, Any]:
        """Upsert today's row, adding each delta to its counter."""
        unknown = set(deltas) - set(DAILY_STAT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown daily stat fields: {', '.join(sorted(unknown))}")

        mode = _mode_value(trading_mode)
        date_str = date_str or trading_date_str()
        with self.transaction():
            doc = self._load('daily_stats', {})
            stats = doc.setdefault('stats', {})
            key = self._stat_key(date_str, mode)
            stat = stats.get(key) or self._empty_stat(date_str, mode)
            for field, delta in deltas.items():
                stat[field] = stat.get(field, 0) + delta
            stats[key] = stat
            self._save('daily_stats', doc)
            return stat

    def sum_spent_since(self, start_date: str, trading_mode=None) -> float:
        """Total spend over all dates >= start_date (inclusive)."""
        mode = _mode_value(trading_mode)
        stats = self._load('daily_stats', {}).get('stats', {})
        return float(sum(
            s.get('total_spent', 0) for s in stats.values()
            if s.get('trading_mode') == mode and s.get('date', '') >= start_date
        ))

    # =========================================================================
    # Notifications
    # =========================================================================

    def add_notification(
        self,
        notification_type: str,
        title: str,
        message: str,
        profile_id: Optional[int] = None,
        symbol: Optional[str] = None
    ) -> Dict[str, Any]:
        with self.transaction():
            doc = self._load_collection('notifications', 'notifications')
            record = {
                'id': self._assign_id(doc),
                'type': NotificationType(notification_type).value,
                'title': title,
                'message': message,
                'related_profile_id': profile_id,
                'related_symbol': symbol,
                'read': False,
                'created_at': now_iso()
            }
            doc['notifications'].append(record)
            self._save('notifications', doc)
            return record

    def list_notifications(self, unread_only: bool = False, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        records = self._load_collection('notifications', 'notifications')['notifications']
        if unread_only:
            records = [n for n in records if not n['read']]
        records = sorted(records, key=lambda n: n['id'], reverse=True)
        return records[:limit] if limit else records

    def mark_notification_read(self, notification_id: int) -> bool:
        with self.transaction():
            doc = self._load_collection('notifications', 'notifications')
            for record in doc['notifications']:
                if record['id'] == notification_id:
                    record['read'] = True
                    self._save('notifications', doc)
                    return True
        return False

    # =========================================================================
    # App settings
    # =========================================================================

    def get_app_settings(self) -> Dict[str, str]:
        settings = self._load('app_settings', {}).get('settings', {})
        return {key: entry['value'] for key, entry in settings.items()}

    def get_app_setting(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.get_app_settings().get(key, default)

    def set_app_setting(self, key: str, value: Any) -> None:
        with self.transaction():
            doc = self._load('app_settings', {})
            doc.setdefault('settings', {})[key] = {'value': str(value), 'updated_at': now_iso()}
            self._save('app_settings', doc)
