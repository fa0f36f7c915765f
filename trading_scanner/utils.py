# trading_scanner/utils.py
"""
Utility Functions for the Trading Scanner

Provides common utilities including:
- Audit logging
- File operations
- Date/time helpers
- Validation and formatting
"""

import os
import json
import math
import logging
import fcntl
import tempfile
from datetime import datetime, date, timedelta
from typing import Any, Dict, Optional, List, Tuple

import pytz

from . import config

logger = logging.getLogger(__name__)

# Timezone used for trading dates
EASTERN = pytz.timezone('US/Eastern')


def _get_lock_file(filepath: str) -> str:
    """Get the lock file path for a given file."""
    return f"{filepath}.lock"


# =============================================================================
# AUDIT LOGGING
# =============================================================================

def log_audit_event(
    event_type: str,
    data: Dict[str, Any],
    outcome: str = 'SUCCESS',
    trading_mode: Optional[str] = None
) -> None:
    """
    Log an audit event to the permanent audit trail.

    Uses JSONL format (one JSON object per line) for append-only efficiency.
    Uses file locking to prevent corruption from concurrent writes.

    Args:
        event_type: Type of event (ORDER_SUBMITTED, POSITION_CLOSED, etc.)
        data: Event data dictionary
        outcome: SUCCESS, REJECTED, FAILURE, or ERROR
        trading_mode: Mode the event happened in (defaults to configured mode)
    """
    audit_file = config.AUDIT_LOG_FILE

    event = {
        'timestamp': datetime.now().isoformat(),
        'event_type': event_type,
        'outcome': outcome,
        'trading_mode': str(getattr(trading_mode, 'value', trading_mode or config.TRADING_MODE)),
        'data': data
    }

    lock_file = _get_lock_file(audit_file)

    try:
        os.makedirs(os.path.dirname(audit_file), exist_ok=True)
        with open(lock_file, 'w') as lf:
            fcntl.flock(lf.fileno(), fcntl.LOCK_EX)
            try:
                with open(audit_file, 'a') as f:
                    f.write(json.dumps(event, default=str) + '\n')
            finally:
                fcntl.flock(lf.fileno(), fcntl.LOCK_UN)
    except Exception as e:
        logger.error(f"Failed to write audit log: {e}")
        # Audit failure shouldn't stop trading


def read_recent_audit_events(
    event_type: Optional[str] = None,
    limit: Optional[int] = 100
) -> List[Dict[str, Any]]:
    """
    Read recent audit events from the log.

    Args:
        event_type: Optional filter by event type
        limit: Maximum events to return (None for all)

    Returns:
        List of event dictionaries (most recent first)
    """
    if not os.path.exists(config.AUDIT_LOG_FILE):
        return []

    events = []
    try:
        with open(config.AUDIT_LOG_FILE, 'r') as f:
            lines = f.readlines()

        for line in reversed(lines):
            if limit is not None and len(events) >= limit:
                break

            try:
                event = json.loads(line.strip())
                if event_type is None or event.get('event_type') == event_type:
                    events.append(event)
            except json.JSONDecodeError:
                continue

    except OSError as e:
        logger.error(f"Failed to read audit log: {e}")

    return events


# =============================================================================
# DATE/TIME HELPERS
# =============================================================================

def get_eastern_now() -> datetime:
    """Get current time in US Eastern timezone."""
    return datetime.now(EASTERN)


def trading_date_str(moment: Optional[datetime] = None) -> str:
    """Calendar date (US/Eastern) used to key daily statistics."""
    if moment is None:
        moment = get_eastern_now()
    elif moment.tzinfo is not None:
        moment = moment.astimezone(EASTERN)
    return moment.strftime('%Y-%m-%d')


def window_start_date_str(days: int, moment: Optional[datetime] = None) -> str:
    """First calendar date of a trailing window of `days` days ending today."""
    if moment is None:
        moment = get_eastern_now()
    return trading_date_str(moment - timedelta(days=days))


def now_iso() -> str:
    return datetime.now().isoformat()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp string (or pass through a datetime)."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except (TypeError, ValueError):
        logger.warning(f"Unparseable timestamp: {value!r}")
        return None


def calculate_holding_days(opened_at: Any, closed_at: Optional[datetime] = None) -> int:
    """Holding period in whole days, rounded up."""
    opened = parse_timestamp(opened_at)
    if opened is None:
        return 0
    if closed_at is None:
        closed_at = datetime.now(opened.tzinfo) if opened.tzinfo else datetime.now()
    seconds = abs((closed_at - opened).total_seconds())
    return int(math.ceil(seconds / 86400))


def format_datetime_for_display(dt: datetime) -> str:
    """Format datetime for display in alerts."""
    return dt.strftime('%Y-%m-%d %I:%M %p ET')


# =============================================================================
# FILE OPERATIONS (with file locking for concurrent access safety)
# =============================================================================

def load_json_file(filepath: str, default: Any = None) -> Any:
    """
    Safely load a JSON file with file locking.

    Uses shared (read) lock to prevent reading while another process is writing.

    Args:
        filepath: Path to JSON file
        default: Default value if file doesn't exist or is invalid

    Returns:
        Parsed JSON data or default
    """
    if not os.path.exists(filepath):
        return default

    lock_file = _get_lock_file(filepath)

    try:
        with open(lock_file, 'w') as lf:
            fcntl.flock(lf.fileno(), fcntl.LOCK_SH)
            try:
                with open(filepath, 'r') as f:
                    return json.load(f)
            finally:
                fcntl.flock(lf.fileno(), fcntl.LOCK_UN)

    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON in {filepath}: {e}")
        return default
    except OSError as e:
        logger.error(f"Failed to load {filepath}: {e}")
        return default


def save_json_file(filepath: str, data: Any, indent: int = 2) -> bool:
    """
    Safely save data to a JSON file with file locking.

    Uses exclusive lock and atomic write (write to temp, then rename).
    Creates backup before overwriting for additional safety.

    Args:
        filepath: Path to JSON file
        data: Data to save
        indent: JSON indentation

    Returns:
        True if successful
    """
    dir_path = os.path.dirname(filepath)
    os.makedirs(dir_path, exist_ok=True)

    lock_file = _get_lock_file(filepath)

    try:
        with open(lock_file, 'w') as lf:
            fcntl.flock(lf.fileno(), fcntl.LOCK_EX)
            try:
                if os.path.exists(filepath):
                    backup_path = f"{filepath}.bak"
                    try:
                        with open(filepath, 'r') as f:
                            backup_data = f.read()
                        with open(backup_path, 'w') as f:
                            f.write(backup_data)
                    except OSError as e:
                        logger.warning(f"Failed to create backup of {filepath}: {e}")

                temp_fd, temp_path = tempfile.mkstemp(
                    dir=dir_path,
                    prefix='.tmp_',
                    suffix='.json'
                )
                try:
                    with os.fdopen(temp_fd, 'w') as f:
                        json.dump(data, f, indent=indent, default=str)

                    # Atomic rename (on same filesystem)
                    os.replace(temp_path, filepath)
                    return True

                except Exception:
                    if os.path.exists(temp_path):
                        os.unlink(temp_path)
                    raise

            finally:
                fcntl.flock(lf.fileno(), fcntl.LOCK_UN)

    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Failed to save {filepath}: {e}")
        return False


# =============================================================================
# VALIDATION FUNCTIONS
# =============================================================================

def validate_ticker(ticker: Any) -> Tuple[bool, str]:
    """
    Validate a ticker symbol.

    Returns:
        Tuple of (is_valid, message)
    """
    if not ticker or not isinstance(ticker, str) or not ticker.strip():
        return False, "Invalid symbol"

    if len(ticker.strip()) > 21:
        return False, f"Symbol too long: {ticker}"

    return True, "Valid"


def validate_price(price: Any, context: str = "price") -> Tuple[bool, str]:
    """
    Validate a price value.

    Returns:
        Tuple of (is_valid, message)
    """
    if price is None:
        return False, f"{context} is missing"

    try:
        price = float(price)
    except (TypeError, ValueError):
        return False, f"{context} is not a number"

    if price <= 0:
        return False, f"{context} must be positive"

    return True, "Valid"


def validate_quantity(qty: Any) -> Tuple[bool, str]:
    """
    Validate a share quantity.

    Booleans and fractional values are rejected; no coercion is applied.

    Returns:
        Tuple of (is_valid, message)
    """
    if qty is None or isinstance(qty, bool):
        return False, "Quantity must be a positive integer"

    if isinstance(qty, float):
        if not qty.is_integer():
            return False, "Quantity must be a positive integer"
        qty = int(qty)

    if not isinstance(qty, int) or qty <= 0:
        return False, "Quantity must be a positive integer"

    return True, "Valid"


# =============================================================================
# FORMATTING HELPERS
# =============================================================================

def format_currency(value: float) -> str:
    """Format a value as currency."""
    if value is None:
        return "$0.00"
    return f"${value:,.2f}"


def format_percentage(value: float, include_sign: bool = True) -> str:
    """Format a value as percentage."""
    if value is None:
        return "0.00%"

    if include_sign and value > 0:
        return f"+{value:.2f}%"
    return f"{value:.2f}%"


# =============================================================================
# CALCULATION HELPERS
# =============================================================================

def calculate_pnl_pct(entry_price: float, exit_price: float) -> float:
    """Calculate P&L percentage."""
    if entry_price <= 0:
        return 0.0
    return ((exit_price - entry_price) / entry_price) * 100


def calculate_day_change_pct(open_price: float, close_price: float) -> float:
    """Change of a daily bar, close versus the same bar's open."""
    if not open_price or math.isnan(open_price):
        return 0.0
    return ((close_price - open_price) / open_price) * 100
