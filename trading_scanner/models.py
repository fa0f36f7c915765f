# trading_scanner/models.py
"""
Shared enums and result types.

Persisted records (positions, trades, stats, ...) stay plain dictionaries so
they round-trip through the JSON store unchanged; the enums below pin down the
string values those records are allowed to carry.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class OrderSide(str, Enum):
    BUY = 'buy'
    SELL = 'sell'


class OrderType(str, Enum):
    MARKET = 'market'
    LIMIT = 'limit'
    STOP = 'stop'
    STOP_LIMIT = 'stop_limit'
    TRAILING_STOP = 'trailing_stop'


class TradeStatus(str, Enum):
    """TradeRecord lifecycle: pending -> filled | rejected | cancelled."""
    PENDING = 'pending'
    FILLED = 'filled'
    REJECTED = 'rejected'
    CANCELLED = 'cancelled'


class CloseReason(str, Enum):
    STOP_LOSS = 'stop_loss'
    TAKE_PROFIT = 'take_profit'
    MANUAL = 'manual'


class NotificationType(str, Enum):
    INFO = 'info'
    SUCCESS = 'success'
    WARNING = 'warning'
    ERROR = 'error'


class AssetType(str, Enum):
    STOCK = 'stock'
    CALL_OPTION = 'call_option'
    PUT_OPTION = 'put_option'


# =============================================================================
# Errors
# =============================================================================

class InvalidOrder(ValueError):
    """Order parameters failed validation. Never persisted as a trade attempt."""
    pass


class RiskSettingsUnavailable(RuntimeError):
    """The RiskSettings singleton is missing or malformed."""
    pass


class ProfileNotFound(LookupError):
    pass


class StoreError(Exception):
    """Persistence layer could not complete a write."""
    pass


class AlpacaClientError(Exception):
    """Custom exception for Alpaca client errors."""
    pass


class RateLimitExceeded(AlpacaClientError):
    """A provider's call budget is exhausted and the caller will not wait."""

    def __init__(self, provider: str, retry_after: float, reason: str = ''):
        self.provider = provider
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded for {provider}: {reason or 'budget exhausted'} "
            f"(retry in {retry_after:.1f}s)"
        )


# =============================================================================
# Results
# =============================================================================

@dataclass(frozen=True)
class AdmitResult:
    """Outcome of RateBudget.admit: allowed, or denied with a retry delay."""
    allowed: bool
    retry_after: float = 0.0     # seconds
    reason: Optional[str] = None

    @classmethod
    def allow(cls) -> 'AdmitResult':
        return cls(True)

    @classmethod
    def deny(cls, retry_after: float, reason: str) -> 'AdmitResult':
        return cls(False, max(0.0, retry_after), reason)


@dataclass(frozen=True)
class RiskCheckResult:
    passed: bool
    reason: Optional[str] = None

    @classmethod
    def ok(cls) -> 'RiskCheckResult':
        return cls(True)

    @classmethod
    def reject(cls, reason: str) -> 'RiskCheckResult':
        return cls(False, reason)


@dataclass
class ExecutionResult:
    """Outcome of OrderExecutor.execute."""
    success: bool
    rejected: bool = False
    reason: Optional[str] = None
    order: Optional[Dict[str, Any]] = None
    estimated_cost: float = 0.0
    trade: Optional[Dict[str, Any]] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'rejected': self.rejected,
            'reason': self.reason,
            'order': self.order,
            'estimated_cost': self.estimated_cost
        }
