"""
Clock and Settings Collaborators

The fine services never read the wall clock or global configuration
directly; they receive a Clock and a SettingsProvider so that tests can pin
the date and the parameters.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional

from .config import LibraryFinesConfig, get_config
from .currency import Money
from .logging_config import get_logger
from .storage import StorageInterface


FINE_PER_DAY = "FINE_PER_DAY"
MAX_OVERDUE_DAYS = "MAX_OVERDUE_DAYS"
CREDIT_LIMIT = "CREDIT_LIMIT"
BAN_DURATION_DAYS = "BAN_DURATION_DAYS"

# Keys whose values are money amounts; the rest are whole numbers of days
_MONEY_KEYS = {FINE_PER_DAY, CREDIT_LIMIT}


def default_settings(config: Optional[LibraryFinesConfig] = None) -> Dict[str, Any]:
    """Documented defaults, taken from configuration"""
    config = config or get_config()
    return {
        FINE_PER_DAY: Money.of(config.default_fine_per_day),
        MAX_OVERDUE_DAYS: config.default_max_overdue_days,
        CREDIT_LIMIT: Money.of(config.default_credit_limit),
        BAN_DURATION_DAYS: config.default_ban_duration_days,
    }


class Clock(ABC):
    """Source of the current business date"""

    @abstractmethod
    def today(self) -> date:
        pass

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class SystemClock(Clock):
    """Wall-clock dates in UTC"""

    def today(self) -> date:
        return datetime.now(timezone.utc).date()


class FixedClock(Clock):
    """Deterministic clock for tests and back-dated batch runs"""

    def __init__(self, current: date):
        self.current = current

    def today(self) -> date:
        return self.current

    def now(self) -> datetime:
        return datetime.combine(self.current, datetime.min.time(), tzinfo=timezone.utc)

    def advance(self, days: int = 1) -> date:
        self.current = self.current + timedelta(days=days)
        return self.current


class SettingsProvider(ABC):
    """Read access to the configurable fine and ban parameters"""

    @abstractmethod
    def get(self, key: str) -> Any:
        pass

    def fine_per_day(self) -> Money:
        return self.get(FINE_PER_DAY)

    def max_overdue_days(self) -> int:
        return self.get(MAX_OVERDUE_DAYS)

    def credit_limit(self) -> Money:
        return self.get(CREDIT_LIMIT)

    def ban_duration_days(self) -> int:
        return self.get(BAN_DURATION_DAYS)


class StaticSettingsProvider(SettingsProvider):
    """Fixed values over the configured defaults"""

    def __init__(self, overrides: Optional[Dict[str, Any]] = None,
                 config: Optional[LibraryFinesConfig] = None):
        self._values = default_settings(config)
        for key, value in (overrides or {}).items():
            self._values[key] = _coerce(key, value)

    def get(self, key: str) -> Any:
        if key not in self._values:
            raise KeyError(f"Unknown setting: {key}")
        return self._values[key]


class StoredSettingsProvider(SettingsProvider):
    """
    Reads overrides from the ``system_settings`` table, one row per key with
    a string value, and falls back to configuration defaults. A stored value
    that cannot be parsed is logged and ignored.
    """

    def __init__(self, storage: StorageInterface, config: Optional[LibraryFinesConfig] = None):
        self.storage = storage
        self.table = "system_settings"
        self.defaults = default_settings(config)
        self.logger = get_logger("library_fines.settings")

    def get(self, key: str) -> Any:
        if key not in self.defaults:
            raise KeyError(f"Unknown setting: {key}")

        row = self.storage.load(self.table, key)
        if not row:
            return self.defaults[key]

        try:
            return _coerce(key, row["value"])
        except (ValueError, TypeError, ArithmeticError):
            self.logger.warning(
                f"Invalid value {row.get('value')!r} for setting {key}; using default"
            )
            return self.defaults[key]

    def set(self, key: str, value: Any, description: Optional[str] = None) -> None:
        """Store an override after validating it"""
        if key not in self.defaults:
            raise KeyError(f"Unknown setting: {key}")
        coerced = _coerce(key, value)
        now = datetime.now(timezone.utc).isoformat()
        existing = self.storage.load(self.table, key) or {"created_at": now}
        self.storage.save(self.table, key, {
            "id": key,
            "key": key,
            "value": str(coerced.amount if isinstance(coerced, Money) else coerced),
            "description": description if description is not None else existing.get("description"),
            "created_at": existing["created_at"],
            "updated_at": now,
        })

    def clear(self, key: str) -> bool:
        """Remove an override so the default applies again"""
        return self.storage.delete(self.table, key)


def _coerce(key: str, value: Any) -> Any:
    if key in _MONEY_KEYS:
        money = Money.of(value)
        if money.is_negative():
            raise ValueError(f"{key} cannot be negative")
        return money
    days = int(value)
    if days < 0:
        raise ValueError(f"{key} cannot be negative")
    return days
