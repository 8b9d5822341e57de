"""
System Wiring

Builds storage, audit trail, ledger store, collaborators and services from
configuration. Tests pass their own storage, clock and notifier.
"""

from typing import Optional

from .accrual import FineAccrualEngine
from .audit import AuditTrail
from .bans import BanEnforcer
from .circulation import CirculationService
from .config import LibraryFinesConfig, get_config
from .ledger_store import LedgerStore
from .logging_config import get_logger
from .notifications import Notifier, MessageNotifier, NullNotifier, build_provider
from .payments import PaymentProcessor
from .reporting import FineReporter
from .scheduler import FineScheduler
from .settings import Clock, SystemClock, SettingsProvider, StoredSettingsProvider
from .storage import StorageInterface, InMemoryStorage, SQLiteStorage


def build_storage(config: LibraryFinesConfig) -> StorageInterface:
    if config.storage_backend == "memory":
        return InMemoryStorage()
    if config.storage_backend == "sqlite":
        return SQLiteStorage(config.database_path, timeout=config.database_timeout)
    raise ValueError(f"Unknown storage backend: {config.storage_backend}")


def build_notifier(config: LibraryFinesConfig, storage: Optional[StorageInterface] = None) -> Notifier:
    if not config.notifications_enabled:
        return NullNotifier()
    provider = build_provider(
        config.notification_channel,
        webhook_url=config.notification_webhook_url,
        timeout=config.notification_timeout
    )
    return MessageNotifier(
        provider,
        sender=config.email_from,
        max_workers=config.notification_workers,
        storage=storage,
        currency_symbol=config.currency_symbol
    )


class LibraryFineSystem:
    """Fine and ban subsystem with all components initialized"""

    def __init__(
        self,
        config: Optional[LibraryFinesConfig] = None,
        storage: Optional[StorageInterface] = None,
        clock: Optional[Clock] = None,
        settings: Optional[SettingsProvider] = None,
        notifier: Optional[Notifier] = None
    ):
        self.config = config or get_config()
        self.logger = get_logger("library_fines.system")

        # Initialize storage
        self.storage = storage or build_storage(self.config)

        # Collaborators
        self.clock = clock or SystemClock()
        self.settings = settings or StoredSettingsProvider(self.storage, self.config)
        self.notifier = notifier or build_notifier(self.config, self.storage)

        # Core components
        retries = self.config.max_conflict_retries
        self.audit_trail = AuditTrail(self.storage)
        self.store = LedgerStore(self.storage)
        self.ban_enforcer = BanEnforcer(
            self.store, self.clock, self.settings, self.notifier,
            self.audit_trail, max_retries=retries
        )
        self.accrual_engine = FineAccrualEngine(
            self.store, self.clock, self.settings, self.notifier,
            self.ban_enforcer, self.audit_trail, max_retries=retries
        )
        self.payment_processor = PaymentProcessor(
            self.store, self.clock, self.notifier, self.audit_trail, max_retries=retries
        )
        self.circulation = CirculationService(
            self.store, self.clock, self.settings, self.audit_trail, max_retries=retries
        )
        self.reporter = FineReporter(self.store)
        self.scheduler = FineScheduler(self.accrual_engine, self.ban_enforcer, self.config)

    def start(self) -> None:
        """Start the periodic jobs when enabled"""
        if self.config.scheduler_enabled:
            self.scheduler.start()
        else:
            self.logger.info("Scheduler disabled; jobs run only when triggered")

    def shutdown(self) -> None:
        self.scheduler.shutdown()
        if isinstance(self.notifier, MessageNotifier):
            self.notifier.shutdown()
        self.storage.close()
