"""
Fine Accrual Module

Daily re-evaluation of every unreturned, overdue loan. Each loan and its
member are updated together as one atomic unit; a loan that fails is logged
and skipped without affecting the rest of the batch. Running the job twice on
the same day changes nothing the second time.
"""

from datetime import date, datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Tuple

from .audit import AuditTrail, AuditEventType
from .bans import BanEnforcer, record_batch_failure
from .currency import Money
from .errors import NotFound
from .fines import days_overdue, fine_amount, transition_fine_status
from .ledger_store import LedgerStore
from .logging_config import get_logger, log_action
from .models import Loan, Member, FineStatus
from .notifications import Notifier, notify_safely
from .retry import run_with_retry
from .settings import Clock, SettingsProvider


@dataclass
class AccrualResult:
    """Outcome of one accrual run"""
    run_date: date
    processed: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    warnings: int = 0
    bans: int = 0
    total_accrued: Money = field(default_factory=Money.zero)
    failures: List[Dict[str, str]] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'run_date': self.run_date.isoformat(),
            'processed': self.processed,
            'updated': self.updated,
            'unchanged': self.unchanged,
            'failed': self.failed,
            'warnings': self.warnings,
            'bans': self.bans,
            'total_accrued': str(self.total_accrued),
            'failures': list(self.failures),
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
        }


class FineAccrualEngine:
    """
    Recomputes cached fines on overdue loans and keeps each member's
    ``current_fines_due`` and ``overdue_books_count`` in step, then hands
    over to the BanEnforcer escalation pass.
    """

    def __init__(
        self,
        store: LedgerStore,
        clock: Clock,
        settings: SettingsProvider,
        notifier: Notifier,
        ban_enforcer: BanEnforcer,
        audit: Optional[AuditTrail] = None,
        max_retries: int = 3
    ):
        self.store = store
        self.clock = clock
        self.settings = settings
        self.notifier = notifier
        self.ban_enforcer = ban_enforcer
        self.audit = audit or AuditTrail(store.storage)
        self.max_retries = max_retries
        self.logger = get_logger("library_fines.accrual")

    def run(self) -> AccrualResult:
        """Process every unreturned loan whose due date has passed"""
        today = self.clock.today()
        result = AccrualResult(run_date=today, started_at=datetime.now(timezone.utc))

        loans = self.store.find_overdue_loans(today)
        self.logger.info(f"Fine accrual for {today.isoformat()}: {len(loans)} overdue loans")

        for loan in loans:
            result.processed += 1
            try:
                outcome = run_with_retry(
                    lambda: self._accrue_loan(loan.id, today),
                    self.max_retries,
                    self.logger,
                    f"accrual of loan {loan.id}"
                )
            except Exception as e:
                result.failed += 1
                result.failures.append({'loan_id': loan.id, 'error': str(e)})
                self.logger.exception(f"Fine accrual failed for loan {loan.id}: {e}")
                record_batch_failure(self.audit, self.logger, "accrual", "loan", loan.id, e)
                continue

            if outcome is None:
                result.unchanged += 1
                continue

            updated_loan, member, delta = outcome
            result.updated += 1
            if delta.is_positive():
                result.total_accrued = result.total_accrued + delta

            if member.current_fines_due > self._credit_limit(member):
                result.warnings += 1
                notify_safely(self.logger, self.notifier.warn, member, updated_loan)

        result.bans = len(self.ban_enforcer.escalate(today))
        result.finished_at = datetime.now(timezone.utc)

        self.audit.log_event(
            event_type=AuditEventType.ACCRUAL_RUN_COMPLETED,
            entity_type="batch",
            entity_id=f"accrual-{today.isoformat()}",
            metadata={k: v for k, v in result.to_dict().items() if k != 'failures'}
        )
        log_action(
            self.logger, "info",
            f"Fine accrual finished: {result.updated} updated, {result.unchanged} unchanged, "
            f"{result.failed} failed, {result.bans} bans",
            action="accrual_run",
            resource="loans",
            extra={'run_date': today.isoformat(), 'failed': result.failed}
        )
        return result

    def _accrue_loan(self, loan_id: str, today: date) -> Optional[Tuple[Loan, Member, Money]]:
        """One read-modify-write unit. Returns None when nothing changed."""
        loan = self.store.find_loan(loan_id)
        if loan is None:
            raise NotFound("loan", loan_id)
        if loan.returned:
            return None

        new_days = days_overdue(loan, today)
        new_fine = fine_amount(loan, today)
        if new_fine == loan.fine_amount:
            if new_days != loan.days_overdue:
                # Settled and zero-rate loans still age toward the ban threshold
                loan.days_overdue = new_days
                loan.last_fine_calculation_date = today
                self.store.atomic_save(loan=loan)
            return None

        member = self.store.find_member(loan.member_id)
        if member is None:
            raise NotFound("member", loan.member_id)

        delta = new_fine - loan.fine_amount
        previous_days = loan.days_overdue

        loan.days_overdue = new_days
        loan.fine_amount = new_fine
        loan.fine_updated_date = today
        loan.last_fine_calculation_date = today

        if new_fine.is_zero():
            # Loan became exempt while a fine was pending
            transition_fine_status(loan, FineStatus.CANCELLED)
            if loan.overdue_counted:
                member.overdue_books_count = max(0, member.overdue_books_count - 1)
                loan.overdue_counted = False
            event_type = AuditEventType.FINE_CANCELLED
        else:
            if loan.fine_status == FineStatus.NONE:
                transition_fine_status(loan, FineStatus.PENDING)
            if previous_days == 0 and new_days > 0 and not loan.overdue_counted:
                member.overdue_books_count += 1
                loan.overdue_counted = True
            event_type = AuditEventType.FINE_ACCRUED

        member.current_fines_due = member.current_fines_due + delta

        with self.store.storage.atomic():
            self.audit.log_event(
                event_type=event_type,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    'member_id': member.id,
                    'days_overdue': new_days,
                    'fine_amount': new_fine,
                    'delta': delta,
                    'run_date': today
                }
            )
            self.store.atomic_save(loan=loan, member=member)

        return loan, member, delta

    def _credit_limit(self, member: Member) -> Money:
        if member.credit_limit is not None:
            return member.credit_limit
        return self.settings.credit_limit()
