"""
Ban Enforcement Module

Member suspension state machine (ACTIVE <-> BANNED). Escalation bans members
with a loan overdue beyond their threshold; the expiry sweep restores members
whose ban period has ended. Bans without an end date are permanent and only
an operator can deal with them.
"""

import logging
from datetime import date, timedelta
from typing import List, Optional

from .audit import AuditTrail, AuditEventType
from .errors import NotFound, InvalidInput, InvalidTransition
from .ledger_store import LedgerStore
from .logging_config import get_logger, log_action
from .models import Loan, Member
from .notifications import Notifier, notify_safely
from .retry import run_with_retry
from .settings import Clock, SettingsProvider


def ban_reason_for(loan: Loan) -> str:
    return f"Excessive overdue: Book '{loan.display_title}' overdue by {loan.days_overdue} days"


def record_batch_failure(audit: AuditTrail, logger: logging.Logger, job: str,
                         entity_type: str, entity_id: str, error: Exception) -> None:
    """Audit one skipped item of a batch job. The batch carries on either way."""
    try:
        audit.log_event(
            event_type=AuditEventType.BATCH_ITEM_FAILED,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata={'job': job, 'error': str(error), 'error_type': type(error).__name__}
        )
    except Exception as e:
        logger.error(f"Could not audit {job} failure for {entity_type} {entity_id}: {e}")


class BanEnforcer:
    """Applies and lifts member suspensions"""

    def __init__(
        self,
        store: LedgerStore,
        clock: Clock,
        settings: SettingsProvider,
        notifier: Notifier,
        audit: Optional[AuditTrail] = None,
        max_retries: int = 3
    ):
        self.store = store
        self.clock = clock
        self.settings = settings
        self.notifier = notifier
        self.audit = audit or AuditTrail(store.storage)
        self.max_retries = max_retries
        self.logger = get_logger("library_fines.bans")

    def escalate(self, today: Optional[date] = None) -> List[str]:
        """
        Ban every active member holding an unreturned loan whose cached
        ``days_overdue`` exceeds the member's threshold.

        Returns:
            IDs of the members banned by this pass
        """
        today = today or self.clock.today()
        loans = [loan for loan in self.store.find_overdue_loans(today) if loan.days_overdue > 0]
        # Worst offender first so the ban reason names it
        loans.sort(key=lambda loan: loan.days_overdue, reverse=True)

        banned: List[str] = []
        for loan in loans:
            if loan.member_id in banned:
                continue
            try:
                member = run_with_retry(
                    lambda: self._ban_for_loan(loan.id, today),
                    self.max_retries,
                    self.logger,
                    f"ban escalation for loan {loan.id}"
                )
            except Exception as e:
                self.logger.exception(f"Ban escalation failed for loan {loan.id}: {e}")
                record_batch_failure(self.audit, self.logger, "ban_escalation", "loan", loan.id, e)
                continue

            if member is not None:
                banned.append(member.id)
                notify_safely(self.logger, self.notifier.banned, member, loan)

        if banned:
            self.logger.info(f"Ban escalation for {today.isoformat()}: {len(banned)} members banned")
        return banned

    def _ban_for_loan(self, loan_id: str, today: date) -> Optional[Member]:
        loan = self.store.find_loan(loan_id)
        if loan is None:
            raise NotFound("loan", loan_id)
        if loan.returned:
            return None

        member = self.store.find_member(loan.member_id)
        if member is None:
            raise NotFound("member", loan.member_id)
        if member.is_banned:
            return None
        if loan.days_overdue <= self._max_overdue_days(member):
            return None

        member.is_banned = True
        member.ban_reason = ban_reason_for(loan)
        member.ban_start_date = today
        member.ban_end_date = today + timedelta(days=self.settings.ban_duration_days())
        member.total_ban_count += 1

        with self.store.storage.atomic():
            self.audit.log_event(
                event_type=AuditEventType.MEMBER_BANNED,
                entity_type="member",
                entity_id=member.id,
                metadata={
                    'loan_id': loan.id,
                    'reason': member.ban_reason,
                    'ban_start_date': member.ban_start_date,
                    'ban_end_date': member.ban_end_date
                }
            )
            self.store.atomic_save(member=member)

        log_action(
            self.logger, "warning",
            f"Member {member.id} banned until {member.ban_end_date}: {member.ban_reason}",
            action="ban_member",
            resource=f"member:{member.id}"
        )
        return member

    def sweep_expired(self) -> List[str]:
        """
        Restore every banned member whose ban end date has passed.

        Returns:
            IDs of the members restored
        """
        today = self.clock.today()
        restored: List[str] = []

        for candidate in self.store.find_banned_members():
            if not candidate.is_ban_expired(today):
                continue
            try:
                member = run_with_retry(
                    lambda: self._lift_ban(candidate.id, today),
                    self.max_retries,
                    self.logger,
                    f"ban expiry for member {candidate.id}"
                )
            except Exception as e:
                self.logger.exception(f"Ban expiry failed for member {candidate.id}: {e}")
                record_batch_failure(self.audit, self.logger, "ban_sweep", "member", candidate.id, e)
                continue

            if member is not None:
                restored.append(member.id)
                notify_safely(self.logger, self.notifier.restored, member)

        self.audit.log_event(
            event_type=AuditEventType.BAN_SWEEP_COMPLETED,
            entity_type="batch",
            entity_id=f"ban-sweep-{today.isoformat()}",
            metadata={'run_date': today, 'restored': len(restored)}
        )
        self.logger.info(f"Ban sweep for {today.isoformat()}: {len(restored)} members restored")
        return restored

    def _lift_ban(self, member_id: str, today: date) -> Optional[Member]:
        member = self.store.find_member(member_id)
        if member is None:
            raise NotFound("member", member_id)
        if not member.is_ban_expired(today):
            return None

        previous_reason = member.ban_reason
        member.is_banned = False
        member.ban_reason = None
        member.ban_start_date = None
        member.ban_end_date = None

        with self.store.storage.atomic():
            self.audit.log_event(
                event_type=AuditEventType.MEMBER_BAN_LIFTED,
                entity_type="member",
                entity_id=member.id,
                metadata={'previous_reason': previous_reason, 'lifted_on': today}
            )
            self.store.atomic_save(member=member)

        return member

    def impose_ban(self, member_id: str, reason: str, operator_id: str,
                   days: Optional[int] = None) -> Member:
        """
        Manually ban a member. ``days=None`` bans permanently; the expiry
        sweep never lifts such a ban.
        """
        if not reason or not reason.strip():
            raise InvalidInput("A ban reason is required")
        if days is not None and days <= 0:
            raise InvalidInput("Ban duration must be a positive number of days")
        if self.store.find_operator(operator_id) is None:
            raise NotFound("operator", operator_id)

        def attempt() -> Member:
            member = self.store.find_member(member_id)
            if member is None:
                raise NotFound("member", member_id)
            if member.is_banned:
                raise InvalidTransition(f"Member {member_id} is already banned")

            today = self.clock.today()
            member.is_banned = True
            member.ban_reason = reason.strip()
            member.ban_start_date = today
            member.ban_end_date = today + timedelta(days=days) if days is not None else None
            member.total_ban_count += 1

            with self.store.storage.atomic():
                self.audit.log_event(
                    event_type=AuditEventType.MEMBER_BANNED,
                    entity_type="member",
                    entity_id=member.id,
                    metadata={
                        'reason': member.ban_reason,
                        'ban_start_date': member.ban_start_date,
                        'ban_end_date': member.ban_end_date,
                        'manual': True
                    },
                    user_id=operator_id
                )
                self.store.atomic_save(member=member)
            return member

        member = run_with_retry(attempt, self.max_retries, self.logger, f"manual ban of member {member_id}")
        log_action(
            self.logger, "warning",
            f"Member {member_id} banned by operator",
            user_id=operator_id,
            action="ban_member",
            resource=f"member:{member_id}",
            extra={'permanent': days is None}
        )
        return member

    def _max_overdue_days(self, member: Member) -> int:
        if member.max_allowed_overdue_days is not None:
            return member.max_allowed_overdue_days
        return self.settings.max_overdue_days()
