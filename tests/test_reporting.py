"""
Test suite for fine reporting
"""

import pytest
from datetime import date, datetime, timedelta, timezone

from library_fines.config import LibraryFinesConfig
from library_fines.currency import Money
from library_fines.errors import NotFound
from library_fines.notifications import NullNotifier
from library_fines.reporting import FineReporter
from library_fines.settings import FixedClock, StaticSettingsProvider
from library_fines.storage import InMemoryStorage
from library_fines.system import LibraryFineSystem


TODAY = date(2024, 3, 15)


@pytest.fixture
def clock():
    return FixedClock(TODAY)


@pytest.fixture
def system(clock):
    config = LibraryFinesConfig(storage_backend="memory", scheduler_enabled=False)
    return LibraryFineSystem(
        config=config,
        storage=InMemoryStorage(),
        clock=clock,
        settings=StaticSettingsProvider(config=config),
        notifier=NullNotifier()
    )


@pytest.fixture
def operator(system):
    return system.circulation.register_operator("librarian", "Lee Brarian")


def lend_overdue(system, member_id, days_overdue, title):
    due = TODAY - timedelta(days=days_overdue)
    return system.circulation.lend(member_id, f"BOOK-{title}", book_title=title,
                                   borrow_date=due - timedelta(days=14), due_date=due)


class TestFineSummary:
    """Test the per-member summary"""

    def test_summary(self, system, operator):
        member = system.circulation.register_member("Ada Reader")
        paid = lend_overdue(system, member.id, 5, "Dune")
        lend_overdue(system, member.id, 3, "Emma")
        lend_overdue(system, member.id, 8, "Ulysses")
        system.accrual_engine.run()
        system.payment_processor.pay(paid.id, "10.00", "CASH", operator_id=operator.id)

        summary = system.reporter.get_fine_summary(member.id)

        assert summary.member_name == "Ada Reader"
        assert summary.current_fines_due == Money.of("22.00")
        assert summary.total_pending_fines == Money.of("22.00")
        assert summary.total_fines_paid == Money.of("10.00")
        assert summary.overdue_books_count == 2
        assert summary.is_consistent
        assert not summary.is_banned
        # Oldest due date first
        assert [loan.book_title for loan in summary.pending_loans] == ["Ulysses", "Emma"]
        assert len(summary.recent_transactions) == 1

    def test_recent_transactions_are_limited(self, system, operator):
        reporter = FineReporter(system.store, recent_transaction_limit=2)
        member = system.circulation.register_member("Ada Reader")
        for title in ("A", "B", "C"):
            loan = lend_overdue(system, member.id, 1, title)
            system.accrual_engine.run()
            system.payment_processor.pay(loan.id, "2.00", "CARD", operator_id=operator.id)

        assert len(reporter.get_fine_summary(member.id).recent_transactions) == 2

    def test_unknown_member(self, system):
        with pytest.raises(NotFound):
            system.reporter.get_fine_summary("ghost")


class TestTotals:
    """Test library-wide totals"""

    def test_totals(self, system, operator):
        ada = system.circulation.register_member("Ada")
        bob = system.circulation.register_member("Bob")
        paid = lend_overdue(system, ada.id, 5, "Dune")
        waived = lend_overdue(system, ada.id, 2, "Emma")
        lend_overdue(system, bob.id, 7, "Ulysses")
        system.accrual_engine.run()

        system.payment_processor.pay(paid.id, "10.00", "CASH", operator_id=operator.id)
        system.payment_processor.waive(waived.id, "first offence", operator.id)

        totals = system.reporter.get_totals()
        assert totals.collected == Money.of("10.00")
        assert totals.waived == Money.of("4.00")
        assert totals.outstanding == Money.of("14.00")
        assert totals.to_dict() == {'collected': "10.00", 'waived': "4.00", 'outstanding': "14.00"}

    def test_transactions_between(self, system, operator, clock):
        member = system.circulation.register_member("Ada")
        first = lend_overdue(system, member.id, 3, "Dune")
        second = lend_overdue(system, member.id, 3, "Emma")
        system.accrual_engine.run()

        system.payment_processor.pay(first.id, "6.00", "CASH", operator_id=operator.id)
        clock.advance(2)
        system.accrual_engine.run()
        system.payment_processor.pay(second.id, "10.00", "CASH", operator_id=operator.id)

        day = datetime(2024, 3, 15, tzinfo=timezone.utc)
        found = system.reporter.get_transactions_between(day, day + timedelta(days=1))
        assert [t.loan_id for t in found] == [first.id]
