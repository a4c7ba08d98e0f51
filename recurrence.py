import logging
from datetime import date
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import Transaction
from periods import advance_date, local_today
from services import TransactionService

logger = logging.getLogger(__name__)


class RecurringEngine:
    """Spawns ledger entries from recurring templates whose run date has arrived.

    One occurrence is posted per template per scan, dated the scan day. The
    template then moves forward exactly one period from its previous run date,
    so a template that fell several periods behind catches up one day at a
    time instead of back-filling. A template that already posted today is
    left alone until tomorrow.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def post_template(self, template: Transaction, today: Optional[date] = None) -> bool:
        today = today or local_today()
        if not template.is_recurring or template.next_run_date is None:
            return False
        if template.next_run_date > today:
            return False
        if template.frequency is None:
            logger.warning(
                f"recurring_skip: template_id={template.id} reason=missing_frequency"
            )
            return False
        if self._posted_on(template, today):
            logger.info(
                f"recurring_skip: template_id={template.id} reason=posted_today"
            )
            return False

        occurrence_date = template.next_run_date
        posted = self._post_occurrence(template, occurrence_date, today)
        template.next_run_date = advance_date(occurrence_date, template.frequency)
        return posted

    def post_due(self, today: Optional[date] = None) -> int:
        today = today or local_today()
        templates = TransactionService(self.session).due_recurring(today)
        count = 0
        for template in templates:
            if self.post_template(template, today):
                count += 1
        self.session.commit()
        logger.info(
            f"recurring_run: today={today.isoformat()} due={len(templates)} posted={count}"
        )
        return count

    def _posted_on(self, template: Transaction, day: date) -> bool:
        stmt = (
            select(Transaction.id)
            .where(Transaction.origin_id == template.id, Transaction.date == day)
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none() is not None

    def _post_occurrence(
        self, template: Transaction, occurrence_date: date, today: date
    ) -> bool:
        exists_stmt = (
            select(Transaction.id)
            .where(
                Transaction.origin_id == template.id,
                Transaction.occurrence_date == occurrence_date,
            )
            .limit(1)
        )
        existing = self.session.execute(exists_stmt).scalar_one_or_none()
        if existing:
            return False

        txn = Transaction(
            type=template.type,
            category_id=template.category_id,
            amount_cents=template.amount_cents,
            date=today,
            tags=template.tags,
            is_recurring=False,
            frequency=template.frequency,
            exclude_from_limits=template.exclude_from_limits,
            origin_id=template.id,
            occurrence_date=occurrence_date,
        )
        self.session.add(txn)
        self.session.flush()
        return True
