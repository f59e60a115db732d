"""Monthly materialization of recurring transactions and annual rollover.

Recurring "rules" are ordinary transaction rows with ``is_fixed`` set; each
month the job copies them into independent ``once`` rows. Annual rows are
different: the row itself is moved forward to its next renewal date.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, time
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from config import get_settings
from models import MONTHLY_REPEAT_TYPES, RepeatType, Transaction
from periods import clamp_day, days_in_month

logger = logging.getLogger(__name__)


def local_now() -> datetime:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).replace(tzinfo=None)


@dataclass
class MaterializationResult:
    ran: bool = False
    created_count: int = 0
    updated_count: int = 0
    skipped_count: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "success": True,
            "message": f"Created {self.created_count} recurring transactions",
            "createdCount": self.created_count,
            "updatedCount": self.updated_count,
        }


def occurrence_for_month(template: Transaction, year: int, month: int) -> datetime:
    day = clamp_day(year, month, template.date.day)
    return datetime.combine(day, template.date.time())


def next_annual_date(current: datetime, now: datetime) -> Optional[datetime]:
    """Next renewal for an annual row, or None while the stored date is current."""
    behind = now.year > current.year or (
        now.year == current.year and now.month > current.month
    )
    if not behind:
        return None
    year = now.year if now.month <= current.month else now.year + 1
    day = min(current.day, days_in_month(year, current.month))
    return current.replace(year=year, day=day)


class RecurringMaterializer:
    def __init__(self, session: Session) -> None:
        self.session = session

    def run(self, now: Optional[datetime] = None) -> MaterializationResult:
        now = now or local_now()
        result = MaterializationResult()
        if now.day != 1:
            logger.info(f"recurring_run: skipped day={now.day}")
            return result
        result.ran = True
        self._materialize_monthly(now, result)
        self._roll_annual(now, result)
        logger.info(
            f"recurring_run: created={result.created_count} "
            f"annual_updated={result.updated_count} skipped={result.skipped_count}"
        )
        return result

    def candidates(self, now: datetime) -> list[Transaction]:
        first_of_month = datetime(now.year, now.month, 1)
        stmt = (
            select(Transaction)
            .where(
                Transaction.is_fixed.is_(True),
                or_(
                    Transaction.repeat_type.in_(MONTHLY_REPEAT_TYPES),
                    Transaction.repeat_type.is_(None),
                ),
                or_(
                    Transaction.end_date.is_(None),
                    Transaction.end_date >= first_of_month,
                ),
            )
            .order_by(Transaction.created_at, Transaction.id)
        )
        return list(self.session.scalars(stmt).all())

    def _materialize_monthly(self, now: datetime, result: MaterializationResult) -> None:
        for template in self.candidates(now):
            if template.end_date is not None and now > template.end_date:
                result.skipped_count += 1
                continue
            if (template.date.year, template.date.month) > (now.year, now.month):
                # Starts in a later month.
                result.skipped_count += 1
                continue
            occurrence = occurrence_for_month(template, now.year, now.month)
            if self._occurrence_exists(template, occurrence):
                result.skipped_count += 1
                continue
            self.session.add(
                Transaction(
                    user_id=template.user_id,
                    created_by=template.created_by,
                    category_id=template.category_id,
                    description=template.description,
                    amount=template.amount,
                    date=occurrence,
                    is_fixed=False,
                    is_private=template.is_private,
                    repeat_type=RepeatType.once,
                    end_date=None,
                )
            )
            # Committed one by one; a re-run skips whatever already landed.
            self.session.commit()
            result.created_count += 1

    def _occurrence_exists(self, template: Transaction, occurrence: datetime) -> bool:
        day_start = datetime.combine(occurrence.date(), time.min)
        day_end = datetime.combine(occurrence.date(), time(23, 59, 59, 999999))
        stmt = (
            select(Transaction.id)
            .where(
                Transaction.user_id == template.user_id,
                Transaction.category_id == template.category_id,
                Transaction.description == template.description,
                Transaction.amount == template.amount,
                Transaction.date.between(day_start, day_end),
            )
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none() is not None

    def _roll_annual(self, now: datetime, result: MaterializationResult) -> None:
        stmt = select(Transaction).where(Transaction.repeat_type == RepeatType.annual)
        for txn in self.session.scalars(stmt).all():
            next_date = next_annual_date(txn.date, now)
            if next_date is None:
                continue
            logger.info(
                f"annual_rollover: transaction={txn.id} from={txn.date.date()} "
                f"to={next_date.date()}"
            )
            txn.date = next_date
            result.updated_count += 1
        self.session.commit()
