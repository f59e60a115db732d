from datetime import datetime
from decimal import Decimal

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from models import RepeatType, Transaction, User
from recurrence import RecurringMaterializer, next_annual_date


def _setup(session: Session) -> User:
    user = User(name="Alice", email="alice@example.com", password_hash="x")
    session.add(user)
    session.flush()
    return user


def _template(user: User, **overrides) -> Transaction:
    values = dict(
        user_id=user.id,
        created_by=user.id,
        category_id="default_housing",
        description="Rent",
        amount=Decimal("955.00"),
        date=datetime(2025, 1, 31, 10, 0),
        is_fixed=True,
        repeat_type=RepeatType.forever,
    )
    values.update(overrides)
    return Transaction(**values)


def _materialized(session: Session) -> list[Transaction]:
    stmt = select(Transaction).where(Transaction.is_fixed.is_(False)).order_by(Transaction.date)
    return list(session.scalars(stmt).all())


def test_next_annual_date_moves_to_next_renewal() -> None:
    current = datetime(2024, 3, 15, 9, 30)
    assert next_annual_date(current, datetime(2024, 3, 1)) is None
    assert next_annual_date(current, datetime(2024, 2, 1)) is None
    assert next_annual_date(current, datetime(2025, 2, 1)) == datetime(2025, 3, 15, 9, 30)
    assert next_annual_date(current, datetime(2025, 4, 1)) == datetime(2026, 3, 15, 9, 30)
    assert next_annual_date(datetime(2024, 2, 29), datetime(2025, 1, 1)) == datetime(2025, 2, 28)


def test_run_outside_first_day_is_a_no_op() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _setup(session)
        session.add_all([_template(user), _template(user, description="Gym")])
        session.commit()

        result = RecurringMaterializer(session).run(now=datetime(2025, 2, 15, 0, 5))

        assert not result.ran
        assert result.created_count == 0
        assert _materialized(session) == []


def test_materializes_template_with_clamped_day() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _setup(session)
        session.add(_template(user, is_private=True))
        session.commit()

        result = RecurringMaterializer(session).run(now=datetime(2025, 2, 1, 0, 5))

        assert result.created_count == 1
        assert result.to_dict()["createdCount"] == 1
        [row] = _materialized(session)
        assert row.date == datetime(2025, 2, 28, 10, 0)
        assert row.repeat_type == RepeatType.once
        assert row.end_date is None
        assert row.is_private
        assert row.amount == Decimal("955.00")


def test_second_run_on_same_day_is_idempotent() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _setup(session)
        session.add_all(
            [
                _template(user),
                _template(user, description="Streaming", amount=Decimal("12.99")),
            ]
        )
        session.commit()
        now = datetime(2025, 3, 1, 0, 5)

        first = RecurringMaterializer(session).run(now=now)
        before = [(t.description, t.date) for t in _materialized(session)]
        second = RecurringMaterializer(session).run(now=now)
        after = [(t.description, t.date) for t in _materialized(session)]

        assert first.created_count == 2
        assert second.created_count == 0
        assert before == after


def test_template_month_itself_is_not_duplicated() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _setup(session)
        session.add(_template(user, date=datetime(2025, 3, 1, 8, 0)))
        session.commit()

        result = RecurringMaterializer(session).run(now=datetime(2025, 3, 1, 0, 5))

        assert result.created_count == 0


def test_expired_and_future_templates_are_skipped() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _setup(session)
        session.add_all(
            [
                _template(
                    user,
                    description="Ended",
                    repeat_type=RepeatType.until,
                    end_date=datetime(2025, 3, 20),
                ),
                _template(
                    user,
                    description="Ends today",
                    repeat_type=RepeatType.three_months,
                    end_date=datetime(2025, 4, 1),
                ),
                _template(user, description="Later", date=datetime(2025, 6, 10)),
                _template(user, description="Legacy", repeat_type=None),
            ]
        )
        session.commit()

        result = RecurringMaterializer(session).run(now=datetime(2025, 4, 1, 0, 5))

        assert [t.description for t in _materialized(session)] == ["Legacy"]
        assert result.created_count == 1


def test_annual_rows_roll_forward_in_place() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _setup(session)
        annual = _template(
            user,
            description="Insurance",
            date=datetime(2024, 3, 15),
            is_fixed=False,
            repeat_type=RepeatType.annual,
        )
        session.add(annual)
        session.commit()

        result = RecurringMaterializer(session).run(now=datetime(2025, 2, 1))
        session.refresh(annual)

        assert result.updated_count == 1
        assert result.created_count == 0
        assert annual.date == datetime(2025, 3, 15)
        assert session.scalars(select(Transaction)).all() == [annual]

        again = RecurringMaterializer(session).run(now=datetime(2025, 2, 1))
        assert again.updated_count == 0
