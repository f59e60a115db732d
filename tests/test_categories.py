from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from categories import (
    DEFAULT_CATEGORIES,
    UNKNOWN_CATEGORY_NAME,
    category_lookup,
    display_name,
    resolve_categories,
    resolve_category,
)
from database import Base
from models import (
    Category,
    Partnership,
    PartnershipMember,
    Transaction,
    TransactionType,
    User,
)
from schemas import CategoryIn
from services import CategoryService, ConflictError, ForbiddenError, NotFoundError


def _user(session: Session, name: str) -> User:
    user = User(name=name, email=f"{name.lower()}@example.com", password_hash="x")
    session.add(user)
    session.flush()
    return user


def _pair(session: Session, a: User, b: User) -> None:
    session.add(
        Partnership(
            members=[PartnershipMember(user_id=a.id), PartnershipMember(user_id=b.id)]
        )
    )
    session.flush()


def _custom(session: Session, owner: User, name: str, type_=TransactionType.expense) -> Category:
    category = Category(
        user_id=owner.id, created_by=owner.id, name=name, type=type_, color="#112233"
    )
    session.add(category)
    session.flush()
    return category


def test_default_catalog_shape() -> None:
    assert len(DEFAULT_CATEGORIES) == 14
    income = [c for c in DEFAULT_CATEGORIES if c.type == TransactionType.income]
    assert len(income) == 4
    for category in DEFAULT_CATEGORIES:
        assert category.id.startswith("default_")
        assert category.name == "category_" + category.id[len("default_"):]
        assert not category.is_custom


def test_display_name_translates_only_defaults() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    def translate(key: str) -> str:
        return f"T[{key}]"

    with Session(engine) as session:
        alice = _user(session, "Alice")
        _custom(session, alice, "category_groceries")
        categories = resolve_categories(session, [alice.id])

    for category in categories:
        if category.is_custom:
            assert display_name(category, translate) == "category_groceries"
        else:
            assert display_name(category, translate) == f"T[{category.name}]"


def test_resolve_categories_includes_partner_but_not_strangers() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice = _user(session, "Alice")
        bob = _user(session, "Bob")
        carol = _user(session, "Carol")
        _pair(session, alice, bob)
        _custom(session, alice, "Pets")
        _custom(session, bob, "Gifts", TransactionType.income)
        _custom(session, carol, "Secret")

        categories = CategoryService(session, alice.id).list_all()
        names = [c.name for c in categories if c.is_custom]
        assert sorted(names) == ["Gifts", "Pets"]
        assert len(categories) == 16

        kinds = [c.type for c in categories]
        first_expense = kinds.index(TransactionType.expense)
        assert all(k == TransactionType.expense for k in kinds[first_expense:])


def test_unknown_category_resolves_to_placeholder() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice = _user(session, "Alice")
        lookup = category_lookup(session, [alice.id])

    resolved = resolve_category(lookup, "gone")
    assert resolved.name == UNKNOWN_CATEGORY_NAME
    assert resolved.type == TransactionType.expense
    assert resolve_category(lookup, "default_salary").type == TransactionType.income


def test_default_categories_cannot_be_edited_or_deleted() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice = _user(session, "Alice")
        service = CategoryService(session, alice.id)
        payload = CategoryIn(name="Food", type=TransactionType.expense, color="#000000")
        with pytest.raises(ForbiddenError):
            service.update("default_groceries", payload)
        with pytest.raises(ForbiddenError):
            service.delete("default_groceries")


def test_partner_category_is_forbidden_and_stranger_category_is_missing() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice = _user(session, "Alice")
        bob = _user(session, "Bob")
        carol = _user(session, "Carol")
        _pair(session, alice, bob)
        bobs = _custom(session, bob, "Tools")
        carols = _custom(session, carol, "Hidden")
        service = CategoryService(session, alice.id)

        with pytest.raises(ForbiddenError):
            service.delete(bobs.id)
        with pytest.raises(NotFoundError):
            service.delete(carols.id)


def test_update_and_delete_own_category() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice = _user(session, "Alice")
        service = CategoryService(session, alice.id)
        created = service.create(
            CategoryIn(name=" Pets ", type=TransactionType.expense, color="#aabbcc")
        )
        assert created.name == "Pets"
        assert created.is_custom

        updated = service.update(
            created.id, CategoryIn(name="Animals", type=TransactionType.expense, color="#000000")
        )
        assert updated.name == "Animals"

        service.delete(created.id)
        assert session.get(Category, created.id) is None


def test_category_in_use_cannot_be_deleted() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice = _user(session, "Alice")
        pets = _custom(session, alice, "Pets")
        session.add(
            Transaction(
                user_id=alice.id,
                created_by=alice.id,
                category_id=pets.id,
                description="Food",
                amount=Decimal("20.00"),
                date=datetime(2025, 6, 3),
            )
        )
        session.commit()

        with pytest.raises(ConflictError):
            CategoryService(session, alice.id).delete(pets.id)
        assert session.scalar(select(Category).where(Category.id == pets.id)) is not None
