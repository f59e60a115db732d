"""Built-in category catalog and resolution against custom categories.

Default categories live only in code. Their ``name`` is a translation key so
the same rows serve every locale; custom categories are stored per user and
carry a literal name.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Iterable, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import Category, TransactionType

DEFAULT_CATEGORY_PREFIX = "default_"
UNKNOWN_CATEGORY_NAME = "Unknown"
UNKNOWN_CATEGORY_COLOR = "#6B7280"


@dataclass(frozen=True)
class ResolvedCategory:
    id: str
    name: str
    type: TransactionType
    color: str
    is_custom: bool
    user_id: Optional[str] = None

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "color": self.color,
            "isCustom": self.is_custom,
            "userId": self.user_id,
        }


def _default(key: str, type_: TransactionType, color: str) -> ResolvedCategory:
    return ResolvedCategory(
        id=f"{DEFAULT_CATEGORY_PREFIX}{key}",
        name=f"category_{key}",
        type=type_,
        color=color,
        is_custom=False,
    )


DEFAULT_CATEGORIES: tuple[ResolvedCategory, ...] = (
    _default("salary", TransactionType.income, "#10B981"),
    _default("freelance", TransactionType.income, "#3B82F6"),
    _default("investment", TransactionType.income, "#8B5CF6"),
    _default("business", TransactionType.income, "#06B6D4"),
    _default("groceries", TransactionType.expense, "#EF4444"),
    _default("transportation", TransactionType.expense, "#F59E0B"),
    _default("housing", TransactionType.expense, "#6366F1"),
    _default("utilities", TransactionType.expense, "#EC4899"),
    _default("entertainment", TransactionType.expense, "#14B8A6"),
    _default("healthcare", TransactionType.expense, "#F97316"),
    _default("shopping", TransactionType.expense, "#84CC16"),
    _default("education", TransactionType.expense, "#8B5CF6"),
    _default("insurance", TransactionType.expense, "#6B7280"),
    _default("dining", TransactionType.expense, "#F59E0B"),
)

DEFAULT_CATEGORIES_BY_ID: Mapping[str, ResolvedCategory] = MappingProxyType(
    {category.id: category for category in DEFAULT_CATEGORIES}
)


def is_default_category(category_id: str) -> bool:
    return category_id.startswith(DEFAULT_CATEGORY_PREFIX)


def unknown_category(category_id: str) -> ResolvedCategory:
    return ResolvedCategory(
        id=category_id,
        name=UNKNOWN_CATEGORY_NAME,
        type=TransactionType.expense,
        color=UNKNOWN_CATEGORY_COLOR,
        is_custom=False,
    )


def from_custom(category: Category) -> ResolvedCategory:
    return ResolvedCategory(
        id=category.id,
        name=category.name,
        type=category.type,
        color=category.color,
        is_custom=True,
        user_id=category.user_id,
    )


def display_name(category: ResolvedCategory, translate: Callable[[str], str]) -> str:
    if not category.is_custom:
        return translate(category.name)
    return category.name


def sort_categories(
    categories: Iterable[ResolvedCategory],
    translate: Optional[Callable[[str], str]] = None,
) -> list[ResolvedCategory]:
    translate = translate or (lambda key: key)
    return sorted(
        categories,
        key=lambda c: (
            0 if c.type == TransactionType.income else 1,
            display_name(c, translate).lower(),
        ),
    )


def custom_categories_for(session: Session, user_ids: Iterable[str]) -> list[Category]:
    ids = list(user_ids)
    if not ids:
        return []
    stmt = select(Category).where(Category.user_id.in_(ids)).order_by(Category.name)
    return list(session.scalars(stmt).all())


def category_lookup(
    session: Session, user_ids: Iterable[str]
) -> dict[str, ResolvedCategory]:
    lookup: dict[str, ResolvedCategory] = dict(DEFAULT_CATEGORIES_BY_ID)
    for category in custom_categories_for(session, user_ids):
        lookup[category.id] = from_custom(category)
    return lookup


def resolve_category(
    lookup: Mapping[str, ResolvedCategory], category_id: str
) -> ResolvedCategory:
    return lookup.get(category_id) or unknown_category(category_id)


def resolve_categories(session: Session, user_ids: Iterable[str]) -> list[ResolvedCategory]:
    """Defaults plus every custom category owned by the given users.

    Callers pass the user together with their partner, if any.
    """
    return sort_categories(category_lookup(session, user_ids).values())
