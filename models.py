from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def new_id() -> str:
    return str(uuid4())


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class RepeatType(str, Enum):
    once = "once"
    forever = "forever"
    three_months = "3months"
    four_months = "4months"
    six_months = "6months"
    twelve_months = "12months"
    annual = "annual"
    until = "until"


REPEAT_TYPE_ENUM = SAEnum(
    RepeatType,
    name="repeattype",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)

# Repeat types that drive monthly materialization.
MONTHLY_REPEAT_TYPES = (
    RepeatType.forever,
    RepeatType.three_months,
    RepeatType.four_months,
    RepeatType.six_months,
    RepeatType.twelve_months,
    RepeatType.until,
)

LIMITED_REPEAT_MONTHS = {
    RepeatType.three_months: 3,
    RepeatType.four_months: 4,
    RepeatType.six_months: 6,
    RepeatType.twelve_months: 12,
}


class InvitationStatus(str, Enum):
    pending = "pending"
    accepted = "accepted"
    declined = "declined"
    expired = "expired"


class CurrencyCode(str, Enum):
    eur = "EUR"
    usd = "USD"
    gbp = "GBP"
    cad = "CAD"
    chf = "CHF"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")

    membership: Mapped[Optional["PartnershipMember"]] = relationship(
        "PartnershipMember", back_populates="user", uselist=False
    )

    @property
    def partner_id(self) -> Optional[str]:
        if self.membership is None:
            return None
        for member in self.membership.partnership.members:
            if member.user_id != self.id:
                return member.user_id
        return None


class Partnership(Base, TimestampMixin):
    """One row per paired couple; the members table holds both sides."""

    __tablename__ = "partnerships"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)

    members: Mapped[list["PartnershipMember"]] = relationship(
        "PartnershipMember",
        back_populates="partnership",
        cascade="all, delete-orphan",
    )


class PartnershipMember(Base):
    __tablename__ = "partnership_members"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    partnership_id: Mapped[str] = mapped_column(
        ForeignKey("partnerships.id", ondelete="CASCADE"), nullable=False
    )
    # A user can belong to at most one partnership.
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True
    )

    partnership: Mapped["Partnership"] = relationship(
        "Partnership", back_populates="members"
    )
    user: Mapped["User"] = relationship("User", back_populates="membership")


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    created_by: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    color: Mapped[str] = mapped_column(String(7), nullable=False)

    __table_args__ = (Index("ix_categories_user", "user_id"),)


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    created_by: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    # Either a built-in "default_*" id or a custom category id, so no FK.
    category_id: Mapped[str] = mapped_column(String(36), nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    is_fixed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_private: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    repeat_type: Mapped[Optional[RepeatType]] = mapped_column(
        REPEAT_TYPE_ENUM, default=RepeatType.once
    )
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime)

    creator: Mapped["User"] = relationship("User", foreign_keys=[created_by])

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_fixed", "is_fixed", "repeat_type"),
        CheckConstraint("amount > 0", name="amount_positive"),
    )


class ShoppingList(Base, TimestampMixin):
    __tablename__ = "lists"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    created_by: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    color: Mapped[str] = mapped_column(String(7), nullable=False, default="#3B82F6")
    is_shared: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    creator: Mapped["User"] = relationship("User", foreign_keys=[created_by])
    items: Mapped[list["ListItem"]] = relationship(
        "ListItem",
        back_populates="shopping_list",
        cascade="all, delete-orphan",
        order_by="ListItem.created_at.desc()",
    )


class ListItem(Base, TimestampMixin):
    __tablename__ = "list_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    list_id: Mapped[str] = mapped_column(
        ForeignKey("lists.id", ondelete="CASCADE"), nullable=False
    )
    created_by: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    estimated_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))
    category_id: Mapped[str] = mapped_column(String(36), nullable=False)
    is_checked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    checked_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    transaction_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("transactions.id", ondelete="SET NULL")
    )

    shopping_list: Mapped["ShoppingList"] = relationship(
        "ShoppingList", back_populates="items"
    )
    creator: Mapped["User"] = relationship("User", foreign_keys=[created_by])


class PartnerInvitation(Base, TimestampMixin):
    __tablename__ = "partner_invitations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    from_user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    to_user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[InvitationStatus] = mapped_column(
        SAEnum(InvitationStatus), nullable=False, default=InvitationStatus.pending
    )
    token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    from_user: Mapped["User"] = relationship("User", foreign_keys=[from_user_id])
    to_user: Mapped["User"] = relationship("User", foreign_keys=[to_user_id])

    __table_args__ = (
        Index("ix_partner_invitations_pair", "from_user_id", "to_user_id", "status"),
    )
