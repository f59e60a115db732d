from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from rapidfuzz.distance import Levenshtein
from sqlalchemy import and_, case, delete, extract, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased, joinedload

from categories import (
    ResolvedCategory,
    category_lookup,
    from_custom,
    is_default_category,
    resolve_categories,
    resolve_category,
)
from models import (
    LIMITED_REPEAT_MONTHS,
    MONTHLY_REPEAT_TYPES,
    Category,
    InvitationStatus,
    ListItem,
    PartnerInvitation,
    Partnership,
    PartnershipMember,
    RepeatType,
    ShoppingList,
    Transaction,
    TransactionType,
    User,
)
from periods import MonthWindow, add_months, month_window
from recurrence import local_now
from schemas import (
    CategoryIn,
    CheckItemIn,
    ListIn,
    ListItemIn,
    LoginIn,
    ProfileIn,
    RegisterIn,
    TransactionIn,
)
from sessions import hash_password, verify_password

logger = logging.getLogger(__name__)

INVITATION_TTL = timedelta(days=7)
LEGACY_DESCRIPTION_MARKERS = ("(Monthly Budget)", "(Annual Renewal)")
PRIVATE_BUCKET = ResolvedCategory(
    id="private",
    name="category_private",
    type=TransactionType.expense,
    color="#9CA3AF",
    is_custom=False,
)


class ServiceError(ValueError):
    status_code = 400


class AuthenticationError(ServiceError):
    status_code = 401


class NotFoundError(ServiceError):
    status_code = 404


class ForbiddenError(ServiceError):
    status_code = 403


class ConflictError(ServiceError):
    status_code = 409


class AlreadyPartnered(ConflictError):
    pass


class DuplicateInvitation(ConflictError):
    pass


class InvitationExpired(ServiceError):
    pass


def partner_id_for(session: Session, user_id: str) -> Optional[str]:
    me = aliased(PartnershipMember)
    other = aliased(PartnershipMember)
    stmt = (
        select(other.user_id)
        .join(me, me.partnership_id == other.partnership_id)
        .where(me.user_id == user_id, other.user_id != user_id)
        .limit(1)
    )
    return session.execute(stmt).scalar_one_or_none()


def scope_user_ids(session: Session, user_id: str) -> list[str]:
    partner_id = partner_id_for(session, user_id)
    return [user_id, partner_id] if partner_id else [user_id]


def _money(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def user_summary(user: Optional[User]) -> Optional[dict[str, object]]:
    if user is None:
        return None
    return {"id": user.id, "name": user.name, "email": user.email}


def monthly_set_filter(window: MonthWindow):
    """Rows dated inside the month, plus annual rows renewing in that month.

    Annual rows match on month of year only, whatever their stored year.
    """
    return or_(
        and_(
            Transaction.date.between(window.start, window.end),
            or_(
                Transaction.repeat_type.is_(None),
                Transaction.repeat_type != RepeatType.annual,
            ),
        ),
        and_(
            Transaction.repeat_type == RepeatType.annual,
            extract("month", Transaction.date) == window.month,
        ),
    )


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def register(self, data: RegisterIn) -> User:
        email = data.email.strip().lower()
        existing = self.session.scalar(select(User).where(User.email == email))
        if existing:
            raise ConflictError("Email already registered")
        user = User(
            name=data.name.strip(),
            email=email,
            password_hash=hash_password(data.password),
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"user_registered: user={user.id}")
        return user

    def authenticate(self, data: LoginIn) -> User:
        user = self.session.scalar(
            select(User).where(User.email == data.email.strip().lower())
        )
        if not user or not verify_password(data.password, user.password_hash):
            raise AuthenticationError("Invalid email or password")
        return user

    def get(self, user_id: str) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def update_profile(self, user_id: str, data: ProfileIn) -> User:
        user = self.get(user_id)
        user.name = data.name.strip()
        user.currency = data.currency.value
        self.session.commit()
        self.session.refresh(user)
        return user

    def serialize(self, user: User) -> dict[str, object]:
        return {
            "id": user.id,
            "name": user.name,
            "email": user.email,
            "currency": user.currency,
            "partnerId": partner_id_for(self.session, user.id),
            "createdAt": _iso(user.created_at),
            "updatedAt": _iso(user.updated_at),
        }


class CategoryService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def scope(self) -> list[str]:
        return scope_user_ids(self.session, self.user_id)

    def list_all(self) -> list[ResolvedCategory]:
        return resolve_categories(self.session, self.scope())

    def lookup(self) -> dict[str, ResolvedCategory]:
        return category_lookup(self.session, self.scope())

    def require_usable(self, category_id: str) -> ResolvedCategory:
        category = self.lookup().get(category_id)
        if category is None:
            raise ServiceError("Invalid category")
        return category

    def create(self, data: CategoryIn) -> ResolvedCategory:
        category = Category(
            user_id=self.user_id,
            created_by=self.user_id,
            name=data.name.strip(),
            type=data.type,
            color=data.color,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return from_custom(category)

    def _get_editable(self, category_id: str, action: str) -> Category:
        if is_default_category(category_id):
            raise ForbiddenError(f"Cannot {action} default categories")
        category = self.session.get(Category, category_id)
        if not category or category.user_id not in self.scope():
            raise NotFoundError("Category not found")
        if category.user_id != self.user_id:
            raise ForbiddenError(f"Cannot {action} your partner's categories")
        return category

    def update(self, category_id: str, data: CategoryIn) -> ResolvedCategory:
        category = self._get_editable(category_id, "edit")
        category.name = data.name.strip()
        category.type = data.type
        category.color = data.color
        self.session.commit()
        self.session.refresh(category)
        return from_custom(category)

    def delete(self, category_id: str) -> None:
        category = self._get_editable(category_id, "delete")
        in_use = self.session.scalar(
            select(Transaction.id).where(Transaction.category_id == category_id).limit(1)
        ) or self.session.scalar(
            select(ListItem.id).where(ListItem.category_id == category_id).limit(1)
        )
        if in_use:
            raise ConflictError("Cannot delete category with existing transactions")
        self.session.delete(category)
        self.session.commit()


class TransactionService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def scope(self) -> list[str]:
        return scope_user_ids(self.session, self.user_id)

    def list_month(self, year: int, month: int) -> list[dict[str, object]]:
        scope = self.scope()
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.creator))
            .where(Transaction.user_id.in_(scope), monthly_set_filter(month_window(year, month)))
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        lookup = category_lookup(self.session, scope)
        return [self.serialize(txn, lookup) for txn in self.session.scalars(stmt).all()]

    def list_annual(self) -> list[dict[str, object]]:
        scope = self.scope()
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.creator))
            .where(
                Transaction.user_id.in_(scope),
                Transaction.repeat_type == RepeatType.annual,
            )
        )
        rows = sorted(
            self.session.scalars(stmt).all(),
            key=lambda t: (t.date.month, t.date.day, t.description.lower()),
        )
        lookup = category_lookup(self.session, scope)
        return [self.serialize(txn, lookup) for txn in rows]

    def serialize(
        self, txn: Transaction, lookup: dict[str, ResolvedCategory]
    ) -> dict[str, object]:
        hidden = txn.is_private and txn.created_by != self.user_id
        category = resolve_category(lookup, txn.category_id)
        return {
            "id": txn.id,
            "userId": txn.user_id,
            "createdBy": {"id": txn.creator.id, "name": txn.creator.name}
            if txn.creator
            else None,
            "categoryId": None if hidden else txn.category_id,
            "category": None if hidden else category.to_dict(),
            "description": None if hidden else txn.description,
            "amount": _money(txn.amount),
            "date": _iso(txn.date),
            "isFixed": txn.is_fixed,
            "repeatType": txn.repeat_type.value if txn.repeat_type else None,
            "endDate": _iso(txn.end_date),
            "isPrivate": txn.is_private,
            "createdAt": _iso(txn.created_at),
            "updatedAt": _iso(txn.updated_at),
        }

    def get(self, transaction_id: str) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id not in self.scope():
            raise NotFoundError("Transaction not found")
        return txn

    def _get_editable(self, transaction_id: str) -> Transaction:
        txn = self.get(transaction_id)
        if txn.created_by != self.user_id:
            raise ForbiddenError("Only the creator can modify this transaction")
        return txn

    def _apply(self, txn: Transaction, data: TransactionIn) -> None:
        owner_id = data.user_id or self.user_id
        if owner_id not in self.scope():
            raise ForbiddenError("Transactions can only be assigned to you or your partner")
        CategoryService(self.session, self.user_id).require_usable(data.category_id)

        end_date: Optional[datetime] = None
        if data.repeat_type in LIMITED_REPEAT_MONTHS:
            end_date = add_months(data.date, LIMITED_REPEAT_MONTHS[data.repeat_type])
        elif data.repeat_type == RepeatType.until:
            end_date = data.end_date

        txn.user_id = owner_id
        txn.category_id = data.category_id
        txn.description = data.description.strip()
        txn.amount = data.amount
        txn.date = data.date
        txn.repeat_type = data.repeat_type
        txn.is_fixed = data.repeat_type in MONTHLY_REPEAT_TYPES
        txn.end_date = end_date
        txn.is_private = data.is_private

    def create(self, data: TransactionIn) -> Transaction:
        txn = Transaction(created_by=self.user_id)
        self._apply(txn, data)
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def update(self, transaction_id: str, data: TransactionIn) -> Transaction:
        txn = self._get_editable(transaction_id)
        self._apply(txn, data)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: str) -> None:
        txn = self._get_editable(transaction_id)
        self.session.execute(
            update(ListItem)
            .where(ListItem.transaction_id == txn.id)
            .values(transaction_id=None)
        )
        self.session.delete(txn)
        self.session.commit()


class MetricsService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def monthly_transactions(self, window: MonthWindow, scope: list[str]) -> list[Transaction]:
        stmt = select(Transaction).where(
            Transaction.user_id.in_(scope), monthly_set_filter(window)
        )
        for marker in LEGACY_DESCRIPTION_MARKERS:
            stmt = stmt.where(~Transaction.description.contains(marker, autoescape=True))
        return list(self.session.scalars(stmt).all())

    def monthly_summary(self, year: int, month: int) -> dict[str, object]:
        """Income, expenses, balance and expense breakdown for one month.

        ``month`` is 1-12; the returned ``month`` is 0-indexed to match the
        dashboard query parameters.
        """
        window = month_window(year, month)
        scope = scope_user_ids(self.session, self.user_id)
        lookup = category_lookup(self.session, scope)

        income = Decimal("0")
        expenses = Decimal("0")
        buckets: dict[str, dict[str, object]] = {}
        for txn in self.monthly_transactions(window, scope):
            category = lookup.get(txn.category_id)
            if category is None:
                continue
            if category.type == TransactionType.income:
                income += txn.amount
                continue
            expenses += txn.amount
            if txn.is_private and txn.created_by != self.user_id:
                category = PRIVATE_BUCKET
            bucket = buckets.setdefault(
                category.id, {"category": category, "total": Decimal("0"), "count": 0}
            )
            bucket["total"] += txn.amount
            bucket["count"] += 1

        ordered = sorted(buckets.values(), key=lambda b: b["total"], reverse=True)
        breakdown = [
            {
                "categoryId": b["category"].id,
                "categoryName": b["category"].name,
                "color": b["category"].color,
                "type": b["category"].type.value,
                "isCustom": b["category"].is_custom,
                "total": _money(b["total"]),
                "transactionCount": b["count"],
            }
            for b in ordered
        ]
        return {
            "balance": {
                "balance": _money(income - expenses),
                "income": _money(income),
                "expenses": _money(expenses),
            },
            "categoryBreakdown": breakdown,
            "month": month - 1,
            "year": year,
        }


class ListService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def _accessible(self):
        partner_id = partner_id_for(self.session, self.user_id)
        if not partner_id:
            return ShoppingList.user_id == self.user_id
        return or_(
            ShoppingList.user_id == self.user_id,
            and_(ShoppingList.user_id == partner_id, ShoppingList.is_shared.is_(True)),
        )

    def _can_access(self, shopping_list: ShoppingList) -> bool:
        if shopping_list.user_id == self.user_id:
            return True
        partner_id = partner_id_for(self.session, self.user_id)
        return bool(partner_id) and shopping_list.user_id == partner_id and shopping_list.is_shared

    def list_lists(self) -> list[dict[str, object]]:
        lists = self.session.scalars(
            select(ShoppingList)
            .options(joinedload(ShoppingList.creator))
            .where(self._accessible())
            .order_by(ShoppingList.updated_at.desc())
        ).all()
        ids = [item.id for item in lists]
        counts: dict[str, tuple[int, int, Decimal]] = {}
        if ids:
            rows = self.session.execute(
                select(
                    ListItem.list_id,
                    func.count(ListItem.id).label("total"),
                    func.sum(case((ListItem.is_checked.is_(True), 1), else_=0)).label(
                        "checked"
                    ),
                    func.coalesce(func.sum(ListItem.estimated_price), 0).label(
                        "estimated"
                    ),
                )
                .where(ListItem.list_id.in_(ids))
                .group_by(ListItem.list_id)
            ).all()
            counts = {
                row.list_id: (int(row.total), int(row.checked or 0), Decimal(str(row.estimated)))
                for row in rows
            }
        result = []
        for shopping_list in lists:
            total, checked, estimated = counts.get(shopping_list.id, (0, 0, Decimal("0")))
            data = self.serialize_list(shopping_list)
            data.update(
                {
                    "itemCount": total,
                    "checkedCount": checked,
                    "totalEstimatedPrice": _money(estimated),
                }
            )
            result.append(data)
        return result

    def serialize_list(self, shopping_list: ShoppingList) -> dict[str, object]:
        creator = shopping_list.creator
        return {
            "id": shopping_list.id,
            "userId": shopping_list.user_id,
            "createdBy": {"id": creator.id, "name": creator.name} if creator else None,
            "title": shopping_list.title,
            "description": shopping_list.description,
            "color": shopping_list.color,
            "isShared": shopping_list.is_shared,
            "createdAt": _iso(shopping_list.created_at),
            "updatedAt": _iso(shopping_list.updated_at),
        }

    def serialize_item(
        self, item: ListItem, lookup: dict[str, ResolvedCategory]
    ) -> dict[str, object]:
        creator = item.creator
        return {
            "id": item.id,
            "listId": item.list_id,
            "createdBy": {"id": creator.id, "name": creator.name} if creator else None,
            "name": item.name,
            "estimatedPrice": _money(item.estimated_price),
            "categoryId": item.category_id,
            "category": resolve_category(lookup, item.category_id).to_dict(),
            "isChecked": item.is_checked,
            "checkedAt": _iso(item.checked_at),
            "transactionId": item.transaction_id,
            "createdAt": _iso(item.created_at),
            "updatedAt": _iso(item.updated_at),
        }

    def get_accessible(self, list_id: str) -> ShoppingList:
        shopping_list = self.session.scalar(
            select(ShoppingList).where(ShoppingList.id == list_id, self._accessible())
        )
        if not shopping_list:
            raise NotFoundError("List not found")
        return shopping_list

    def get_list(self, list_id: str) -> dict[str, object]:
        shopping_list = self.get_accessible(list_id)
        lookup = category_lookup(self.session, scope_user_ids(self.session, self.user_id))
        items = [self.serialize_item(item, lookup) for item in shopping_list.items]
        data = self.serialize_list(shopping_list)
        data.update(
            {
                "items": items,
                "itemCount": len(items),
                "checkedCount": sum(1 for item in shopping_list.items if item.is_checked),
                "totalEstimatedPrice": _money(
                    sum(
                        (item.estimated_price or Decimal("0") for item in shopping_list.items),
                        Decimal("0"),
                    )
                ),
            }
        )
        return data

    def _get_owned(self, list_id: str) -> ShoppingList:
        shopping_list = self.session.get(ShoppingList, list_id)
        if not shopping_list or shopping_list.user_id != self.user_id:
            raise NotFoundError("List not found or unauthorized")
        return shopping_list

    def create_list(self, data: ListIn) -> ShoppingList:
        shopping_list = ShoppingList(
            user_id=self.user_id,
            created_by=self.user_id,
            title=data.title.strip(),
            description=data.description or None,
            color=data.color,
            is_shared=data.is_shared,
        )
        self.session.add(shopping_list)
        self.session.commit()
        self.session.refresh(shopping_list)
        return shopping_list

    def update_list(self, list_id: str, data: ListIn) -> ShoppingList:
        shopping_list = self._get_owned(list_id)
        shopping_list.title = data.title.strip()
        shopping_list.description = data.description or None
        shopping_list.color = data.color
        shopping_list.is_shared = data.is_shared
        self.session.commit()
        self.session.refresh(shopping_list)
        return shopping_list

    def delete_list(self, list_id: str) -> None:
        shopping_list = self._get_owned(list_id)
        self.session.delete(shopping_list)
        self.session.commit()

    def _get_item(self, list_id: str, item_id: str) -> tuple[ListItem, ShoppingList]:
        item = self.session.scalar(
            select(ListItem)
            .options(joinedload(ListItem.shopping_list))
            .where(ListItem.id == item_id, ListItem.list_id == list_id)
        )
        if not item:
            raise NotFoundError("Item not found")
        if not self._can_access(item.shopping_list):
            raise ForbiddenError("Unauthorized")
        return item, item.shopping_list

    def _require_category(self, category_id: str) -> None:
        CategoryService(self.session, self.user_id).require_usable(category_id)

    def add_item(self, list_id: str, data: ListItemIn) -> ListItem:
        shopping_list = self.get_accessible(list_id)
        self._require_category(data.category_id)
        item = ListItem(
            list_id=shopping_list.id,
            created_by=self.user_id,
            name=data.name.strip(),
            estimated_price=data.estimated_price,
            category_id=data.category_id,
            is_checked=False,
        )
        self.session.add(item)
        shopping_list.updated_at = datetime.utcnow()
        self.session.commit()
        self.session.refresh(item)
        return item

    def update_item(self, list_id: str, item_id: str, data: ListItemIn) -> ListItem:
        item, shopping_list = self._get_item(list_id, item_id)
        self._require_category(data.category_id)
        item.name = data.name.strip()
        item.estimated_price = data.estimated_price
        item.category_id = data.category_id
        shopping_list.updated_at = datetime.utcnow()
        self.session.commit()
        self.session.refresh(item)
        return item

    def delete_item(self, list_id: str, item_id: str) -> None:
        item, shopping_list = self._get_item(list_id, item_id)
        self.session.delete(item)
        shopping_list.updated_at = datetime.utcnow()
        self.session.commit()

    def set_checked(
        self,
        list_id: str,
        item_id: str,
        data: CheckItemIn,
        *,
        now: Optional[datetime] = None,
    ) -> dict[str, object]:
        """Check or uncheck an item, creating or removing its transaction.

        The item update and the transaction insert/delete commit together.
        """
        item, shopping_list = self._get_item(list_id, item_id)
        now = now or local_now()
        created_id: Optional[str] = None
        deleted_id: Optional[str] = None
        try:
            if data.is_checked and not item.is_checked:
                amount = data.actual_price or item.estimated_price
                if amount and amount > 0:
                    txn = Transaction(
                        user_id=shopping_list.user_id,
                        created_by=self.user_id,
                        category_id=item.category_id,
                        description=f"{item.name} (from {shopping_list.title})",
                        amount=amount,
                        date=now,
                        is_fixed=False,
                        is_private=False,
                        repeat_type=RepeatType.once,
                    )
                    self.session.add(txn)
                    self.session.flush()
                    item.transaction_id = txn.id
                    created_id = txn.id
            elif not data.is_checked and item.is_checked and item.transaction_id:
                linked = self.session.get(Transaction, item.transaction_id)
                deleted_id = item.transaction_id
                item.transaction_id = None
                self.session.flush()
                if linked is not None:
                    self.session.delete(linked)

            item.is_checked = data.is_checked
            item.checked_at = now if data.is_checked else None
            shopping_list.updated_at = datetime.utcnow()
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(item)
        lookup = category_lookup(self.session, scope_user_ids(self.session, self.user_id))
        return {
            "item": self.serialize_item(item, lookup),
            "transactionCreated": created_id,
            "transactionDeleted": deleted_id,
        }


class PartnerService:
    def __init__(self, session: Session) -> None:
        self.session = session

    @staticmethod
    def _between(user_a: str, user_b: str):
        return or_(
            and_(
                PartnerInvitation.from_user_id == user_a,
                PartnerInvitation.to_user_id == user_b,
            ),
            and_(
                PartnerInvitation.from_user_id == user_b,
                PartnerInvitation.to_user_id == user_a,
            ),
        )

    def _expire_past_due(
        self, invitations: list[PartnerInvitation], now: datetime
    ) -> list[PartnerInvitation]:
        valid = []
        expired = 0
        for invitation in invitations:
            if invitation.expires_at <= now:
                invitation.status = InvitationStatus.expired
                expired += 1
            else:
                valid.append(invitation)
        if expired:
            self.session.commit()
            logger.info(f"partner_invitations_expired: count={expired}")
        return valid

    def invite_partner(
        self, from_user_id: str, to_user_id: str, *, now: Optional[datetime] = None
    ) -> PartnerInvitation:
        now = now or datetime.utcnow()
        if from_user_id == to_user_id:
            raise ServiceError("You cannot invite yourself")
        from_user = self.session.get(User, from_user_id)
        to_user = self.session.get(User, to_user_id)
        if not from_user or not to_user:
            raise NotFoundError("User not found")
        if partner_id_for(self.session, from_user_id) or partner_id_for(
            self.session, to_user_id
        ):
            raise AlreadyPartnered("One of the users already has a partner")

        pending = self.session.scalars(
            select(PartnerInvitation).where(
                self._between(from_user_id, to_user_id),
                PartnerInvitation.status == InvitationStatus.pending,
            )
        ).all()
        if self._expire_past_due(list(pending), now):
            raise DuplicateInvitation(
                "There is already a pending invitation between these users"
            )

        invitation = PartnerInvitation(
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            status=InvitationStatus.pending,
            token=secrets.token_hex(32),
            expires_at=now + INVITATION_TTL,
            created_at=now,
        )
        self.session.add(invitation)
        self.session.commit()
        self.session.refresh(invitation)
        logger.info(
            f"partner_invited: from={from_user_id} to={to_user_id} invitation={invitation.id}"
        )
        return invitation

    def accept_invitation(
        self,
        token: str,
        user_id: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> dict[str, object]:
        now = now or datetime.utcnow()
        invitation = self.session.scalar(
            select(PartnerInvitation).where(
                PartnerInvitation.token == token,
                PartnerInvitation.status == InvitationStatus.pending,
            )
        )
        if not invitation or (user_id and invitation.to_user_id != user_id):
            raise NotFoundError("Invalid or expired invitation")

        if invitation.expires_at <= now:
            invitation.status = InvitationStatus.expired
            self.session.commit()
            raise InvitationExpired("Invitation has expired")

        from_id = invitation.from_user_id
        to_id = invitation.to_user_id
        if partner_id_for(self.session, from_id) or partner_id_for(self.session, to_id):
            raise AlreadyPartnered("One of the users already has a partner")

        try:
            self.session.execute(
                delete(PartnerInvitation).where(
                    self._between(from_id, to_id),
                    PartnerInvitation.status == InvitationStatus.accepted,
                )
            )
            invitation.status = InvitationStatus.accepted
            self.session.add(
                Partnership(
                    members=[
                        PartnershipMember(user_id=from_id),
                        PartnershipMember(user_id=to_id),
                    ]
                )
            )
            self.session.execute(
                update(PartnerInvitation)
                .where(
                    or_(
                        PartnerInvitation.from_user_id.in_([from_id, to_id]),
                        PartnerInvitation.to_user_id.in_([from_id, to_id]),
                    ),
                    PartnerInvitation.status == InvitationStatus.pending,
                    PartnerInvitation.id != invitation.id,
                )
                .values(status=InvitationStatus.expired)
            )
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise AlreadyPartnered("One of the users already has a partner") from exc
        except Exception:
            self.session.rollback()
            raise

        logger.info(f"partner_accepted: invitation={invitation.id} from={from_id} to={to_id}")
        return {
            "fromUser": user_summary(self.session.get(User, from_id)),
            "toUser": user_summary(self.session.get(User, to_id)),
        }

    def decline_invitation(self, token: str, user_id: str) -> PartnerInvitation:
        invitation = self.session.scalar(
            select(PartnerInvitation).where(
                PartnerInvitation.token == token,
                PartnerInvitation.to_user_id == user_id,
                PartnerInvitation.status == InvitationStatus.pending,
            )
        )
        if not invitation:
            raise NotFoundError("Invitation not found or already processed")
        invitation.status = InvitationStatus.declined
        self.session.commit()
        return invitation

    def cancel_invitation(self, invitation_id: str, user_id: str) -> PartnerInvitation:
        invitation = self.session.scalar(
            select(PartnerInvitation).where(
                PartnerInvitation.id == invitation_id,
                PartnerInvitation.from_user_id == user_id,
                PartnerInvitation.status == InvitationStatus.pending,
            )
        )
        if not invitation:
            raise NotFoundError("Invitation not found or already processed")
        invitation.status = InvitationStatus.declined
        self.session.commit()
        return invitation

    def remove_partnership(self, user_id: str) -> None:
        """Unpair a user. Transactions, categories and lists stay untouched."""
        membership = self.session.scalar(
            select(PartnershipMember).where(PartnershipMember.user_id == user_id)
        )
        partner_id = partner_id_for(self.session, user_id)
        if not membership or not partner_id:
            raise ServiceError("User has no partner")
        try:
            self.session.delete(membership.partnership)
            self.session.execute(
                delete(PartnerInvitation).where(
                    self._between(user_id, partner_id),
                    PartnerInvitation.status == InvitationStatus.accepted,
                )
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info(f"partner_removed: user={user_id} partner={partner_id}")

    def partner_info(self, user_id: str) -> dict[str, object]:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        partner_id = partner_id_for(self.session, user_id)
        summary = user_summary(user)
        summary["partnerId"] = partner_id
        partner = self.session.get(User, partner_id) if partner_id else None
        return {"user": summary, "partner": user_summary(partner)}

    def search_users(self, query: str, current_user_id: str, limit: int = 10) -> list[dict[str, object]]:
        needle = (query or "").strip().lower()
        if len(needle) < 2:
            return []
        paired = select(PartnershipMember.user_id)
        candidates = self.session.scalars(
            select(User)
            .where(
                or_(
                    func.lower(User.name).contains(needle, autoescape=True),
                    func.lower(User.email).contains(needle, autoescape=True),
                ),
                User.id != current_user_id,
                User.id.not_in(paired),
            )
            .limit(limit * 5)
        ).all()

        def distance(user: User) -> int:
            return min(
                Levenshtein.distance(needle, user.name.lower()),
                Levenshtein.distance(needle, user.email.lower()),
            )

        ranked = sorted(candidates, key=lambda u: (distance(u), u.name.lower()))
        return [user_summary(user) for user in ranked[:limit]]

    def _serialize_invitation(
        self, invitation: PartnerInvitation, counterpart_key: str, counterpart: User
    ) -> dict[str, object]:
        return {
            "id": invitation.id,
            "token": invitation.token,
            "status": invitation.status.value,
            "createdAt": _iso(invitation.created_at),
            "expiresAt": _iso(invitation.expires_at),
            counterpart_key: user_summary(counterpart),
        }

    def sent_invitations(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> list[dict[str, object]]:
        now = now or datetime.utcnow()
        pending = self.session.scalars(
            select(PartnerInvitation)
            .options(joinedload(PartnerInvitation.to_user))
            .where(
                PartnerInvitation.from_user_id == user_id,
                PartnerInvitation.status == InvitationStatus.pending,
            )
            .order_by(PartnerInvitation.created_at)
        ).all()
        return [
            self._serialize_invitation(inv, "toUser", inv.to_user)
            for inv in self._expire_past_due(list(pending), now)
        ]

    def received_invitations(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> list[dict[str, object]]:
        now = now or datetime.utcnow()
        pending = self.session.scalars(
            select(PartnerInvitation)
            .options(joinedload(PartnerInvitation.from_user))
            .where(
                PartnerInvitation.to_user_id == user_id,
                PartnerInvitation.status == InvitationStatus.pending,
            )
            .order_by(PartnerInvitation.created_at)
        ).all()
        return [
            self._serialize_invitation(inv, "fromUser", inv.from_user)
            for inv in self._expire_past_due(list(pending), now)
        ]

    def cleanup_duplicate_invitations(self) -> int:
        """Keep only the newest accepted invitation per user pair."""
        accepted = self.session.scalars(
            select(PartnerInvitation)
            .where(PartnerInvitation.status == InvitationStatus.accepted)
            .order_by(PartnerInvitation.created_at.desc(), PartnerInvitation.id)
        ).all()
        seen: set[frozenset[str]] = set()
        removed = 0
        for invitation in accepted:
            pair = frozenset((invitation.from_user_id, invitation.to_user_id))
            if pair in seen:
                self.session.delete(invitation)
                removed += 1
            else:
                seen.add(pair)
        if removed:
            self.session.commit()
        logger.info(f"partner_invitation_cleanup: removed={removed}")
        return removed
