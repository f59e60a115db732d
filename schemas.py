from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from config import get_settings
from models import CurrencyCode, RepeatType, TransactionType
from periods import to_local_naive

HEX_COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RegisterIn(CamelModel):
    name: str = Field(..., min_length=2, max_length=100)
    email: str = Field(..., max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(..., min_length=8, max_length=128)


class LoginIn(CamelModel):
    email: str = Field(..., max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(..., min_length=1, max_length=128)


class ProfileIn(CamelModel):
    name: str = Field(..., min_length=2, max_length=100)
    currency: CurrencyCode


class CategoryIn(CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    color: str = Field(..., pattern=HEX_COLOR_PATTERN)


class TransactionIn(CamelModel):
    description: str = Field(..., min_length=1, max_length=255)
    amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    category_id: str = Field(..., min_length=1, max_length=36)
    date: datetime
    repeat_type: RepeatType = RepeatType.once
    end_date: Optional[datetime] = None
    is_private: bool = False
    user_id: Optional[str] = None

    @field_validator("date", "end_date")
    @classmethod
    def _to_local_time(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is None:
            return None
        return to_local_naive(value, get_settings().timezone)

    @model_validator(mode="after")
    def _check_end_date(self) -> "TransactionIn":
        if self.repeat_type == RepeatType.until and self.end_date is None:
            raise ValueError("End date is required for repeat type 'until'")
        if self.end_date is not None and self.end_date < self.date:
            raise ValueError("End date must not be before the transaction date")
        return self


class ListIn(CamelModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    color: str = Field("#3B82F6", pattern=HEX_COLOR_PATTERN)
    is_shared: bool = False


class ListItemIn(CamelModel):
    name: str = Field(..., min_length=1, max_length=255)
    estimated_price: Optional[Decimal] = Field(
        default=None, gt=0, max_digits=10, decimal_places=2
    )
    category_id: str = Field(..., min_length=1, max_length=36)


class CheckItemIn(CamelModel):
    is_checked: bool
    actual_price: Optional[Decimal] = Field(
        default=None, gt=0, max_digits=10, decimal_places=2
    )


class InviteIn(CamelModel):
    to_user_id: str = Field(..., min_length=1)


class TokenIn(CamelModel):
    token: str = Field(..., min_length=1)


class CancelInvitationIn(CamelModel):
    invitation_id: str = Field(..., min_length=1)
