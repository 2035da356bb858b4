"""
App Schemas

Closed enumerations shared by the ORM models and the API, plus the Pydantic
request bodies for every endpoint.
- User -> "users"
- Group -> "groups" (+ "group_members")
- Cotisation -> "cotisations"
- Transaction -> "transactions"
"""

import enum
from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field, constr


# ----------------------------------------------------------------------------
# Enumerations
# ----------------------------------------------------------------------------
class Role(str, enum.Enum):
    MEMBER = "member"
    ADMIN = "admin"
    SUPER_ADMIN = "super-admin"


ADMIN_ROLES = (Role.ADMIN, Role.SUPER_ADMIN)


class Month(str, enum.Enum):
    JANUARY = "January"
    FEBRUARY = "February"
    MARCH = "March"
    APRIL = "April"
    MAY = "May"
    JUNE = "June"
    JULY = "July"
    AUGUST = "August"
    SEPTEMBER = "September"
    OCTOBER = "October"
    NOVEMBER = "November"
    DECEMBER = "December"

    @property
    def number(self) -> int:
        return list(Month).index(self) + 1


class PaymentMethod(str, enum.Enum):
    CASH = "Cash"
    CHEQUE = "Cheque"
    BANK_TRANSFER = "Bank Transfer"
    MOBILE_MONEY = "Mobile Money"
    OTHER = "Other"


class CotisationStatus(str, enum.Enum):
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    REJECTED = "Rejected"


class TransactionType(str, enum.Enum):
    INFLOW = "Inflow"
    OUTFLOW = "Outflow"


class TransactionCategory(str, enum.Enum):
    DUES = "Dues"
    DONATION = "Donation"
    ADMINISTRATIVE_EXPENSE = "Administrative Expense"
    EVENT = "Event"
    OTHER = "Other"


class TransactionStatus(str, enum.Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"

    @classmethod
    def for_cotisation(cls, status: CotisationStatus) -> "TransactionStatus":
        if status == CotisationStatus.CONFIRMED:
            return cls.COMPLETED
        if status == CotisationStatus.REJECTED:
            return cls.CANCELLED
        return cls.PENDING


# ----------------------------------------------------------------------------
# Auth
# ----------------------------------------------------------------------------
Name = constr(strip_whitespace=True, min_length=1, max_length=50)
Phone = constr(strip_whitespace=True, pattern=r"^[0-9]{10,15}$")
Password = constr(min_length=6)


class UserRegister(BaseModel):
    name: Name
    surname: Name
    email: EmailStr
    password: Password
    phone: Phone
    address: constr(strip_whitespace=True, min_length=1)


class UserLogin(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class UserDetailsUpdate(BaseModel):
    name: Name
    surname: Name
    phone: Phone
    address: constr(strip_whitespace=True, min_length=1)


class PasswordUpdate(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: Password


class ForgotPassword(BaseModel):
    email: EmailStr


class PasswordReset(BaseModel):
    password: Password


# ----------------------------------------------------------------------------
# Cotisations
# ----------------------------------------------------------------------------
class CotisationIn(BaseModel):
    amount: float = Field(..., ge=0)
    month: Month
    year: int = Field(..., ge=2000, le=2100)
    payment_method: PaymentMethod
    payment_date: Optional[datetime] = None
    payment_reference: Optional[str] = None
    comment: Optional[str] = None


class CotisationStatusUpdate(BaseModel):
    status: CotisationStatus


class CotisationReportQuery(BaseModel):
    month: Optional[Month] = None
    year: Optional[int] = Field(None, ge=2000, le=2100)
    status: Optional[CotisationStatus] = None


# ----------------------------------------------------------------------------
# Groups
# ----------------------------------------------------------------------------
class GroupIn(BaseModel):
    name: constr(strip_whitespace=True, min_length=1, max_length=100)
    description: constr(min_length=1, max_length=500)
    monthly_amount: float = Field(..., ge=0)
    regulation: Optional[constr(max_length=2000)] = None
    active: bool = True
    owner_id: Optional[int] = Field(None, description="Defaults to the caller")
    member_ids: List[int] = []


class GroupUpdate(BaseModel):
    name: Optional[constr(strip_whitespace=True, min_length=1, max_length=100)] = None
    description: Optional[constr(min_length=1, max_length=500)] = None
    monthly_amount: Optional[float] = Field(None, ge=0)
    regulation: Optional[constr(max_length=2000)] = None
    active: Optional[bool] = None
    owner_id: Optional[int] = None


# ----------------------------------------------------------------------------
# Transactions
# ----------------------------------------------------------------------------
class TransactionIn(BaseModel):
    type: TransactionType
    amount: float = Field(..., ge=0)
    description: constr(strip_whitespace=True, min_length=1, max_length=200)
    category: TransactionCategory
    date: Optional[datetime] = None
    member_id: Optional[int] = None
    group_id: Optional[int] = None
    cotisation_id: Optional[int] = None
    attachment: Optional[str] = None


class TransactionReportQuery(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    type: Optional[TransactionType] = None
    category: Optional[TransactionCategory] = None
