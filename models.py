from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from database import Base
from schemas import (
    CotisationStatus,
    Month,
    PaymentMethod,
    Role,
    TransactionCategory,
    TransactionStatus,
    TransactionType,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _enum(enum_cls, length: int = 32) -> SQLEnum:
    # Persist the human-readable values, not the member names
    return SQLEnum(
        enum_cls,
        native_enum=False,
        length=length,
        validate_strings=True,
        values_callable=lambda e: [m.value for m in e],
    )


group_members = Table(
    "group_members",
    Base.metadata,
    Column("group_id", Integer, ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
)


class UserModel(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(50), nullable=False)
    surname = Column(String(50), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    phone = Column(String(15), nullable=False)
    address = Column(String(255), nullable=False)
    role = Column(_enum(Role), nullable=False, default=Role.MEMBER)
    password_hash = Column(String(255), nullable=False)
    reset_password_token = Column(String(64), nullable=True, index=True)
    reset_password_expire = Column(DateTime(timezone=True), nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    # Never leaves the server
    HIDDEN_FIELDS = ("password_hash", "reset_password_token", "reset_password_expire")
    REFERENCES = {}


class GroupModel(Base):
    __tablename__ = "groups"
    id = Column(Integer, primary_key=True)
    name = Column(String(100), unique=True, index=True, nullable=False)
    description = Column(String(500), nullable=False)
    monthly_amount = Column(Float, nullable=False)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    active = Column(Boolean, nullable=False, default=True)
    regulation = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    owner = relationship("UserModel", foreign_keys=[owner_id], lazy="raise")
    members = relationship("UserModel", secondary=group_members, lazy="selectin", order_by="UserModel.id")

    HIDDEN_FIELDS = ()
    # output name -> local column; None marks a many-to-many collection
    REFERENCES = {"owner": "owner_id", "members": None}

    @property
    def member_ids(self):
        return [m.id for m in self.members]

    def has_member(self, user_id: int) -> bool:
        return user_id in self.member_ids


class CotisationModel(Base):
    __tablename__ = "cotisations"
    __table_args__ = (
        UniqueConstraint("member_id", "month", "year", name="uq_cotisation_member_period"),
    )
    id = Column(Integer, primary_key=True)
    member_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    month = Column(_enum(Month, 16), nullable=False)
    year = Column(Integer, nullable=False)
    payment_date = Column(DateTime(timezone=True), nullable=False, default=_now)
    payment_method = Column(_enum(PaymentMethod), nullable=False)
    payment_reference = Column(String(255), nullable=True)
    status = Column(_enum(CotisationStatus, 16), nullable=False, default=CotisationStatus.PENDING)
    comment = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    member = relationship("UserModel", lazy="raise")

    HIDDEN_FIELDS = ()
    REFERENCES = {"member": "member_id"}


class TransactionModel(Base):
    __tablename__ = "transactions"
    id = Column(Integer, primary_key=True)
    type = Column(_enum(TransactionType, 16), nullable=False)
    amount = Column(Float, nullable=False)
    description = Column(String(200), nullable=False)
    date = Column(DateTime(timezone=True), nullable=False, default=_now)
    category = Column(_enum(TransactionCategory), nullable=False)
    status = Column(_enum(TransactionStatus, 16), nullable=False, default=TransactionStatus.COMPLETED)
    cotisation_id = Column(Integer, ForeignKey("cotisations.id"), nullable=True, unique=True)
    member_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    group_id = Column(Integer, ForeignKey("groups.id", ondelete="SET NULL"), nullable=True, index=True)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    attachment = Column(String(500), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    cotisation = relationship("CotisationModel", lazy="raise")
    member = relationship("UserModel", foreign_keys=[member_id], lazy="raise")
    group = relationship("GroupModel", lazy="raise")
    created_by = relationship("UserModel", foreign_keys=[created_by_id], lazy="raise")

    HIDDEN_FIELDS = ()
    REFERENCES = {
        "cotisation": "cotisation_id",
        "member": "member_id",
        "group": "group_id",
        "created_by": "created_by_id",
    }
