"""
Financial transactions: the Dues rows created alongside cotisations plus any
inflow/outflow an administrator records directly.
"""

from datetime import datetime, time, timezone
from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.sql import select

from database import get_db
from errors import Conflict, Forbidden, NotFound
from logging_config import get_logger
from models import CotisationModel, GroupModel, TransactionModel, UserModel
from query import Populate, advanced_results, serialize
from schemas import TransactionIn, TransactionReportQuery, TransactionStatus, TransactionType
from security import ensure_owner_or_admin, get_current_user, is_admin, is_owner_or_admin, require_admin

logger = get_logger(__name__)

router = APIRouter(prefix="/transactions", tags=["transactions"])

MEMBER = Populate("member", ("name", "surname", "email", "phone"))
GROUP = Populate("group", ("name", "description"))
CREATED_BY = Populate("created_by", ("name", "surname", "email"))
ALL_REFERENCES = [MEMBER, GROUP, CREATED_BY]


def _with_references(stmt):
    return stmt.options(
        selectinload(TransactionModel.member),
        selectinload(TransactionModel.group),
        selectinload(TransactionModel.created_by),
    )


async def _get_transaction(db: AsyncSession, transaction_id: int) -> TransactionModel:
    stmt = (
        _with_references(select(TransactionModel))
        .where(TransactionModel.id == transaction_id)
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    transaction = result.scalar_one_or_none()
    if transaction is None:
        raise NotFound(f"Transaction not found with id {transaction_id}")
    return transaction


async def _get_or_404(db: AsyncSession, model, label: str, object_id: int):
    result = await db.execute(select(model).where(model.id == object_id))
    obj = result.scalar_one_or_none()
    if obj is None:
        raise NotFound(f"{label} not found with id {object_id}")
    return obj


async def _apply_references(
    db: AsyncSession,
    payload: TransactionIn,
    transaction_id: Optional[int] = None,
) -> Optional[CotisationModel]:
    """Check that referenced rows exist; return the linked cotisation if any."""
    if payload.member_id is not None:
        await _get_or_404(db, UserModel, "User", payload.member_id)
    if payload.group_id is not None:
        await _get_or_404(db, GroupModel, "Group", payload.group_id)
    if payload.cotisation_id is None:
        return None

    cotisation = await _get_or_404(db, CotisationModel, "Dues", payload.cotisation_id)
    stmt = select(TransactionModel.id).where(TransactionModel.cotisation_id == cotisation.id)
    if transaction_id is not None:
        stmt = stmt.where(TransactionModel.id != transaction_id)
    if (await db.execute(stmt)).first() is not None:
        raise Conflict(f"Dues {cotisation.id} already have a transaction")
    return cotisation


# ----------------------------------------------------------------------------
# Collection routes
# ----------------------------------------------------------------------------
@router.get("")
async def list_transactions(
    current_user: UserModel = Depends(require_admin),
    results: dict = Depends(advanced_results(TransactionModel, ALL_REFERENCES)),
):
    return results


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_transaction(
    payload: TransactionIn,
    current_user: UserModel = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    cotisation = await _apply_references(db, payload)
    if cotisation is not None:
        tx_status = TransactionStatus.for_cotisation(cotisation.status)
    else:
        tx_status = TransactionStatus.COMPLETED

    transaction = TransactionModel(
        **payload.model_dump(exclude_none=True),
        status=tx_status,
        created_by_id=current_user.id,
    )
    db.add(transaction)
    await db.commit()
    await db.refresh(transaction)
    logger.info("Transaction %s recorded by user %s", transaction.id, current_user.id)
    return {"success": True, "data": serialize(transaction)}


@router.get("/member/{member_id}")
async def list_member_transactions(
    member_id: int,
    current_user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if not is_owner_or_admin(current_user, member_id):
        raise Forbidden("Not allowed to access another member's transactions")

    result = await db.execute(
        select(TransactionModel)
        .options(selectinload(TransactionModel.group))
        .where(TransactionModel.member_id == member_id)
        .order_by(TransactionModel.date.desc(), TransactionModel.id.desc())
    )
    transactions = result.scalars().all()
    return {
        "success": True,
        "count": len(transactions),
        "data": [serialize(t, populate=[GROUP]) for t in transactions],
    }


@router.get("/group/{group_id}")
async def list_group_transactions(
    group_id: int,
    current_user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    group = await _get_or_404(db, GroupModel, "Group", group_id)
    if not (is_owner_or_admin(current_user, group.owner_id) or group.has_member(current_user.id)):
        raise Forbidden(f"User {current_user.id} is not allowed to access this group's transactions")

    result = await db.execute(
        select(TransactionModel)
        .options(selectinload(TransactionModel.member), selectinload(TransactionModel.created_by))
        .where(TransactionModel.group_id == group_id)
        .order_by(TransactionModel.date.desc(), TransactionModel.id.desc())
    )
    transactions = result.scalars().all()
    populate = [Populate("member", ("name", "surname", "email")), CREATED_BY]
    return {
        "success": True,
        "count": len(transactions),
        "data": [serialize(t, populate=populate) for t in transactions],
    }


@router.post("/report")
async def generate_financial_report(
    payload: Optional[TransactionReportQuery] = None,
    current_user: UserModel = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    payload = payload or TransactionReportQuery()
    stmt = _with_references(select(TransactionModel)).order_by(TransactionModel.date, TransactionModel.id)
    if payload.start_date:
        stmt = stmt.where(TransactionModel.date >= datetime.combine(payload.start_date, time.min, tzinfo=timezone.utc))
    if payload.end_date:
        stmt = stmt.where(TransactionModel.date <= datetime.combine(payload.end_date, time.max, tzinfo=timezone.utc))
    if payload.type:
        stmt = stmt.where(TransactionModel.type == payload.type)
    if payload.category:
        stmt = stmt.where(TransactionModel.category == payload.category)
    result = await db.execute(stmt)
    transactions = result.scalars().all()

    total_inflow = sum(t.amount for t in transactions if t.type == TransactionType.INFLOW)
    total_outflow = sum(t.amount for t in transactions if t.type == TransactionType.OUTFLOW)
    by_category = {}
    for t in transactions:
        entry = by_category.setdefault(t.category.value, {"count": 0, "total_amount": 0})
        entry["count"] += 1
        entry["total_amount"] += t.amount

    stats = {
        "total_transactions": len(transactions),
        "total_inflow": total_inflow,
        "total_outflow": total_outflow,
        "balance": total_inflow - total_outflow,
        "by_category": by_category,
    }
    return {
        "success": True,
        "data": {
            "transactions": [serialize(t, populate=ALL_REFERENCES) for t in transactions],
            "stats": stats,
        },
    }


# ----------------------------------------------------------------------------
# Item routes
# ----------------------------------------------------------------------------
@router.get("/{transaction_id}")
async def get_transaction(
    transaction_id: int,
    current_user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    transaction = await _get_transaction(db, transaction_id)
    allowed = is_admin(current_user) or current_user.id in (transaction.created_by_id, transaction.member_id)
    if not allowed:
        raise Forbidden(f"User {current_user.id} is not allowed to access this transaction")
    return {"success": True, "data": serialize(transaction, populate=ALL_REFERENCES)}


@router.put("/{transaction_id}")
async def update_transaction(
    transaction_id: int,
    payload: TransactionIn,
    current_user: UserModel = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    transaction = await _get_transaction(db, transaction_id)
    ensure_owner_or_admin(current_user, transaction.created_by_id, f"User {current_user.id} is not allowed to update this transaction")

    cotisation = await _apply_references(db, payload, transaction_id=transaction.id)
    for key, value in payload.model_dump(exclude_none=True).items():
        setattr(transaction, key, value)
    if cotisation is not None:
        transaction.status = TransactionStatus.for_cotisation(cotisation.status)

    await db.commit()
    transaction = await _get_transaction(db, transaction_id)
    return {"success": True, "data": serialize(transaction)}


@router.delete("/{transaction_id}")
async def delete_transaction(
    transaction_id: int,
    current_user: UserModel = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    transaction = await _get_transaction(db, transaction_id)
    ensure_owner_or_admin(current_user, transaction.created_by_id, f"User {current_user.id} is not allowed to delete this transaction")

    await db.delete(transaction)
    await db.commit()
    logger.info("Transaction %s deleted by user %s", transaction_id, current_user.id)
    return {"success": True, "data": {}}
