"""
Monthly dues ("cotisations").

Each dues claim owns a companion Dues transaction. Creating, editing,
re-statusing or deleting a claim touches both rows inside one commit, so the
pair never drifts apart.
"""

from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.sql import select

from database import get_db
from errors import Conflict, Forbidden, NotFound, ValidationError
from logging_config import get_logger
from models import CotisationModel, TransactionModel, UserModel
from query import Populate, advanced_results, serialize
from schemas import (
    CotisationIn,
    CotisationReportQuery,
    CotisationStatus,
    CotisationStatusUpdate,
    Month,
    TransactionCategory,
    TransactionStatus,
    TransactionType,
)
from security import ensure_owner_or_admin, get_current_user, is_admin, is_owner_or_admin, require_admin

logger = get_logger(__name__)

router = APIRouter(prefix="/cotisations", tags=["cotisations"])

MEMBER_FIELDS = ("name", "surname", "email", "phone")
MEMBER = Populate("member", MEMBER_FIELDS)


def _dues_description(member: UserModel, month: Month, year: int) -> str:
    return f"Dues from {member.name} {member.surname} for {Month(month).value} {year}"


async def _get_cotisation(db: AsyncSession, cotisation_id: int) -> CotisationModel:
    result = await db.execute(
        select(CotisationModel)
        .options(selectinload(CotisationModel.member))
        .where(CotisationModel.id == cotisation_id)
        .execution_options(populate_existing=True)
    )
    cotisation = result.scalar_one_or_none()
    if cotisation is None:
        raise NotFound(f"Dues not found with id {cotisation_id}")
    return cotisation


async def _linked_transaction(db: AsyncSession, cotisation_id: int) -> Optional[TransactionModel]:
    result = await db.execute(select(TransactionModel).where(TransactionModel.cotisation_id == cotisation_id))
    return result.scalar_one_or_none()


async def _period_taken(db: AsyncSession, member_id: int, month: Month, year: int, exclude_id: Optional[int] = None) -> bool:
    stmt = select(CotisationModel.id).where(
        CotisationModel.member_id == member_id,
        CotisationModel.month == month,
        CotisationModel.year == year,
    )
    if exclude_id is not None:
        stmt = stmt.where(CotisationModel.id != exclude_id)
    result = await db.execute(stmt)
    return result.first() is not None


# ----------------------------------------------------------------------------
# Collection routes
# ----------------------------------------------------------------------------
@router.get("")
async def list_cotisations(
    current_user: UserModel = Depends(require_admin),
    results: dict = Depends(advanced_results(CotisationModel, [MEMBER])),
):
    return results


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_cotisation(
    payload: CotisationIn,
    current_user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if await _period_taken(db, current_user.id, payload.month, payload.year):
        raise Conflict(f"You already have dues for {payload.month.value} {payload.year}")

    cotisation = CotisationModel(member_id=current_user.id, **payload.model_dump(exclude_none=True))
    db.add(cotisation)
    await db.flush()

    db.add(
        TransactionModel(
            type=TransactionType.INFLOW,
            amount=payload.amount,
            description=_dues_description(current_user, payload.month, payload.year),
            category=TransactionCategory.DUES,
            status=TransactionStatus.for_cotisation(cotisation.status),
            cotisation_id=cotisation.id,
            member_id=current_user.id,
            created_by_id=current_user.id,
        )
    )
    await db.commit()
    await db.refresh(cotisation)
    logger.info("User %s declared dues %s for %s %s", current_user.id, cotisation.id, payload.month.value, payload.year)
    return {"success": True, "data": serialize(cotisation)}


@router.get("/member/{member_id}")
async def list_member_cotisations(
    member_id: int,
    current_user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if not is_owner_or_admin(current_user, member_id):
        raise Forbidden("Not allowed to access another member's dues")

    result = await db.execute(select(CotisationModel).where(CotisationModel.member_id == member_id))
    cotisations = sorted(
        result.scalars().all(),
        key=lambda c: (c.year, Month(c.month).number),
        reverse=True,
    )
    return {"success": True, "count": len(cotisations), "data": [serialize(c) for c in cotisations]}


@router.get("/period/{month}/{year}")
async def list_period_cotisations(
    month: Month,
    year: int,
    current_user: UserModel = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(CotisationModel)
        .options(selectinload(CotisationModel.member))
        .where(CotisationModel.month == month, CotisationModel.year == year)
        .order_by(CotisationModel.id)
    )
    cotisations = result.scalars().all()
    return {
        "success": True,
        "count": len(cotisations),
        "data": [serialize(c, populate=[MEMBER]) for c in cotisations],
    }


@router.post("/report")
async def generate_report(
    payload: Optional[CotisationReportQuery] = None,
    current_user: UserModel = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    payload = payload or CotisationReportQuery()
    stmt = select(CotisationModel).options(selectinload(CotisationModel.member)).order_by(CotisationModel.id)
    if payload.month:
        stmt = stmt.where(CotisationModel.month == payload.month)
    if payload.year:
        stmt = stmt.where(CotisationModel.year == payload.year)
    if payload.status:
        stmt = stmt.where(CotisationModel.status == payload.status)
    result = await db.execute(stmt)
    cotisations = result.scalars().all()

    def _count(wanted: CotisationStatus) -> int:
        return sum(1 for c in cotisations if c.status == wanted)

    stats = {
        "total_cotisations": len(cotisations),
        "total_amount": sum(c.amount for c in cotisations),
        "confirmed": _count(CotisationStatus.CONFIRMED),
        "pending": _count(CotisationStatus.PENDING),
        "rejected": _count(CotisationStatus.REJECTED),
    }
    return {
        "success": True,
        "data": {
            "cotisations": [serialize(c, populate=[MEMBER]) for c in cotisations],
            "stats": stats,
        },
    }


# ----------------------------------------------------------------------------
# Item routes
# ----------------------------------------------------------------------------
@router.get("/{cotisation_id}")
async def get_cotisation(
    cotisation_id: int,
    current_user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    cotisation = await _get_cotisation(db, cotisation_id)
    ensure_owner_or_admin(current_user, cotisation.member_id, f"User {current_user.id} is not allowed to access these dues")
    return {"success": True, "data": serialize(cotisation, populate=[MEMBER])}


@router.put("/{cotisation_id}")
async def update_cotisation(
    cotisation_id: int,
    payload: CotisationIn,
    current_user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    cotisation = await _get_cotisation(db, cotisation_id)
    ensure_owner_or_admin(current_user, cotisation.member_id, f"User {current_user.id} is not allowed to update these dues")
    if cotisation.status != CotisationStatus.PENDING:
        raise ValidationError("Only pending dues can be modified")
    if await _period_taken(db, cotisation.member_id, payload.month, payload.year, exclude_id=cotisation.id):
        raise Conflict(f"Dues already exist for {payload.month.value} {payload.year}")

    for key, value in payload.model_dump(exclude_none=True).items():
        setattr(cotisation, key, value)

    transaction = await _linked_transaction(db, cotisation.id)
    if transaction is not None:
        transaction.amount = cotisation.amount
        transaction.description = _dues_description(cotisation.member, cotisation.month, cotisation.year)

    await db.commit()
    cotisation = await _get_cotisation(db, cotisation_id)
    return {"success": True, "data": serialize(cotisation)}


@router.patch("/{cotisation_id}/status")
async def update_cotisation_status(
    cotisation_id: int,
    payload: CotisationStatusUpdate,
    current_user: UserModel = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    cotisation = await _get_cotisation(db, cotisation_id)
    cotisation.status = payload.status

    transaction = await _linked_transaction(db, cotisation.id)
    if transaction is not None:
        transaction.status = TransactionStatus.for_cotisation(payload.status)

    await db.commit()
    logger.info("Dues %s set to %s by user %s", cotisation.id, payload.status.value, current_user.id)
    cotisation = await _get_cotisation(db, cotisation_id)
    return {"success": True, "data": serialize(cotisation)}


@router.delete("/{cotisation_id}")
async def delete_cotisation(
    cotisation_id: int,
    current_user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    cotisation = await _get_cotisation(db, cotisation_id)
    ensure_owner_or_admin(current_user, cotisation.member_id, f"User {current_user.id} is not allowed to delete these dues")
    if cotisation.status != CotisationStatus.PENDING and not is_admin(current_user):
        raise ValidationError("Only pending dues can be deleted")

    transaction = await _linked_transaction(db, cotisation.id)
    if transaction is not None:
        await db.delete(transaction)
    await db.delete(cotisation)
    await db.commit()
    return {"success": True, "data": {}}
