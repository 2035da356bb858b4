"""
Groups and their membership.

The owner of a group is always one of its members: they are added on
creation and on owner change, and can never be removed.
"""

from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.sql import select

from database import get_db
from errors import Conflict, Forbidden, NotFound, ValidationError
from logging_config import get_logger
from models import GroupModel, TransactionModel, UserModel
from query import Populate, advanced_results, serialize
from schemas import GroupIn, GroupUpdate
from security import ensure_owner_or_admin, get_current_user, is_owner_or_admin, require_admin

logger = get_logger(__name__)

router = APIRouter(prefix="/groups", tags=["groups"])

USER_FIELDS = ("name", "surname", "email")
DETAIL_FIELDS = ("name", "surname", "email", "phone")


async def _get_group(db: AsyncSession, group_id: int, with_owner: bool = False) -> GroupModel:
    stmt = select(GroupModel).where(GroupModel.id == group_id).execution_options(populate_existing=True)
    if with_owner:
        stmt = stmt.options(selectinload(GroupModel.owner))
    result = await db.execute(stmt)
    group = result.scalar_one_or_none()
    if group is None:
        raise NotFound(f"Group not found with id {group_id}")
    return group


async def _get_user(db: AsyncSession, user_id: int) -> UserModel:
    result = await db.execute(select(UserModel).where(UserModel.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise NotFound(f"User not found with id {user_id}")
    return user


async def _name_taken(db: AsyncSession, name: str, exclude_id: Optional[int] = None) -> bool:
    stmt = select(GroupModel.id).where(GroupModel.name == name)
    if exclude_id is not None:
        stmt = stmt.where(GroupModel.id != exclude_id)
    result = await db.execute(stmt)
    return result.first() is not None


# ----------------------------------------------------------------------------
# Collection routes
# ----------------------------------------------------------------------------
@router.get("")
async def list_groups(
    current_user: UserModel = Depends(get_current_user),
    results: dict = Depends(
        advanced_results(GroupModel, [Populate("owner", USER_FIELDS), Populate("members", USER_FIELDS)])
    ),
):
    return results


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_group(
    payload: GroupIn,
    current_user: UserModel = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    if await _name_taken(db, payload.name):
        raise Conflict(f"A group named {payload.name} already exists")

    owner = current_user if payload.owner_id is None else await _get_user(db, payload.owner_id)
    members = [owner]
    for user_id in dict.fromkeys(payload.member_ids):
        if user_id != owner.id:
            members.append(await _get_user(db, user_id))

    group = GroupModel(
        name=payload.name,
        description=payload.description,
        monthly_amount=payload.monthly_amount,
        regulation=payload.regulation,
        active=payload.active,
        owner_id=owner.id,
    )
    group.members = members
    db.add(group)
    await db.commit()
    logger.info("Group %s created by user %s (owner %s)", group.id, current_user.id, owner.id)

    group = await _get_group(db, group.id)
    return {"success": True, "data": serialize(group)}


@router.get("/member/{member_id}")
async def list_member_groups(
    member_id: int,
    current_user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if not is_owner_or_admin(current_user, member_id):
        raise Forbidden("Not allowed to access another member's groups")

    result = await db.execute(
        select(GroupModel)
        .options(selectinload(GroupModel.owner))
        .where(GroupModel.members.any(UserModel.id == member_id))
        .order_by(GroupModel.id)
    )
    groups = result.scalars().all()
    owner = Populate("owner", USER_FIELDS)
    return {"success": True, "count": len(groups), "data": [serialize(g, populate=[owner]) for g in groups]}


# ----------------------------------------------------------------------------
# Item routes
# ----------------------------------------------------------------------------
@router.get("/{group_id}")
async def get_group(
    group_id: int,
    current_user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    group = await _get_group(db, group_id, with_owner=True)
    if not (is_owner_or_admin(current_user, group.owner_id) or group.has_member(current_user.id)):
        raise Forbidden(f"User {current_user.id} is not allowed to access this group")
    populate = [Populate("owner", DETAIL_FIELDS), Populate("members", DETAIL_FIELDS)]
    return {"success": True, "data": serialize(group, populate=populate)}


@router.put("/{group_id}")
async def update_group(
    group_id: int,
    payload: GroupUpdate,
    current_user: UserModel = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    group = await _get_group(db, group_id)
    ensure_owner_or_admin(current_user, group.owner_id, f"User {current_user.id} is not allowed to update this group")

    changes = payload.model_dump(exclude_unset=True)
    owner_id = changes.pop("owner_id", None)
    if changes.get("name") and await _name_taken(db, changes["name"], exclude_id=group.id):
        raise Conflict(f"A group named {changes['name']} already exists")
    if owner_id is not None:
        owner = await _get_user(db, owner_id)
        group.owner_id = owner.id
        if not group.has_member(owner.id):
            group.members.append(owner)

    for key, value in changes.items():
        # Only the regulation text may be cleared
        if value is None and key != "regulation":
            continue
        setattr(group, key, value)

    await db.commit()
    group = await _get_group(db, group_id)
    return {"success": True, "data": serialize(group)}


@router.delete("/{group_id}")
async def delete_group(
    group_id: int,
    current_user: UserModel = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    group = await _get_group(db, group_id)
    ensure_owner_or_admin(current_user, group.owner_id, f"User {current_user.id} is not allowed to delete this group")

    await db.execute(update(TransactionModel).where(TransactionModel.group_id == group.id).values(group_id=None))
    await db.delete(group)
    await db.commit()
    logger.info("Group %s deleted by user %s", group_id, current_user.id)
    return {"success": True, "data": {}}


@router.put("/{group_id}/members/{user_id}")
async def add_member(
    group_id: int,
    user_id: int,
    current_user: UserModel = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    group = await _get_group(db, group_id)
    user = await _get_user(db, user_id)
    ensure_owner_or_admin(current_user, group.owner_id, f"User {current_user.id} is not allowed to add members to this group")
    if group.has_member(user.id):
        raise ValidationError(f"User {user_id} is already a member of this group")

    group.members.append(user)
    await db.commit()
    group = await _get_group(db, group_id)
    return {"success": True, "data": serialize(group)}


@router.delete("/{group_id}/members/{user_id}")
async def remove_member(
    group_id: int,
    user_id: int,
    current_user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    group = await _get_group(db, group_id)
    if group.owner_id == user_id:
        raise ValidationError("Cannot remove the group owner")
    # Members may always leave on their own
    if not (is_owner_or_admin(current_user, group.owner_id) or current_user.id == user_id):
        raise Forbidden(f"User {current_user.id} is not allowed to remove members from this group")
    if not group.has_member(user_id):
        raise ValidationError(f"User {user_id} is not a member of this group")

    group.members = [m for m in group.members if m.id != user_id]
    await db.commit()
    group = await _get_group(db, group_id)
    return {"success": True, "data": serialize(group)}
