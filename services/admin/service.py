"""
services/admin/service.py
Guards that keep at least one super admin able to run the platform.
"""

import logging
from typing import Optional

from fastapi import Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import Admin, AdminAuditLog, AdminRole
from shared.utils.exceptions import LastSuperAdmin, NotFoundOrIllegalState, SelfDeletion, ValidationFailed

logger = logging.getLogger(__name__)


async def count_super_admins(db: AsyncSession, active_only: bool) -> int:
    query = select(func.count(Admin.id)).where(Admin.role == AdminRole.SUPER_ADMIN)
    if active_only:
        query = query.where(Admin.is_active.is_(True))
    return await db.scalar(query) or 0


async def can_change_role(
    db: AsyncSession, acting: Admin, target: Admin, new_role: AdminRole
) -> None:
    """A super admin may not demote themselves while they are the only active one."""
    if (
        target.id == acting.id
        and target.role == AdminRole.SUPER_ADMIN
        and new_role != AdminRole.SUPER_ADMIN
        and await count_super_admins(db, active_only=True) <= 1
    ):
        raise LastSuperAdmin()


async def can_delete(db: AsyncSession, acting: Admin, target: Admin) -> None:
    if target.id == acting.id:
        raise SelfDeletion()
    # Counts every super admin, active or not
    if target.role == AdminRole.SUPER_ADMIN and await count_super_admins(db, active_only=False) <= 1:
        raise LastSuperAdmin()


async def get_admin(db: AsyncSession, admin_id) -> Admin:
    admin = await db.get(Admin, admin_id)
    if admin is None:
        raise NotFoundOrIllegalState("Admin not found")
    return admin


async def change_role(db: AsyncSession, acting: Admin, target: Admin, new_role: AdminRole) -> Admin:
    await can_change_role(db, acting, target, new_role)
    previous = target.role
    target.role = new_role
    logger.info(f"Admin {acting.id} changed role of {target.id}: {previous.value} -> {new_role.value}")
    return target


async def set_active(db: AsyncSession, acting: Admin, target: Admin, is_active: bool) -> Admin:
    if not is_active:
        if target.id == acting.id:
            raise ValidationFailed("You cannot deactivate your own account")
        if (
            target.role == AdminRole.SUPER_ADMIN
            and target.is_active
            and await count_super_admins(db, active_only=True) <= 1
        ):
            raise LastSuperAdmin()
    target.is_active = is_active
    return target


async def delete_admin(db: AsyncSession, acting: Admin, target: Admin) -> None:
    await can_delete(db, acting, target)
    await db.delete(target)
    logger.info(f"Admin {acting.id} deleted admin {target.id}")


def audit(
    db: AsyncSession,
    admin: Admin,
    action: str,
    entity_type: str,
    entity_id: str,
    payload: Optional[dict] = None,
    request: Optional[Request] = None,
) -> None:
    """Append an immutable record to AdminAuditLog."""
    db.add(
        AdminAuditLog(
            admin_id=admin.id,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id),
            payload=payload or {},
            ip_address=request.client.host if request and request.client else None,
        )
    )
