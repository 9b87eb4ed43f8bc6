from collections.abc import Mapping

from loguru import logger
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from src.domain.users.models import RolePermission, UserRole


class Permission:
    """Named capabilities looked up per role from the RolePermission table."""

    VIEW_DATA = "canViewData"
    CREATE_BUG = "canCreateBug"
    EDIT_ANY_BUG = "canEditAnyBug"
    CLASSIFY_ANY_BUG = "canClassifyAnyBug"
    REASSIGN_ANY_BUG = "canReassignAnyBug"
    CLOSE_ANY_BUG = "canCloseAnyBug"
    ADD_COMMENT = "canAddComment"
    ADD_TEST_CASE = "canAddTestCase"
    EDIT_TEST_CASE = "canEditTestCase"
    DELETE_TEST_CASE = "canDeleteTestCase"
    EDIT_ANY_USER = "canEditAnyUser"

    ALL: frozenset[str] = frozenset(
        {
            VIEW_DATA,
            CREATE_BUG,
            EDIT_ANY_BUG,
            CLASSIFY_ANY_BUG,
            REASSIGN_ANY_BUG,
            CLOSE_ANY_BUG,
            ADD_COMMENT,
            ADD_TEST_CASE,
            EDIT_TEST_CASE,
            DELETE_TEST_CASE,
            EDIT_ANY_USER,
        }
    )


# Role allow-sets declared by the endpoints
CONTRIBUTORS: frozenset[UserRole] = frozenset(
    {
        UserRole.DEVELOPER,
        UserRole.BUSINESS_ANALYST,
        UserRole.QUALITY_ANALYST,
        UserRole.PRODUCT_MANAGER,
        UserRole.TECHNICAL_MANAGER,
    }
)
TRIAGE: frozenset[UserRole] = CONTRIBUTORS - {UserRole.DEVELOPER}
REPORTERS: frozenset[UserRole] = CONTRIBUTORS | {UserRole.USER}
ASSIGNABLE: frozenset[UserRole] = frozenset({UserRole.DEVELOPER, UserRole.QUALITY_ANALYST})

_CONTRIBUTOR_BASE = {Permission.VIEW_DATA, Permission.CREATE_BUG, Permission.EDIT_ANY_BUG, Permission.ADD_COMMENT}
_TRIAGE_BASE = _CONTRIBUTOR_BASE | {Permission.CLASSIFY_ANY_BUG, Permission.REASSIGN_ANY_BUG}

DEFAULT_ROLE_PERMISSIONS: Mapping[UserRole, set[str]] = {
    UserRole.DEVELOPER: _CONTRIBUTOR_BASE,
    UserRole.BUSINESS_ANALYST: _TRIAGE_BASE | {Permission.CLOSE_ANY_BUG},
    UserRole.QUALITY_ANALYST: _TRIAGE_BASE
    | {Permission.ADD_TEST_CASE, Permission.EDIT_TEST_CASE, Permission.DELETE_TEST_CASE},
    UserRole.PRODUCT_MANAGER: _TRIAGE_BASE,
    UserRole.TECHNICAL_MANAGER: set(Permission.ALL),
    UserRole.USER: {Permission.CREATE_BUG, Permission.ADD_COMMENT},
}


def default_flags(role: UserRole) -> dict[str, bool]:
    """Expands the default permission set of a role into explicit boolean flags."""
    granted = DEFAULT_ROLE_PERMISSIONS.get(role, set())
    return {name: name in granted for name in sorted(Permission.ALL)}


async def seed_role_permissions(session: AsyncSession, *, overwrite: bool = False) -> int:
    """Inserts the default permission record for every role that lacks one.

    Args:
        session: The asynchronous database session.
        overwrite: Reset existing records to the defaults as well.

    Returns:
        int: The number of records inserted or reset.
    """
    existing = {rp.role: rp for rp in (await session.exec(select(RolePermission))).all()}
    touched = 0

    for role in UserRole:
        record = existing.get(role)
        if record is None:
            session.add(RolePermission(role=role, permissions=default_flags(role)))
            touched += 1
        elif overwrite:
            record.permissions = default_flags(role)
            session.add(record)
            touched += 1

    if touched:
        await session.commit()
        logger.info(f"Seeded permission records for {touched} role(s)")
    return touched
