"""Authorization pipeline: SessionResolver -> RoleGate -> PermissionGate.

Every protected endpoint depends on `authorize(...)`, which runs the three gates in
that fixed order and short-circuits on the first failure. Gates raise the errors from
`src.core.errors`; they never return a falsy value that a handler could ignore.
"""

from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

from fastapi import Depends, Request
from loguru import logger
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from src.core.database import get_session
from src.core.errors import Forbidden, SessionExpired, Unauthenticated
from src.core.security import extract_session_token
from src.core.utils import utcnow
from src.domain.users.models import RolePermission, User, UserRole, UserSession


@dataclass(frozen=True)
class Identity:
    """The caller as resolved from its session."""

    user_id: int
    email: str
    name: str
    role: UserRole | None

    def as_log_dict(self) -> dict[str, object]:
        return {"id": self.user_id, "email": self.email, "name": self.name, "role": self.role}


# --- SessionResolver ---


async def _find_session_owner(session: AsyncSession, record: UserSession) -> User | None:
    """Loads the owner of a session: internal id, then provider id, then email."""
    reference = record.user_id.strip()

    if reference.isdigit():
        user = await session.get(User, int(reference))
        if user:
            return user

    user = (await session.exec(select(User).where(User.external_id == reference))).first()
    if user:
        return user

    email = record.user_email or (reference if "@" in reference else None)
    if email:
        return (await session.exec(select(User).where(User.email == email.lower()))).first()
    return None


async def resolve_identity(session: AsyncSession, token: str | None) -> Identity:
    """Maps an opaque session token to the identity of its owner.

    Raises:
        Unauthenticated: No token, unknown token, or no owner could be found.
        SessionExpired: The session exists but its expiry has passed.
    """
    if not token:
        raise Unauthenticated("You must be logged in to continue")

    record = await session.get(UserSession, token)
    if record is None:
        raise Unauthenticated("Invalid or expired session")

    if utcnow() > record.expires_at:
        logger.info(f"Rejected expired session for user reference {record.user_id}")
        raise SessionExpired("Session expired, please sign in again")

    user = await _find_session_owner(session, record)
    if user is None:
        logger.warning(f"Session owner {record.user_id} could not be resolved")
        raise Unauthenticated("Invalid or expired session")

    return Identity(user_id=user.id, email=user.email, name=user.display_name, role=user.role)


async def get_current_identity(request: Request, session: AsyncSession = Depends(get_session)) -> Identity:
    """Dependency resolving the caller and attaching it to the request state."""
    identity = await resolve_identity(session, extract_session_token(request))
    request.state.identity = identity
    return identity


# --- RoleGate ---


def _role_name(role: UserRole | str | None) -> str | None:
    return role.value if isinstance(role, UserRole) else role


def check_any_role(allowed: Iterable[UserRole], actual: UserRole | None) -> None:
    """Exact-one-of: the caller's role must be a member of `allowed`."""
    allowed = frozenset(allowed)
    required = sorted(_role_name(r) for r in allowed)
    if actual is None:
        raise Forbidden("No role assigned to user", required=required, actual=None)
    if actual not in allowed:
        logger.warning(f"Role gate rejected '{_role_name(actual)}' (required one of {required})")
        raise Forbidden(
            f"Access denied. Required role(s): {', '.join(required)}",
            required=required,
            actual=_role_name(actual),
        )


def check_role(required: UserRole, actual: UserRole | None) -> None:
    """Single-role-equality: the caller's role must be exactly `required`."""
    if actual is None:
        raise Forbidden("No role assigned to user", required=_role_name(required), actual=None)
    if actual != required:
        logger.warning(f"Role gate rejected '{_role_name(actual)}' (required '{_role_name(required)}')")
        raise Forbidden(
            f"Access denied. Required role: {_role_name(required)}",
            required=_role_name(required),
            actual=_role_name(actual),
        )


# --- PermissionGate ---


async def get_role_permissions(session: AsyncSession, role: UserRole | None) -> dict[str, bool] | None:
    """Loads the permission flags of a role, or None when no record exists."""
    if role is None:
        return None
    record = (await session.exec(select(RolePermission).where(RolePermission.role == role))).first()
    return dict(record.permissions or {}) if record else None


async def has_permission(session: AsyncSession, permission: str, role: UserRole | None) -> bool:
    flags = await get_role_permissions(session, role)
    return bool(flags) and flags.get(permission) is True


async def check_permission(session: AsyncSession, permission: str, role: UserRole | None) -> None:
    """Requires `permission` to be explicitly granted to `role`."""
    if role is None:
        raise Forbidden("No role assigned to user", permission=permission, actual=None)

    flags = await get_role_permissions(session, role)
    if flags is None:
        logger.warning(f"Permission gate found no record for role '{_role_name(role)}'")
        raise Forbidden(
            f"Permission denied. No permissions configured for role: {_role_name(role)}",
            permission=permission,
            actual=_role_name(role),
        )
    if flags.get(permission) is not True:
        logger.warning(f"Permission gate rejected '{_role_name(role)}' for '{permission}'")
        raise Forbidden(
            f"Permission denied. Required permission: {permission}",
            permission=permission,
            actual=_role_name(role),
        )


# --- Pipeline ---


def authorize(
    *,
    any_of: Iterable[UserRole] | None = None,
    exactly: UserRole | None = None,
    permission: str | None = None,
) -> Callable[..., Awaitable[Identity]]:
    """Builds a dependency running the session, role and permission gates in order.

    Args:
        any_of: Role allow-set (exact-one-of).
        exactly: A single required role (single-role-equality).
        permission: Named capability the caller's role must hold.

    Returns:
        A FastAPI dependency yielding the authorized Identity.
    """
    allowed = frozenset(any_of) if any_of is not None else None

    async def dependency(
        identity: Identity = Depends(get_current_identity),
        session: AsyncSession = Depends(get_session),
    ) -> Identity:
        if allowed is not None:
            check_any_role(allowed, identity.role)
        if exactly is not None:
            check_role(exactly, identity.role)
        if permission is not None:
            await check_permission(session, permission, identity.role)
        return identity

    return dependency
