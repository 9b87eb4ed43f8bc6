from datetime import timedelta

from loguru import logger
from sqlalchemy import asc, desc, func, or_
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from src.app.schemas import SignInRequest, SignUpRequest, UserAdminUpdate, UserQueryParams, UserSelfUpdate
from src.config.settings import settings
from src.core.audit import EditOperation, record_edit
from src.core.errors import Conflict, Forbidden, NotFound, Unauthenticated, ValidationFailed
from src.core.security import generate_session_token, hash_password, verify_password
from src.core.utils import page_window, utcnow
from src.domain.users.access import Identity
from src.domain.users.models import User, UserRole, UserSession
from src.domain.users.permissions import ASSIGNABLE

SORT_COLUMNS = {
    "name": User.name,
    "role": User.role,
    "createdAt": User.created_at,
    "email": User.email,
}

NAME_FIELDS = ("full_name", "given_name", "family_name")


def _apply_names(user: User, changes: dict[str, object]) -> None:
    for field in NAME_FIELDS:
        if field not in changes:
            continue
        value = changes[field]
        if value is None:
            raise ValidationFailed(f"{field} cannot be null", field=field)
        setattr(user, "name" if field == "full_name" else field, value)


# --- Sessions ---


async def open_session(session: AsyncSession, user: User) -> UserSession:
    """Creates a server-side session for `user` valid for the configured TTL."""
    now = utcnow()
    record = UserSession(
        token=generate_session_token(),
        user_id=str(user.id),
        user_email=user.email,
        created_at=now,
        expires_at=now + timedelta(seconds=settings.SESSION_TTL_SECONDS),
    )
    session.add(record)
    await session.commit()
    await session.refresh(record)
    return record


async def sign_up(session: AsyncSession, payload: SignUpRequest) -> tuple[User, UserSession]:
    """Registers a new account and signs it in.

    Raises:
        Conflict: The email is already registered.
    """
    existing = (await session.exec(select(User).where(User.email == payload.email))).first()
    if existing:
        raise Conflict("Email already registered", email=payload.email)

    user = User(
        email=payload.email,
        name=payload.full_name,
        given_name=payload.given_name,
        family_name=payload.family_name,
        password_hash=hash_password(payload.password),
        role=payload.role,
    )
    session.add(user)
    await session.commit()
    await session.refresh(user)
    logger.info(f"Registered user {user.id} with role '{user.role.value}'")

    return user, await open_session(session, user)


async def sign_in(session: AsyncSession, payload: SignInRequest) -> tuple[User, UserSession]:
    """Verifies credentials and opens a session.

    Raises:
        Unauthenticated: Unknown email or wrong password (indistinguishable to the caller).
    """
    user = (await session.exec(select(User).where(User.email == payload.email))).first()
    if user is None or not verify_password(payload.password, user.password_hash):
        logger.info(f"Failed sign-in attempt for {payload.email}")
        raise Unauthenticated("Invalid email or password")

    logger.info(f"User {user.id} signed in")
    return user, await open_session(session, user)


async def sign_out(session: AsyncSession, token: str | None) -> bool:
    """Deletes the session row behind `token`. Returns False when there was none."""
    if not token:
        return False
    record = await session.get(UserSession, token)
    if record is None:
        return False
    await session.delete(record)
    await session.commit()
    logger.info(f"Session closed for user reference {record.user_id}")
    return True


async def purge_expired_sessions(session: AsyncSession) -> int:
    expired = (await session.exec(select(UserSession).where(col(UserSession.expires_at) < utcnow()))).all()
    for record in expired:
        await session.delete(record)
    await session.commit()
    return len(expired)


# --- Users ---


async def get_user_or_404(session: AsyncSession, user_id: int) -> User:
    user = await session.get(User, user_id)
    if user is None:
        raise NotFound(f"User {user_id} not found", userId=user_id)
    return user


async def list_users(session: AsyncSession, params: UserQueryParams) -> list[User]:
    """Lists users matching the search, filter, sort and pagination parameters.

    Args:
        session: The asynchronous database session.
        params: The injected query parameters. A limit of 0 returns every match.

    Returns:
        list[User]: The matching users.
    """
    statement = select(User)

    if params.search:
        term = f"%{params.search}%"
        statement = statement.where(
            or_(
                col(User.email).ilike(term),
                col(User.name).ilike(term),
                col(User.given_name).ilike(term),
                col(User.family_name).ilike(term),
            )
        )

    if params.role:
        statement = statement.where(User.role == params.role)

    if params.has_bugs is not None:
        assigned_count = func.json_array_length(User.assigned_bugs)
        if params.has_bugs:
            statement = statement.where(assigned_count > 0)
        else:
            statement = statement.where(or_(col(User.assigned_bugs).is_(None), assigned_count == 0))

    if params.sort_by:
        direction = desc if params.order == "desc" else asc
        statement = statement.order_by(direction(SORT_COLUMNS[params.sort_by]), asc(User.name))
    else:
        statement = statement.order_by(asc(User.role), asc(User.name))

    offset, limit = page_window(params.page, params.limit)
    statement = statement.offset(offset)
    if limit is not None:
        statement = statement.limit(limit)

    return list((await session.exec(statement)).all())


async def list_assignable_users(session: AsyncSession) -> list[User]:
    statement = select(User).where(col(User.role).in_(ASSIGNABLE)).order_by(asc(User.name))
    return list((await session.exec(statement)).all())


async def update_self(session: AsyncSession, identity: Identity, payload: UserSelfUpdate) -> User:
    """Self-service edit of names and password.

    Raises:
        Forbidden: The payload tries to change the caller's role.
        ValidationFailed: The payload carries no field, or `currentPassword` does not match.
    """
    if "role" in payload.model_fields_set:
        logger.warning(f"User {identity.user_id} tried to change their own role")
        raise Forbidden(
            "You cannot change your own role",
            required=UserRole.TECHNICAL_MANAGER.value,
            actual=identity.role,
        )

    changes = payload.model_dump(exclude_unset=True, exclude={"confirm_password", "current_password"})
    if not changes:
        raise ValidationFailed("No fields to update")

    user = await get_user_or_404(session, identity.user_id)

    if "password" in changes:
        if not verify_password(payload.current_password or "", user.password_hash):
            raise ValidationFailed("Current password is incorrect", field="currentPassword")
        user.password_hash = hash_password(changes.pop("password"))
        changes["password"] = "changed"

    _apply_names(user, changes)
    user.updated_at = utcnow()
    session.add(user)
    await session.commit()
    await session.refresh(user)
    logger.info(f"User {user.id} updated their profile: {sorted(changes)}")

    if not await record_edit(
        session,
        collection="user",
        operation=EditOperation.UPDATE,
        target={"userId": user.id},
        changes=changes,
        actor=identity.as_log_dict(),
    ):
        await session.refresh(user)
    return user


async def update_user(session: AsyncSession, identity: Identity, user_id: int, payload: UserAdminUpdate) -> User:
    """Administrative edit of another user's names or role."""
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise ValidationFailed("No fields to update")

    user = await get_user_or_404(session, user_id)
    if "role" in changes:
        if changes["role"] is None:
            raise ValidationFailed("role cannot be null", field="role")
        user.role = changes["role"]
    _apply_names(user, changes)
    user.updated_at = utcnow()
    session.add(user)
    await session.commit()
    await session.refresh(user)
    logger.info(f"User {user.id} updated by user {identity.user_id}: {sorted(changes)}")

    if not await record_edit(
        session,
        collection="user",
        operation=EditOperation.UPDATE,
        target={"userId": user.id},
        changes=changes,
        actor=identity.as_log_dict(),
    ):
        await session.refresh(user)
    return user


async def delete_user(session: AsyncSession, identity: Identity, user_id: int) -> None:
    """Hard-deletes a user together with every session they hold."""
    user = await get_user_or_404(session, user_id)
    email = user.email

    owned = await session.exec(
        select(UserSession).where(or_(col(UserSession.user_id) == str(user.id), col(UserSession.user_email) == email))
    )
    for record in owned.all():
        await session.delete(record)
    await session.delete(user)
    await session.commit()
    logger.info(f"User {user_id} deleted by user {identity.user_id}")

    await record_edit(
        session,
        collection="user",
        operation=EditOperation.DELETE,
        target={"userId": user_id, "email": email},
        changes={},
        actor=identity.as_log_dict(),
    )
