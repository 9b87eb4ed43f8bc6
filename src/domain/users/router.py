from fastapi import APIRouter, Depends, Request, Response, status
from sqlmodel.ext.asyncio.session import AsyncSession

from src.app.schemas import (
    MessageResponse,
    SessionRead,
    SignInRequest,
    SignUpRequest,
    UserAdminUpdate,
    UserList,
    UserQueryParams,
    UserRead,
    UserSelfUpdate,
    UserSummary,
)
from src.core.database import get_session
from src.core.security import clear_session_cookie, extract_session_token, set_session_cookie
from src.domain.users import service
from src.domain.users.access import Identity, authorize, get_current_identity
from src.domain.users.models import UserRole
from src.domain.users.permissions import CONTRIBUTORS, Permission

auth_router = APIRouter(prefix="/api/auth", tags=["Authentication"])
router = APIRouter(prefix="/api/users", tags=["Users"])

can_view = authorize(any_of=CONTRIBUTORS, permission=Permission.VIEW_DATA)
can_edit_users = authorize(exactly=UserRole.TECHNICAL_MANAGER, permission=Permission.EDIT_ANY_USER)


# --- Authentication ---


@auth_router.post("/sign-up/email", response_model=SessionRead, status_code=status.HTTP_201_CREATED)
async def sign_up(
    payload: SignUpRequest,
    response: Response,
    session: AsyncSession = Depends(get_session),
) -> SessionRead:
    """Registers an account with email and password and signs it in.

    Args:
        payload: The registration form.
        response: The outgoing response, used to attach the session cookie.
        session: The asynchronous database session.

    Returns:
        SessionRead: The new user and the session expiry.
    """
    user, user_session = await service.sign_up(session, payload)
    set_session_cookie(response, user_session.token)
    return SessionRead(user=UserRead.model_validate(user), expires_at=user_session.expires_at)


@auth_router.post("/sign-in/email", response_model=SessionRead)
async def sign_in(
    payload: SignInRequest,
    response: Response,
    session: AsyncSession = Depends(get_session),
) -> SessionRead:
    user, user_session = await service.sign_in(session, payload)
    set_session_cookie(response, user_session.token)
    return SessionRead(user=UserRead.model_validate(user), expires_at=user_session.expires_at)


@auth_router.post("/sign-out", response_model=MessageResponse)
async def sign_out(request: Request, response: Response, session: AsyncSession = Depends(get_session)) -> MessageResponse:
    """Destroys the caller's session (if any) and clears the cookie."""
    await service.sign_out(session, extract_session_token(request))
    clear_session_cookie(response)
    return MessageResponse(message="Signed out")


# --- Users ---


@router.get("", response_model=UserList)
async def list_users(
    params: UserQueryParams = Depends(),
    identity: Identity = Depends(can_view),
    session: AsyncSession = Depends(get_session),
) -> UserList:
    users = await service.list_users(session, params)
    return UserList(users=[UserRead.model_validate(u) for u in users])


@router.get("/me", response_model=UserRead)
async def get_me(
    identity: Identity = Depends(get_current_identity),
    session: AsyncSession = Depends(get_session),
) -> UserRead:
    return UserRead.model_validate(await service.get_user_or_404(session, identity.user_id))


@router.patch("/me", response_model=UserRead)
async def update_me(
    payload: UserSelfUpdate,
    identity: Identity = Depends(get_current_identity),
    session: AsyncSession = Depends(get_session),
) -> UserRead:
    """Updates the caller's own names or password. Changing one's own role is refused."""
    return UserRead.model_validate(await service.update_self(session, identity, payload))


@router.get("/assignable", response_model=list[UserSummary])
async def list_assignable_users(
    identity: Identity = Depends(get_current_identity),
    session: AsyncSession = Depends(get_session),
) -> list[UserSummary]:
    """Lists the users bugs can be assigned to (developers and quality analysts)."""
    return [UserSummary.model_validate(u) for u in await service.list_assignable_users(session)]


@router.get("/{user_id}", response_model=UserRead)
async def get_user(
    user_id: int,
    identity: Identity = Depends(can_view),
    session: AsyncSession = Depends(get_session),
) -> UserRead:
    return UserRead.model_validate(await service.get_user_or_404(session, user_id))


@router.patch("/{user_id}", response_model=UserRead)
async def update_user(
    user_id: int,
    payload: UserAdminUpdate,
    identity: Identity = Depends(can_edit_users),
    session: AsyncSession = Depends(get_session),
) -> UserRead:
    """Changes another user's names or role. Restricted to technical managers."""
    return UserRead.model_validate(await service.update_user(session, identity, user_id, payload))


@router.delete("/{user_id}", response_model=MessageResponse)
async def delete_user(
    user_id: int,
    identity: Identity = Depends(can_edit_users),
    session: AsyncSession = Depends(get_session),
) -> MessageResponse:
    """Hard-deletes a user and their sessions. Restricted to technical managers."""
    await service.delete_user(session, identity, user_id)
    return MessageResponse(message=f"User {user_id} deleted")
