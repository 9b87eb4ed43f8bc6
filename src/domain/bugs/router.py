from fastapi import APIRouter, Body, Depends, Response, status
from sqlmodel.ext.asyncio.session import AsyncSession

from src.app.schemas import (
    BugAssign,
    BugClassify,
    BugClose,
    BugCreate,
    BugList,
    BugQueryParams,
    BugRead,
    BugUpdate,
    CommentCreate,
    CommentRead,
    TestCaseCreate,
    TestCaseRead,
    TestCaseUpdate,
)
from src.core.database import get_session
from src.domain.bugs import service
from src.domain.users.access import Identity, authorize
from src.domain.users.models import UserRole
from src.domain.users.permissions import CONTRIBUTORS, REPORTERS, TRIAGE, Permission

router = APIRouter(prefix="/api/bugs", tags=["Bugs"])

can_view = authorize(any_of=CONTRIBUTORS, permission=Permission.VIEW_DATA)


@router.get("", response_model=BugList)
async def list_bugs(
    params: BugQueryParams = Depends(),
    identity: Identity = Depends(can_view),
    session: AsyncSession = Depends(get_session),
) -> BugList:
    """Searches, filters, sorts and paginates bugs.

    Args:
        params: The injected query parameters.
        identity: The authorized caller.
        session: The asynchronous database session.

    Returns:
        BugList: The page of bugs wrapped under `bugs`.
    """
    bugs = await service.list_bugs(session, identity, params)
    return BugList(bugs=[BugRead.model_validate(bug) for bug in bugs])


@router.post("", response_model=BugRead, status_code=status.HTTP_201_CREATED)
async def create_bug(
    payload: BugCreate,
    identity: Identity = Depends(authorize(any_of=REPORTERS, permission=Permission.CREATE_BUG)),
    session: AsyncSession = Depends(get_session),
) -> BugRead:
    """Reports a new bug. Every new bug starts `open` and unclassified."""
    bug = await service.create_bug(session, identity, payload)
    return BugRead.model_validate(bug)


@router.get("/{bug_id}", response_model=BugRead)
async def get_bug(
    bug_id: int,
    identity: Identity = Depends(can_view),
    session: AsyncSession = Depends(get_session),
) -> BugRead:
    return BugRead.model_validate(await service.get_bug_or_404(session, bug_id))


@router.patch("/{bug_id}", response_model=BugRead)
async def update_bug(
    bug_id: int,
    payload: BugUpdate,
    identity: Identity = Depends(authorize(any_of=CONTRIBUTORS)),
    session: AsyncSession = Depends(get_session),
) -> BugRead:
    """Edits bug fields or resolves the bug.

    Field-level rules (ownership, reviewer restrictions, lifecycle) are enforced by the
    service layer once the bug is loaded.
    """
    bug = await service.update_bug(session, identity, bug_id, payload)
    return BugRead.model_validate(bug)


@router.patch("/{bug_id}/classify", response_model=BugRead)
async def classify_bug(
    bug_id: int,
    payload: BugClassify,
    identity: Identity = Depends(authorize(any_of=TRIAGE, permission=Permission.CLASSIFY_ANY_BUG)),
    session: AsyncSession = Depends(get_session),
) -> BugRead:
    bug = await service.classify_bug(session, identity, bug_id, payload.classification)
    return BugRead.model_validate(bug)


@router.patch("/{bug_id}/assign", response_model=BugRead)
async def assign_bug(
    bug_id: int,
    payload: BugAssign,
    identity: Identity = Depends(authorize(any_of=TRIAGE, permission=Permission.REASSIGN_ANY_BUG)),
    session: AsyncSession = Depends(get_session),
) -> BugRead:
    bug = await service.assign_bug(session, identity, bug_id, payload.user_id)
    return BugRead.model_validate(bug)


@router.patch("/{bug_id}/close", response_model=BugRead)
async def close_bug(
    bug_id: int,
    payload: BugClose | None = Body(default=None),
    identity: Identity = Depends(
        authorize(exactly=UserRole.BUSINESS_ANALYST, permission=Permission.CLOSE_ANY_BUG)
    ),
    session: AsyncSession = Depends(get_session),
) -> BugRead:
    """Closes a bug. Restricted to business analysts holding the close permission."""
    close = payload.status if payload is not None else True
    bug = await service.close_bug(session, identity, bug_id, status=close)
    return BugRead.model_validate(bug)


# --- Comments ---


@router.post("/{bug_id}/comments", response_model=CommentRead, status_code=status.HTTP_201_CREATED)
async def add_comment(
    bug_id: int,
    payload: CommentCreate,
    identity: Identity = Depends(authorize(permission=Permission.ADD_COMMENT)),
    session: AsyncSession = Depends(get_session),
) -> CommentRead:
    comment = await service.add_comment(session, identity, bug_id, payload)
    return CommentRead.model_validate(comment)


@router.get("/{bug_id}/comments", response_model=list[CommentRead])
async def list_comments(
    bug_id: int,
    identity: Identity = Depends(can_view),
    session: AsyncSession = Depends(get_session),
) -> list[CommentRead]:
    return [CommentRead.model_validate(c) for c in await service.list_comments(session, bug_id)]


@router.get("/{bug_id}/comments/{comment_id}", response_model=CommentRead)
async def get_comment(
    bug_id: int,
    comment_id: int,
    identity: Identity = Depends(can_view),
    session: AsyncSession = Depends(get_session),
) -> CommentRead:
    return CommentRead.model_validate(await service.get_comment(session, bug_id, comment_id))


# --- Test cases ---


@router.post("/{bug_id}/tests", response_model=TestCaseRead, status_code=status.HTTP_201_CREATED)
async def create_test_case(
    bug_id: int,
    payload: TestCaseCreate,
    identity: Identity = Depends(authorize(exactly=UserRole.QUALITY_ANALYST, permission=Permission.ADD_TEST_CASE)),
    session: AsyncSession = Depends(get_session),
) -> TestCaseRead:
    test_case = await service.create_test_case(session, identity, bug_id, payload)
    return TestCaseRead.model_validate(test_case)


@router.get("/{bug_id}/tests", response_model=list[TestCaseRead])
async def list_test_cases(
    bug_id: int,
    identity: Identity = Depends(can_view),
    session: AsyncSession = Depends(get_session),
) -> list[TestCaseRead]:
    return [TestCaseRead.model_validate(t) for t in await service.list_test_cases(session, bug_id)]


@router.get("/{bug_id}/tests/{test_id}", response_model=TestCaseRead)
async def get_test_case(
    bug_id: int,
    test_id: int,
    identity: Identity = Depends(can_view),
    session: AsyncSession = Depends(get_session),
) -> TestCaseRead:
    return TestCaseRead.model_validate(await service.get_test_case(session, bug_id, test_id))


@router.patch("/{bug_id}/tests/{test_id}", response_model=TestCaseRead)
async def update_test_case(
    bug_id: int,
    test_id: int,
    payload: TestCaseUpdate,
    identity: Identity = Depends(authorize(exactly=UserRole.QUALITY_ANALYST, permission=Permission.EDIT_TEST_CASE)),
    session: AsyncSession = Depends(get_session),
) -> TestCaseRead:
    test_case = await service.update_test_case(session, identity, bug_id, test_id, payload)
    return TestCaseRead.model_validate(test_case)


@router.delete("/{bug_id}/tests/{test_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_test_case(
    bug_id: int,
    test_id: int,
    identity: Identity = Depends(
        authorize(exactly=UserRole.QUALITY_ANALYST, permission=Permission.DELETE_TEST_CASE)
    ),
    session: AsyncSession = Depends(get_session),
) -> Response:
    await service.delete_test_case(session, identity, bug_id, test_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
