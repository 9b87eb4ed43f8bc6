from collections.abc import Callable
from typing import Any

from loguru import logger
from sqlalchemy import asc, desc, or_
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from src.app.schemas import BugCreate, BugQueryParams, BugUpdate, CommentCreate, TestCaseCreate, TestCaseUpdate
from src.config.settings import settings
from src.core.audit import EditOperation, record_edit
from src.core.errors import Conflict, Forbidden, NotFound, ValidationFailed
from src.core.utils import add_to_set, days_ago, page_window, pull, utcnow
from src.domain.bugs.lifecycle import BugAction, action_for_status, apply_transition, is_owner
from src.domain.bugs.models import Bug, Classification, Comment, StatusLabel, TestCase
from src.domain.users.access import Identity, has_permission
from src.domain.users.models import User, UserRole
from src.domain.users.permissions import Permission

SORT_COLUMNS = {
    "classification": Bug.classification,
    "title": Bug.title,
    "assignedUserName": Bug.assigned_user_name,
    "authorName": Bug.author_name,
    "statusLabel": Bug.status_label,
    "createdAt": Bug.created_at,
}

FREE_TEXT_FIELDS = frozenset({"title", "description", "steps_to_reproduce"})
TRACKING_FIELDS = frozenset({"priority", "hours_worked"})


def _bug_target(bug: Bug) -> dict[str, Any]:
    return {"bugId": bug.id, "title": bug.title}


async def _update_bug_list(
    session: AsyncSession,
    user_id: int,
    field: str,
    change: Callable[[list[Any] | None, Any], list[Any]],
    bug_id: int,
) -> bool:
    """Best-effort secondary write to one of a user's bug id lists."""
    try:
        user = await session.get(User, user_id)
        if user is None:
            logger.warning(f"Skipped {field} update: user {user_id} no longer exists")
            return True
        # JSON columns only persist on reassignment
        setattr(user, field, change(getattr(user, field), bug_id))
        user.updated_at = utcnow()
        session.add(user)
        await session.commit()
    except Exception as e:
        await session.rollback()
        logger.error(f"Secondary write to {field} of user {user_id} for bug {bug_id} failed: {e}")
        return False
    return True


async def _reload_if(session: AsyncSession, failed: bool, *instances: Any) -> None:
    # A rolled-back best-effort write expires every loaded instance
    if failed:
        for instance in instances:
            await session.refresh(instance)


async def _commit_bug(session: AsyncSession, bug: Bug) -> None:
    bug.last_updated = utcnow()
    session.add(bug)
    await session.commit()
    await session.refresh(bug)


# --- Bugs ---


async def get_bug_or_404(session: AsyncSession, bug_id: int) -> Bug:
    bug = await session.get(Bug, bug_id)
    if bug is None:
        raise NotFound(f"Bug {bug_id} not found", bugId=bug_id)
    return bug


async def list_bugs(session: AsyncSession, identity: Identity, params: BugQueryParams) -> list[Bug]:
    """Lists bugs matching the search, filter, sort and pagination parameters.

    Args:
        session: The asynchronous database session.
        identity: The caller, used by the assigned-to-me filter.
        params: The injected query parameters.

    Returns:
        list[Bug]: One page of matching bugs.
    """
    statement = select(Bug)

    if params.keywords:
        term = f"%{params.keywords}%"
        statement = statement.where(
            or_(
                col(Bug.title).ilike(term),
                col(Bug.description).ilike(term),
                col(Bug.author_name).ilike(term),
            )
        )

    if params.classification:
        statement = statement.where(Bug.classification == params.classification)

    if params.closed == "true":
        statement = statement.where(Bug.status_label == StatusLabel.CLOSED)
    elif params.closed == "false":
        statement = statement.where(Bug.status_label != StatusLabel.CLOSED)
    elif params.closed == "resolved":
        statement = statement.where(Bug.status_label == StatusLabel.RESOLVED)

    if params.assigned_to_me:
        statement = statement.where(Bug.assigned_user_id == identity.user_id)

    # Ages are whole days counted back from today's midnight; zero means unbounded
    if params.max_age:
        statement = statement.where(Bug.created_at >= days_ago(params.max_age))
    if params.min_age:
        statement = statement.where(Bug.created_at <= days_ago(params.min_age))

    direction = desc if params.order == "desc" else asc
    statement = statement.order_by(direction(SORT_COLUMNS[params.sort_by]), asc(Bug.id))

    offset, limit = page_window(params.page, params.limit or settings.DEFAULT_BUG_PAGE_SIZE)
    statement = statement.offset(offset).limit(limit)

    return list((await session.exec(statement)).all())


async def create_bug(session: AsyncSession, identity: Identity, payload: BugCreate) -> Bug:
    """Persists a new bug in the `open` state authored by the caller."""
    now = utcnow()
    bug = Bug(
        title=payload.title,
        description=payload.description,
        steps_to_reproduce=payload.steps_to_reproduce,
        priority=payload.priority,
        author_id=identity.user_id,
        author_name=identity.name,
        status_label=StatusLabel.OPEN,
        classification=Classification.UNSET,
        created_at=now,
        last_updated=now,
    )
    session.add(bug)
    await session.commit()
    await session.refresh(bug)
    logger.info(f"Bug {bug.id} created by user {identity.user_id}")

    # Read before the secondary writes; a failed one rolls back and expires `bug`
    target = _bug_target(bug)
    linked = await _update_bug_list(session, identity.user_id, "created_bugs", add_to_set, bug.id)
    logged = await record_edit(
        session,
        collection="bug",
        operation=EditOperation.CREATE,
        target=target,
        changes=payload.model_dump(),
        actor=identity.as_log_dict(),
    )
    await _reload_if(session, not (linked and logged), bug)
    return bug


async def update_bug(session: AsyncSession, identity: Identity, bug_id: int, payload: BugUpdate) -> Bug:
    """Applies an edit to a bug, enforcing field ownership and the lifecycle.

    A business analyst who neither wrote nor owns the bug reviews it: resolving is the
    only change they may make.

    Raises:
        ValidationFailed: The payload carries no field.
        NotFound: The bug does not exist.
        Forbidden: The caller may not change one of the submitted fields.
        TransitionNotAllowed: The requested status cannot be reached.
    """
    fields = set(payload.model_fields_set)
    if not fields:
        raise ValidationFailed("No fields to update")

    bug = await get_bug_or_404(session, bug_id)
    owner = is_owner(bug, identity.user_id)
    reviewer = identity.role == UserRole.BUSINESS_ANALYST and not owner

    if reviewer:
        if fields != {"status_label"} or payload.status_label != StatusLabel.RESOLVED:
            raise Forbidden(
                "Reviewing business analysts may only resolve a bug",
                required="author or assignee",
                actual=identity.role,
                fields=sorted(fields),
            )
    else:
        if fields & FREE_TEXT_FIELDS and not owner:
            raise Forbidden(
                "Only the author or the assigned user may edit the title, description or steps",
                required="author or assignee",
                actual=identity.role,
                fields=sorted(fields & FREE_TEXT_FIELDS),
            )
        if fields & TRACKING_FIELDS and not owner:
            if not await has_permission(session, Permission.EDIT_ANY_BUG, identity.role):
                raise Forbidden(
                    f"Permission denied. Required permission: {Permission.EDIT_ANY_BUG}",
                    permission=Permission.EDIT_ANY_BUG,
                    actual=identity.role,
                )

    changes: dict[str, Any] = {}

    if "status_label" in fields and payload.status_label is None:
        raise ValidationFailed("status_label cannot be null", field="statusLabel")
    if payload.status_label is not None:
        action = action_for_status(bug.status_label, payload.status_label)
        if action is not None:
            if not reviewer and not await has_permission(session, Permission.EDIT_ANY_BUG, identity.role):
                raise Forbidden(
                    f"Permission denied. Required permission: {Permission.EDIT_ANY_BUG}",
                    permission=Permission.EDIT_ANY_BUG,
                    actual=identity.role,
                )
            bug.status_label = apply_transition(bug.status_label, action)
            changes["status_label"] = bug.status_label

    for field in (fields - {"status_label"}):
        value = getattr(payload, field)
        if value is None:
            raise ValidationFailed(f"{field} cannot be null", field=field)
        setattr(bug, field, value)
        changes[field] = value

    await _commit_bug(session, bug)
    logger.info(f"Bug {bug.id} updated by user {identity.user_id}: {sorted(changes)}")

    logged = await record_edit(
        session,
        collection="bug",
        operation=EditOperation.UPDATE,
        target=_bug_target(bug),
        changes=changes,
        actor=identity.as_log_dict(),
    )
    await _reload_if(session, not logged, bug)
    return bug


async def classify_bug(
    session: AsyncSession, identity: Identity, bug_id: int, classification: Classification
) -> Bug:
    bug = await get_bug_or_404(session, bug_id)
    bug.classification = classification
    await _commit_bug(session, bug)
    logger.info(f"Bug {bug.id} classified as {classification.value} by user {identity.user_id}")

    logged = await record_edit(
        session,
        collection="bug",
        operation=EditOperation.CLASSIFY,
        target=_bug_target(bug),
        changes={"classification": classification},
        actor=identity.as_log_dict(),
    )
    await _reload_if(session, not logged, bug)
    return bug


async def assign_bug(session: AsyncSession, identity: Identity, bug_id: int, user_id: int) -> Bug:
    """Assigns a bug to a user.

    The bug row is the primary write and is committed first. Keeping the assignee's
    `assigned_bugs` list (and the previous assignee's) in step is best-effort.

    Raises:
        NotFound: The bug or the assignee does not exist.
    """
    bug = await get_bug_or_404(session, bug_id)
    assignee = await session.get(User, user_id)
    if assignee is None:
        raise NotFound(f"User {user_id} not found", userId=user_id)

    previous_id = bug.assigned_user_id
    bug.assigned_user_id = assignee.id
    bug.assigned_user_name = assignee.display_name
    await _commit_bug(session, bug)
    assignee_id = assignee.id
    logger.info(f"Bug {bug_id} assigned to user {assignee_id} by user {identity.user_id}")

    # Read before the secondary writes; a failed one rolls back and expires `bug`
    target = _bug_target(bug)
    ok = await _update_bug_list(session, assignee_id, "assigned_bugs", add_to_set, bug_id)
    if previous_id is not None and previous_id != assignee_id:
        ok = await _update_bug_list(session, previous_id, "assigned_bugs", pull, bug_id) and ok

    logged = await record_edit(
        session,
        collection="bug",
        operation=EditOperation.ASSIGN,
        target=target,
        changes={"assigned_user_id": assignee_id, "previous_user_id": previous_id},
        actor=identity.as_log_dict(),
    )
    await _reload_if(session, not (ok and logged), bug)
    return bug


async def close_bug(session: AsyncSession, identity: Identity, bug_id: int, *, status: bool = True) -> Bug:
    """Closes a bug from any state. Closing an already-closed bug changes nothing.

    Raises:
        NotFound: The bug does not exist.
        Conflict: `status` is False; closed bugs are never re-opened.
    """
    bug = await get_bug_or_404(session, bug_id)
    if not status:
        raise Conflict("Closed bugs cannot be re-opened", current=bug.status_label.value)

    if bug.status_label == StatusLabel.CLOSED:
        logger.debug(f"Bug {bug.id} already closed")
        return bug

    bug.status_label = apply_transition(bug.status_label, BugAction.CLOSE)
    bug.closed_date = utcnow()
    await _commit_bug(session, bug)
    logger.info(f"Bug {bug.id} closed by user {identity.user_id}")

    logged = await record_edit(
        session,
        collection="bug",
        operation=EditOperation.CLOSE,
        target=_bug_target(bug),
        changes={"status_label": bug.status_label, "closed_date": bug.closed_date},
        actor=identity.as_log_dict(),
    )
    await _reload_if(session, not logged, bug)
    return bug


# --- Comments ---


async def add_comment(session: AsyncSession, identity: Identity, bug_id: int, payload: CommentCreate) -> Comment:
    bug = await get_bug_or_404(session, bug_id)
    comment = Comment(bug_id=bug.id, author_id=identity.user_id, author_name=identity.name, text=payload.text)
    bug.last_updated = utcnow()
    session.add(comment)
    session.add(bug)
    await session.commit()
    await session.refresh(comment)
    logger.info(f"Comment {comment.id} added to bug {bug.id} by user {identity.user_id}")
    return comment


async def list_comments(session: AsyncSession, bug_id: int) -> list[Comment]:
    await get_bug_or_404(session, bug_id)
    statement = select(Comment).where(Comment.bug_id == bug_id).order_by(asc(Comment.created_at), asc(Comment.id))
    return list((await session.exec(statement)).all())


async def get_comment(session: AsyncSession, bug_id: int, comment_id: int) -> Comment:
    await get_bug_or_404(session, bug_id)
    comment = await session.get(Comment, comment_id)
    if comment is None or comment.bug_id != bug_id:
        raise NotFound(f"Comment {comment_id} not found on bug {bug_id}", commentId=comment_id)
    return comment


# --- Test cases ---


async def _require_stored_quality_analyst(session: AsyncSession, identity: Identity) -> None:
    """Re-reads the caller's role from the store; only quality analysts manage test cases."""
    user = await session.get(User, identity.user_id)
    if user is None or user.role != UserRole.QUALITY_ANALYST:
        logger.warning(f"Test case write refused for user {identity.user_id} with stored role {user and user.role}")
        raise Forbidden(
            "Only quality analysts can manage test cases",
            required=UserRole.QUALITY_ANALYST.value,
            actual=user.role.value if user else None,
        )


async def _get_test_case_or_404(session: AsyncSession, bug_id: int, test_id: int) -> TestCase:
    test_case = await session.get(TestCase, test_id)
    if test_case is None or test_case.bug_id != bug_id:
        raise NotFound(f"Test case {test_id} not found on bug {bug_id}", testId=test_id)
    return test_case


async def create_test_case(
    session: AsyncSession, identity: Identity, bug_id: int, payload: TestCaseCreate
) -> TestCase:
    await _require_stored_quality_analyst(session, identity)
    bug = await get_bug_or_404(session, bug_id)

    test_case = TestCase(
        bug_id=bug.id,
        title=payload.title,
        description=payload.description,
        status=payload.status,
        author_id=identity.user_id,
        author_name=identity.name,
    )
    bug.last_updated = utcnow()
    session.add(test_case)
    session.add(bug)
    await session.commit()
    await session.refresh(test_case)
    logger.info(f"Test case {test_case.id} added to bug {bug.id} by user {identity.user_id}")
    return test_case


async def list_test_cases(session: AsyncSession, bug_id: int) -> list[TestCase]:
    await get_bug_or_404(session, bug_id)
    statement = select(TestCase).where(TestCase.bug_id == bug_id).order_by(asc(TestCase.id))
    return list((await session.exec(statement)).all())


async def get_test_case(session: AsyncSession, bug_id: int, test_id: int) -> TestCase:
    await get_bug_or_404(session, bug_id)
    return await _get_test_case_or_404(session, bug_id, test_id)


async def update_test_case(
    session: AsyncSession, identity: Identity, bug_id: int, test_id: int, payload: TestCaseUpdate
) -> TestCase:
    await _require_stored_quality_analyst(session, identity)
    bug = await get_bug_or_404(session, bug_id)
    test_case = await _get_test_case_or_404(session, bug_id, test_id)

    fields = payload.model_dump(exclude_unset=True)
    if not fields:
        raise ValidationFailed("No fields to update")
    for field, value in fields.items():
        if value is None:
            raise ValidationFailed(f"{field} cannot be null", field=field)
        setattr(test_case, field, value)

    now = utcnow()
    test_case.updated_at = now
    bug.last_updated = now
    session.add(test_case)
    session.add(bug)
    await session.commit()
    await session.refresh(test_case)
    logger.info(f"Test case {test_case.id} on bug {bug.id} updated by user {identity.user_id}")
    return test_case


async def delete_test_case(session: AsyncSession, identity: Identity, bug_id: int, test_id: int) -> None:
    await _require_stored_quality_analyst(session, identity)
    bug = await get_bug_or_404(session, bug_id)
    test_case = await _get_test_case_or_404(session, bug_id, test_id)

    bug.last_updated = utcnow()
    session.add(bug)
    await session.delete(test_case)
    await session.commit()
    logger.info(f"Test case {test_id} deleted from bug {bug_id} by user {identity.user_id}")
