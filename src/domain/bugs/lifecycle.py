"""Bug lifecycle: open -> resolved -> closed.

`closed` is terminal. There is no re-open action; a transition back to `open` is a
conflict, as is closing through the generic edit path (closing has its own endpoint
guarded by the business-analyst role).
"""

from enum import StrEnum

from src.core.errors import Conflict
from src.domain.bugs.models import Bug, StatusLabel


class TransitionNotAllowed(Conflict):
    pass


class BugAction(StrEnum):
    RESOLVE = "resolve"  # open -> resolved
    CLOSE = "close"  # open/resolved/closed -> closed


TERMINAL = {StatusLabel.CLOSED}

# action -> allowed from statuses + to status
TRANSITIONS: dict[BugAction, tuple[set[StatusLabel], StatusLabel]] = {
    BugAction.RESOLVE: ({StatusLabel.OPEN}, StatusLabel.RESOLVED),
    BugAction.CLOSE: ({StatusLabel.OPEN, StatusLabel.RESOLVED, StatusLabel.CLOSED}, StatusLabel.CLOSED),
}


def apply_transition(current: StatusLabel, action: BugAction) -> StatusLabel:
    """Returns the status reached by applying `action` to `current`.

    Raises:
        TransitionNotAllowed: The action is not permitted from the current status.
    """
    allowed_from, to_status = TRANSITIONS[action]
    if current not in allowed_from:
        allowed_from_str = ", ".join(sorted(s.value for s in allowed_from))
        raise TransitionNotAllowed(
            f"Action '{action.value}' not allowed from status '{current.value}'. Allowed from: {allowed_from_str}.",
            current=current.value,
            action=action.value,
        )
    return to_status


def action_for_status(current: StatusLabel, requested: StatusLabel) -> BugAction | None:
    """Maps a requested `statusLabel` on the edit path to a lifecycle action.

    Returns None when the requested status equals the current one.
    """
    if requested == current:
        return None
    if requested == StatusLabel.RESOLVED:
        return BugAction.RESOLVE
    if requested == StatusLabel.CLOSED:
        raise TransitionNotAllowed(
            "Bugs are closed through the close endpoint", current=current.value, requested=requested.value
        )
    raise TransitionNotAllowed(
        f"A {current.value} bug cannot be re-opened", current=current.value, requested=requested.value
    )


def is_author(bug: Bug, user_id: int) -> bool:
    return bug.author_id == user_id


def is_assignee(bug: Bug, user_id: int) -> bool:
    return bug.assigned_user_id is not None and bug.assigned_user_id == user_id


def is_owner(bug: Bug, user_id: int) -> bool:
    """The author or the current assignee, compared by user id."""
    return is_author(bug, user_id) or is_assignee(bug, user_id)
