from datetime import datetime
from enum import StrEnum

from sqlmodel import Field, SQLModel

from src.core.database import UTCDateTime
from src.core.utils import utcnow


class StatusLabel(StrEnum):
    """Lifecycle state of a bug."""

    OPEN = "open"
    RESOLVED = "resolved"
    CLOSED = "closed"


class Classification(StrEnum):
    """Triage attribute, orthogonal to the lifecycle state."""

    UNSET = "unset"
    APPROVED = "approved"
    UNAPPROVED = "unapproved"
    DUPLICATE = "duplicate"


class Priority(StrEnum):
    NORMAL = "normal"
    HIGH = "high"


class TestCaseStatus(StrEnum):
    __test__ = False

    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"


class Bug(SQLModel, table=True):
    """A reported defect and its lifecycle state."""

    id: int | None = Field(default=None, primary_key=True)
    title: str = Field(index=True)
    description: str
    steps_to_reproduce: str

    author_id: int = Field(index=True)
    author_name: str

    assigned_user_id: int | None = Field(default=None, index=True)
    assigned_user_name: str | None = None

    status_label: StatusLabel = Field(default=StatusLabel.OPEN, index=True)
    classification: Classification = Field(default=Classification.UNSET, index=True)
    priority: Priority = Field(default=Priority.NORMAL)
    hours_worked: float = Field(default=0.0, ge=0)

    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, index=True)
    last_updated: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    closed_date: datetime | None = Field(default=None, sa_type=UTCDateTime)


class Comment(SQLModel, table=True):
    """Append-only remark attached to a bug."""

    id: int | None = Field(default=None, primary_key=True)
    bug_id: int = Field(foreign_key="bug.id", index=True, ondelete="CASCADE")
    author_id: int
    author_name: str
    text: str
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class TestCase(SQLModel, table=True):
    """A verification scenario authored by a quality analyst."""

    __test__ = False  # not a pytest collection target

    id: int | None = Field(default=None, primary_key=True)
    bug_id: int = Field(foreign_key="bug.id", index=True, ondelete="CASCADE")
    title: str
    description: str
    status: TestCaseStatus = Field(default=TestCaseStatus.PENDING)
    author_id: int
    author_name: str
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
