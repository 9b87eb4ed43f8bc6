from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from fastapi import Query
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from src.domain.bugs.models import Classification, Priority, StatusLabel, TestCaseStatus
from src.domain.users.models import UserRole

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# Sign-up accepts the camelCase spellings used by older clients
ROLE_ALIASES: dict[str, UserRole] = {
    "technicalManager": UserRole.TECHNICAL_MANAGER,
    "businessAnalyst": UserRole.BUSINESS_ANALYST,
    "qualityAnalyst": UserRole.QUALITY_ANALYST,
    "productManager": UserRole.PRODUCT_MANAGER,
}


class CamelModel(BaseModel):
    """Base for JSON bodies exchanged with the frontend (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class ReadModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# --- Query parameters ---


@dataclass
class BugQueryParams:
    """Encapsulates GET query parameters for the bug listing."""

    keywords: str | None = Query(default=None, description="Matches title, description or author name")
    classification: Classification | None = Query(default=None)
    closed: Literal["true", "false", "resolved"] | None = Query(default=None)
    assigned_to_me: bool = Query(default=False, alias="assignedToMe")
    min_age: int | None = Query(default=None, ge=0, alias="minAge", description="Created at least N days ago")
    max_age: int | None = Query(default=None, ge=0, alias="maxAge", description="Created at most N days ago")
    page: int = Query(default=1, ge=1)
    limit: int | None = Query(default=None, ge=1, le=200)
    sort_by: Literal["classification", "title", "assignedUserName", "authorName", "statusLabel", "createdAt"] = Query(
        default="createdAt", alias="sortBy"
    )
    order: Literal["asc", "desc"] = Query(default="asc")


@dataclass
class UserQueryParams:
    """Encapsulates GET query parameters for the user listing."""

    keywords: str | None = Query(default=None, description="Matches name, given name, family name or email")
    name: str | None = Query(default=None, description="Alias of keywords")
    role: UserRole | None = Query(default=None)
    has_bugs: bool | None = Query(default=None, alias="hasBugs")
    page: int = Query(default=1, ge=1)
    limit: int = Query(default=0, ge=0, le=200, description="0 returns every match")
    sort_by: Literal["name", "role", "createdAt", "email"] | None = Query(
        default=None, alias="sortBy", description="Defaults to role, then name"
    )
    order: Literal["asc", "desc"] = Query(default="asc")

    @property
    def search(self) -> str | None:
        return self.keywords or self.name


# --- Auth ---


class SignUpRequest(CamelModel):
    email: str = Field(pattern=EMAIL_PATTERN)
    password: str = Field(min_length=6, max_length=20)
    confirm_password: str | None = None
    role: UserRole
    full_name: str = Field(min_length=1)
    given_name: str = Field(min_length=1)
    family_name: str = Field(min_length=1)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("role", mode="before")
    @classmethod
    def normalize_role(cls, value: object) -> object:
        if isinstance(value, str):
            return ROLE_ALIASES.get(value.strip(), value.strip())
        return value

    @model_validator(mode="after")
    def passwords_match(self) -> "SignUpRequest":
        if self.confirm_password is not None and self.confirm_password != self.password:
            raise ValueError("confirmPassword must match password")
        return self


class SignInRequest(CamelModel):
    email: str = Field(pattern=EMAIL_PATTERN)
    password: str = Field(min_length=1)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return value.strip().lower()


# --- Users ---


class UserRead(ReadModel):
    id: int
    email: str
    name: str
    given_name: str | None = None
    family_name: str | None = None
    role: UserRole
    assigned_bugs: list[int] = []
    created_bugs: list[int] = []
    created_at: datetime
    updated_at: datetime


class UserSummary(ReadModel):
    id: int
    email: str
    name: str
    role: UserRole


class SessionRead(CamelModel):
    user: UserRead
    expires_at: datetime


class UserSelfUpdate(CamelModel):
    """Self-service profile edit. The role key is accepted only to be refused with 403."""

    full_name: str | None = Field(default=None, min_length=1)
    given_name: str | None = Field(default=None, min_length=1)
    family_name: str | None = Field(default=None, min_length=1)
    password: str | None = Field(default=None, min_length=6, max_length=20)
    confirm_password: str | None = None
    current_password: str | None = None
    role: str | None = None

    @model_validator(mode="after")
    def password_rules(self) -> "UserSelfUpdate":
        if self.password is None:
            if self.confirm_password is not None:
                raise ValueError("confirmPassword is only allowed together with password")
            return self
        if self.confirm_password != self.password:
            raise ValueError("confirmPassword must match password")
        if not self.current_password:
            raise ValueError("currentPassword is required to change the password")
        return self


class UserAdminUpdate(CamelModel):
    """Administrative edit of another user. Passwords are never changed here."""

    full_name: str | None = Field(default=None, min_length=1)
    given_name: str | None = Field(default=None, min_length=1)
    family_name: str | None = Field(default=None, min_length=1)
    role: UserRole | None = None


# --- Bugs ---


class BugCreate(CamelModel):
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)
    steps_to_reproduce: str = Field(min_length=1)
    priority: Priority = Priority.NORMAL


class BugUpdate(CamelModel):
    title: str | None = Field(default=None, min_length=1)
    description: str | None = Field(default=None, min_length=1)
    steps_to_reproduce: str | None = Field(default=None, min_length=1)
    priority: Priority | None = None
    hours_worked: float | None = Field(default=None, ge=0)
    status_label: StatusLabel | None = None


class BugClassify(CamelModel):
    classification: Classification

    @field_validator("classification")
    @classmethod
    def reject_unset(cls, value: Classification) -> Classification:
        if value == Classification.UNSET:
            raise ValueError("classification must be one of approved, unapproved, duplicate")
        return value


class BugAssign(CamelModel):
    user_id: int = Field(ge=1)


class BugClose(CamelModel):
    status: bool = True


class BugRead(ReadModel):
    id: int
    title: str
    description: str
    steps_to_reproduce: str
    author_id: int
    author_name: str
    assigned_user_id: int | None = None
    assigned_user_name: str | None = None
    status_label: StatusLabel
    classification: Classification
    priority: Priority
    hours_worked: float
    created_at: datetime
    last_updated: datetime
    closed_date: datetime | None = None


class BugList(BaseModel):
    bugs: list[BugRead]


class UserList(BaseModel):
    users: list[UserRead]


# --- Comments & test cases ---


class CommentCreate(CamelModel):
    text: str = Field(min_length=1)


class CommentRead(ReadModel):
    id: int
    bug_id: int
    author_id: int
    author_name: str
    text: str
    created_at: datetime


class TestCaseCreate(CamelModel):
    __test__ = False

    title: str = Field(min_length=1)
    description: str = Field(min_length=3, max_length=100)
    status: TestCaseStatus = TestCaseStatus.PENDING


class TestCaseUpdate(CamelModel):
    __test__ = False

    title: str | None = Field(default=None, min_length=1)
    description: str | None = Field(default=None, min_length=3, max_length=100)
    status: TestCaseStatus | None = None


class TestCaseRead(ReadModel):
    __test__ = False

    id: int
    bug_id: int
    title: str
    description: str
    status: TestCaseStatus
    author_id: int
    author_name: str
    created_at: datetime
    updated_at: datetime


class MessageResponse(BaseModel):
    message: str
