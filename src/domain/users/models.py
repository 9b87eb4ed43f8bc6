from datetime import datetime
from enum import StrEnum

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from src.core.database import UTCDateTime
from src.core.utils import utcnow


class UserRole(StrEnum):
    """The single job-function label carried by every user."""

    DEVELOPER = "developer"
    BUSINESS_ANALYST = "business analyst"
    QUALITY_ANALYST = "quality analyst"
    PRODUCT_MANAGER = "product manager"
    TECHNICAL_MANAGER = "technical manager"
    USER = "user"


class User(SQLModel, table=True):
    """A registered identity. The role is always exactly one UserRole value."""

    __table_args__ = {"extend_existing": True}

    id: int | None = Field(default=None, primary_key=True)
    external_id: str | None = Field(default=None, unique=True, index=True)
    email: str = Field(unique=True, index=True)
    name: str
    given_name: str | None = None
    family_name: str | None = None
    password_hash: str | None = None
    role: UserRole = Field(default=UserRole.DEVELOPER, index=True)

    assigned_bugs: list[int] = Field(default_factory=list, sa_column=Column(JSON, nullable=False, default=list))
    created_bugs: list[int] = Field(default_factory=list, sa_column=Column(JSON, nullable=False, default=list))

    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)

    @property
    def display_name(self) -> str:
        if self.given_name and self.family_name:
            return f"{self.given_name} {self.family_name}".strip()
        return self.name or "Unknown"


class UserSession(SQLModel, table=True):
    """Server-side record behind an opaque session cookie."""

    token: str = Field(primary_key=True)
    # Stored as text so provider ids and emails can be resolved as well as numeric ids
    user_id: str = Field(index=True)
    user_email: str | None = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    expires_at: datetime = Field(index=True, sa_type=UTCDateTime)


class RolePermission(SQLModel, table=True):
    """Table-driven capability flags per role."""

    id: int | None = Field(default=None, primary_key=True)
    role: UserRole = Field(unique=True, index=True)
    permissions: dict[str, bool] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False, default=dict))
