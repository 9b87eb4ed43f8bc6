from datetime import datetime
from enum import StrEnum
from typing import Any, ClassVar

from loguru import logger
from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from src.core.database import UTCDateTime
from src.core.utils import utcnow


class EditOperation(StrEnum):
    """Categorizes the mutation recorded in the edit log."""

    CREATE = "create"
    UPDATE = "update"
    CLASSIFY = "classify"
    ASSIGN = "assign"
    CLOSE = "close"
    DELETE = "delete"


class EditLog(SQLModel, table=True):
    """Immutable append-only ledger of every bug and user mutation."""

    __table_args__: ClassVar[dict[str, bool]] = {"extend_existing": True}

    id: int | None = Field(default=None, primary_key=True)
    timestamp: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, index=True)
    collection: str = Field(index=True, description="Mutated entity type, e.g. 'bug' or 'user'")
    operation: EditOperation = Field(index=True)
    target: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False, default=dict))
    changes: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False, default=dict))
    actor: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False, default=dict))


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, list | tuple | set):
        return [_jsonable(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, StrEnum):
        return value.value
    return value


async def record_edit(
    session: AsyncSession,
    *,
    collection: str,
    operation: EditOperation,
    target: dict[str, Any],
    changes: dict[str, Any],
    actor: dict[str, Any],
) -> bool:
    """Appends an edit log entry.

    Best-effort: a failure is logged, the session is rolled back and False is returned
    so the caller can reload any instance it still needs.
    """
    try:
        session.add(
            EditLog(
                collection=collection,
                operation=operation,
                target=_jsonable(target),
                changes=_jsonable(changes),
                actor=_jsonable(actor),
            )
        )
        await session.commit()
    except Exception as e:
        await session.rollback()
        logger.error(f"Failed to log {operation.value} on {collection} {target}: {e}")
        return False
    return True
