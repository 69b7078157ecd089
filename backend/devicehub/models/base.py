from __future__ import annotations


from datetime import datetime

from sqlalchemy import DateTime, func
from sqlmodel import Field, SQLModel

from devicehub.core.timeutil import utcnow


class TimestampMixin(SQLModel):
    """Reusable created/updated timestamp columns for SQLModel tables.

    ``updated_at`` doubles as the coarse permission-version clock of a user.
    Both columns are written in UTC by the application, never by the database
    clock.
    """

    created_at: datetime = Field(
        default=None,
        sa_type=DateTime(),
        sa_column_kwargs={
            "nullable": False,
            "default": utcnow,
            "server_default": func.now(),
        },
    )
    updated_at: datetime = Field(
        default=None,
        sa_type=DateTime(),
        sa_column_kwargs={
            "nullable": False,
            "default": utcnow,
            "server_default": func.now(),
            "onupdate": utcnow,
        },
    )
