"""Base model and mixins for SQLAlchemy models."""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import String


def generate_row_id() -> str:
    """Generate a 32-character hex primary key."""
    return uuid.uuid4().hex


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class IdMixin:
    """Mixin that adds a string primary key."""

    id: Mapped[str] = mapped_column(
        String(32),
        primary_key=True,
        default=generate_row_id,
    )


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
