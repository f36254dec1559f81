"""
Declarative base, shared mixins and column types for all models.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class BaseModel(DeclarativeBase):
    """Base class for all database models."""

    def to_dict(self) -> Dict[str, Any]:
        """Column values keyed by attribute name."""
        return {
            column.key: getattr(self, column.key)
            for column in self.__mapper__.column_attrs
        }

    def __repr__(self) -> str:
        pk = ", ".join(
            f"{col.key}={getattr(self, col.key)!r}"
            for col in self.__mapper__.primary_key
        )
        return f"<{self.__class__.__name__}({pk})>"


class TimestampMixin:
    """Adds created_at / updated_at columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        server_default=func.now(),
        comment="Row creation time (UTC)"
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        server_default=func.now(),
        comment="Last modification time (UTC)"
    )


class TokenAmount(TypeDecorator):
    """
    Integer token amount in minor units.

    Stored as a decimal string so uint256 values survive every backend
    without floating point or overflow.
    """

    impl = String(78)
    cache_ok = True

    def process_bind_param(self, value: Optional[Any], dialect) -> Optional[str]:
        if value is None:
            return None
        if isinstance(value, float):
            raise TypeError("Token amounts must be integers, not floats")
        amount = int(value)
        if amount < 0:
            raise ValueError("Token amounts cannot be negative")
        return str(amount)

    def process_result_value(self, value: Optional[str], dialect) -> Optional[int]:
        if value is None:
            return None
        return int(value)
