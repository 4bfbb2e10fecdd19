"""Order document persistence model.

Each row is one order document: a few indexed columns plus the JSON body the
ordering app writes, and the `notifications` map owned by this service.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from orderbell.common.db import Base


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JsonDocument = JSON().with_variant(JSONB(), "postgresql")


class OrderDocument(Base):
    """One order document as written by the ordering app."""

    __tablename__ = "orders"

    order_id: Mapped[str] = mapped_column(String, primary_key=True)
    merchant_id: Mapped[str] = mapped_column(String, index=True)
    branch_id: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[str] = mapped_column(String, index=True)
    body: Mapped[dict[str, Any]] = mapped_column(JsonDocument, default=dict)
    notifications: Mapped[dict[str, Any]] = mapped_column(JsonDocument, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def snapshot(self) -> dict[str, Any]:
        """Return the document as the change feed would deliver it."""

        data = dict(self.body or {})
        data["id"] = self.order_id
        data["status"] = self.status
        data["notifications"] = dict(self.notifications or {})
        return data
