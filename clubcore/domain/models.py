from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Integer,
    String,
    func,
    Index,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


IDEMPOTENCY_STATUS_PENDING = "pending"
IDEMPOTENCY_STATUS_COMPLETED = "completed"

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
_JsonColumn = JSON().with_variant(JSONB(), "postgresql")


class IdempotencyKey(Base):
    __tablename__ = "idempotency_keys"
    __table_args__ = (
        UniqueConstraint(
            "idem_key",
            "owner_id",
            "endpoint",
            name="uq_idempotency_keys_scope",
        ),
        Index("ix_idempotency_keys_expires_at", "expires_at"),
    )

    # The unique scope doubles as the claim: the first insert wins and executes the operation.
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    idem_key: Mapped[str] = mapped_column(String(255))
    owner_id: Mapped[str] = mapped_column(String, index=True)
    endpoint: Mapped[str] = mapped_column(String(500))
    status: Mapped[str] = mapped_column(String(16), default=IDEMPOTENCY_STATUS_PENDING)
    claim_token: Mapped[str] = mapped_column(String(64))
    request_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    succeeded: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    response_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonColumn, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
