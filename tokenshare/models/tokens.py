"""Token models: Holding (a purchase lot) and the purchase transaction log."""

import uuid
from decimal import Decimal

from sqlalchemy import CheckConstraint, ForeignKey, Index, Integer, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tokenshare.models.base import BaseModel, TimestampedModel, enum_column
from tokenshare.models.enums import (
    HoldingStatus,
    LedgerSyncStatus,
    TransactionStatus,
    TransactionType,
)


class Holding(BaseModel):
    """Tokens owned by one user in one project, created by a single purchase."""

    __tablename__ = "token_holdings"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_token_holdings_amount_positive"),
        Index("ix_token_holdings_project_id_status", "project_id", "status"),
        Index("ix_token_holdings_user_id", "user_id"),
        Index("ix_token_holdings_ledger_status", "ledger_status"),
    )

    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("projects.id", ondelete="RESTRICT"),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    price_per_token: Mapped[Decimal] = mapped_column(Numeric(19, 4), nullable=False)
    total_value: Mapped[Decimal] = mapped_column(Numeric(19, 4), nullable=False)
    status: Mapped[HoldingStatus] = mapped_column(
        enum_column(HoldingStatus), nullable=False, default=HoldingStatus.ACTIVE
    )

    # External ledger confirmation of the token creation; the sale stands either way
    ledger_status: Mapped[LedgerSyncStatus] = mapped_column(
        enum_column(LedgerSyncStatus), nullable=False, default=LedgerSyncStatus.PENDING
    )
    ledger_tx_hash: Mapped[str | None] = mapped_column(String(66))
    ledger_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ledger_last_error: Mapped[str | None] = mapped_column(String(1000))

    # Relationships
    project: Mapped["Project"] = relationship(back_populates="holdings")  # type: ignore[name-defined]  # noqa: F821

    def __repr__(self) -> str:
        return f"<Holding(id={self.id}, amount={self.amount}, status={self.status.value})>"


class TokenTransaction(TimestampedModel):
    """Append-only record of a completed token movement."""

    __tablename__ = "token_transactions"
    __table_args__ = (
        Index("ix_token_transactions_project_id", "project_id"),
        Index("ix_token_transactions_to_user_id", "to_user_id"),
    )

    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("projects.id", ondelete="RESTRICT"),
        nullable=False,
    )
    holding_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("token_holdings.id", ondelete="RESTRICT"),
        nullable=False,
    )
    from_user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    to_user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    token_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    total_value: Mapped[Decimal] = mapped_column(Numeric(19, 4), nullable=False)
    transaction_type: Mapped[TransactionType] = mapped_column(
        enum_column(TransactionType), nullable=False
    )
    status: Mapped[TransactionStatus] = mapped_column(
        enum_column(TransactionStatus), nullable=False, default=TransactionStatus.COMPLETED
    )
