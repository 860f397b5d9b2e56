"""Project model: the fixed token supply a sale and a distribution operate on."""

import uuid
from decimal import Decimal

from sqlalchemy import CheckConstraint, Index, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tokenshare.models.base import BaseModel, enum_column
from tokenshare.models.enums import ProjectStatus


class Project(BaseModel):
    __tablename__ = "projects"
    __table_args__ = (
        CheckConstraint("total_tokens > 0", name="ck_projects_total_tokens_positive"),
        CheckConstraint(
            "available_tokens >= 0 AND available_tokens <= total_tokens",
            name="ck_projects_available_tokens_range",
        ),
        Index("ix_projects_admin_id", "admin_id"),
        Index("ix_projects_status", "status"),
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    total_tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    available_tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    token_price: Mapped[Decimal] = mapped_column(Numeric(19, 4), nullable=False)
    initial_capital: Mapped[Decimal] = mapped_column(Numeric(19, 4), nullable=False)
    status: Mapped[ProjectStatus] = mapped_column(
        enum_column(ProjectStatus), nullable=False, default=ProjectStatus.ACTIVE
    )
    # Identity lives in the auth provider; no FK
    admin_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    # Relationships
    holdings: Mapped[list["Holding"]] = relationship(  # type: ignore[name-defined]  # noqa: F821
        back_populates="project"
    )

    @property
    def tokens_sold(self) -> int:
        return self.total_tokens - self.available_tokens

    def __repr__(self) -> str:
        return f"<Project(id={self.id}, name={self.name!r}, status={self.status.value})>"
