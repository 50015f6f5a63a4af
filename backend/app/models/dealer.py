"""
SiteSurvey Backend — Dealer SQLAlchemy Model
==============================================

What:  ORM model representing the `dealers` table.
Why:   Dealers own survey submissions and a logo stored in remote storage.

Table Design Rationale:
    - id: UUID surrogate key, used in REST paths (/dealers/{id})
    - dealer_id: Business key chosen by the operator. Unique and immutable,
      because it names the storage prefix (dealers/<dealer_id>) and is the
      join key surveys reference.
    - logo: Public URL of the current logo blob, NULL when none uploaded
    - reps: Ordered representative names (Postgres text[]); never empty,
      an empty list is stored as [""]
"""

import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import JSON, Index, String, Text, Uuid, text
from sqlalchemy.dialects.postgresql import ARRAY, TIMESTAMP
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base

if TYPE_CHECKING:
    from app.models.survey import Survey


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Dealer(Base):
    """
    A dealer whose representatives run site surveys.

    Query Patterns:
        - Lookup by business key: WHERE dealer_id = :key (unique index)
        - Search: name ILIKE, :rep = ANY(reps), ORDER BY created_at DESC
    """

    __tablename__ = "dealers"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    dealer_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        comment="Business key; also the storage prefix for this dealer's assets",
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    logo: Mapped[Optional[str]] = mapped_column(
        String(1024),
        nullable=True,
        default=None,
        comment="Public URL of the dealer logo in remote storage",
    )

    # JSON on SQLite so the test suite can run without Postgres
    reps: Mapped[List[str]] = mapped_column(
        ARRAY(Text).with_variant(JSON(), "sqlite"),
        nullable=False,
        default=lambda: [""],
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    # Joined on the business key, not the surrogate id. There is no FK
    # constraint in the schema, so the relationship is read-only.
    surveys: Mapped[List["Survey"]] = relationship(
        "Survey",
        primaryjoin="Dealer.dealer_id == foreign(Survey.dealer_id)",
        viewonly=True,
        lazy="raise",
    )

    __table_args__ = (
        Index("idx_dealers_created_at", created_at.desc()),
    )

    def __repr__(self) -> str:
        return f"<Dealer(id={self.id}, dealer_id='{self.dealer_id}', name='{self.name}')>"
