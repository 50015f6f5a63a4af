"""
SiteSurvey Backend — Survey SQLAlchemy Model
==============================================

What:  ORM model representing the `surveys` table.

Lifecycle:
    1. Inserted from a form submission (response_data without photos)
    2. Flushed to obtain the integer id, which scopes the photo folder
    3. Photos uploaded; their URLs merged into response_data[question]
    4. Committed once at the end of the request

response_data is a free-form JSON object: scalar answers keyed by question,
plus lists of public URLs for photo questions.
"""

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional

from sqlalchemy import JSON, Index, Integer, String, text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base

if TYPE_CHECKING:
    from app.models.dealer import Dealer


class Survey(Base):
    """A single site survey submitted by a dealer representative."""

    __tablename__ = "surveys"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Logically references dealers.dealer_id (the business key)
    dealer_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    rep_name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_address: Mapped[str] = mapped_column(String(1024), nullable=False)

    response_data: Mapped[Dict[str, Any]] = mapped_column(
        JSONB().with_variant(JSON(), "sqlite"),
        nullable=False,
        default=dict,
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    dealer: Mapped[Optional["Dealer"]] = relationship(
        "Dealer",
        primaryjoin="foreign(Survey.dealer_id) == Dealer.dealer_id",
        viewonly=True,
        lazy="raise",
    )

    __table_args__ = (
        Index("idx_surveys_created_at", created_at.desc()),
    )

    def __repr__(self) -> str:
        return (
            f"<Survey(id={self.id}, dealer_id='{self.dealer_id}', "
            f"customer_name='{self.customer_name}')>"
        )
