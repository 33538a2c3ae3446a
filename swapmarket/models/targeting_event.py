from datetime import datetime

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from swapmarket.core.clock import utcnow
from swapmarket.core.ids import gen_id

from swapmarket.models.base import Base, JsonType


SEVERITIES = ("info", "warning", "error", "critical")


class TargetingEvent(Base):
    __tablename__ = "targeting_events"
    __table_args__ = (
        Index("ix_targeting_events_source", "source_listing_id"),
        Index("ix_targeting_events_target", "target_listing_id"),
        Index("ix_targeting_events_actor", "actor_id"),
        Index("ix_targeting_events_counterparty", "counterparty_id"),
        Index("ix_targeting_events_created", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("tev"))

    # e.g. "targeted", "retargeted", "accepted", "settlement_failed"
    event_type: Mapped[str] = mapped_column(String(80), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, default="info")

    source_listing_id: Mapped[str | None] = mapped_column(String, nullable=True)
    target_listing_id: Mapped[str | None] = mapped_column(String, nullable=True)
    target_id: Mapped[str | None] = mapped_column(String, nullable=True)
    auction_id: Mapped[str | None] = mapped_column(String, nullable=True)

    actor_id: Mapped[str | None] = mapped_column(String(120), nullable=True)
    counterparty_id: Mapped[str | None] = mapped_column(String(120), nullable=True)

    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    detail: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
