"""ProjectRecord model — vendor projects persisted by the sync jobs."""

from datetime import datetime, timezone

from sqlalchemy import DateTime, Float, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from carbon_marketplace.models.base import Base, JSONType


class ProjectRecord(Base):
    """One row per (vendor, vendor-local id)."""

    __tablename__ = "carbon_projects"
    __table_args__ = (UniqueConstraint("vendor", "vendor_id", name="uq_project_vendor_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vendor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    vendor: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    location: Mapped[str] = mapped_column(String(255), nullable=False, default="", index=True)
    project_type: Mapped[str] = mapped_column(String(100), nullable=False, default="", index=True)
    methodology: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    price_per_kg: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, index=True)
    available_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    images: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    sdgs: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    registry_url: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    data: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        index=True,
    )
