"""Recording model - audio clip metadata (actual bytes live in object storage)."""
import uuid
from sqlalchemy import String, Text, Boolean, Float, Uuid, Index
from sqlalchemy.orm import Mapped, mapped_column
from voicerelay.models.base import Base, TimestampMixin, UserMixin


class Recording(Base, TimestampMixin, UserMixin):
    __tablename__ = "recordings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    file_path: Mapped[str] = mapped_column(String(1000), nullable=False, unique=True)
    sender: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending")
    transcript: Mapped[str | None] = mapped_column(Text, nullable=True)
    played: Mapped[bool] = mapped_column(Boolean, default=False)
    duration: Mapped[float | None] = mapped_column(Float, nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String(100), nullable=True)

    __table_args__ = (
        Index("idx_recordings_user_created", "user_id", "created_at"),
    )
