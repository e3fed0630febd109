"""GithubLink model - one OAuth grant and selected repository per user."""
from sqlalchemy import String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from voicerelay.models.base import Base, TimestampMixin, UserMixin


class GithubLink(Base, TimestampMixin, UserMixin):
    __tablename__ = "github_links"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    token_type: Mapped[str] = mapped_column(String(50), default="bearer")
    scope: Mapped[str | None] = mapped_column(String(500), nullable=True)
    github_repo: Mapped[str | None] = mapped_column(String(300), nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", name="uq_github_link_user"),
    )
