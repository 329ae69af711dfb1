"""
Corporation medal definitions.

Keyed by (corporation_id, medal_id); populated by the paginated
corporation medals sweep.
"""

from sqlalchemy import BigInteger, Column, DateTime, Integer, String, Text

from esisync.db_base import Base
from esisync.models.base import TimestampMixin


class CorporationMedal(Base, TimestampMixin):
    """A medal created by a corporation."""

    __tablename__ = "corporation_medals"

    corporation_id = Column(BigInteger, primary_key=True, autoincrement=False)
    medal_id = Column(Integer, primary_key=True, autoincrement=False)

    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    creator_id = Column(BigInteger, nullable=False)
    medal_created_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the medal was created in game"
    )

    def __repr__(self) -> str:
        return (
            f"<CorporationMedal(corporation_id={self.corporation_id}, "
            f"medal_id={self.medal_id}, title={self.title!r})>"
        )
