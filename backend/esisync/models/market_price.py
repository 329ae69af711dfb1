"""
Market price snapshot per type and region.

One row per (type_id, region_id). Rows are written by the market history
sync and always overwritten with the latest observation. A type with no
traded day in the returned history is stored with zeroed fields so that
"confirmed empty" is distinguishable from "never synced".
"""

from sqlalchemy import BigInteger, Column, Float, Integer

from esisync.db_base import Base
from esisync.models.base import TimestampMixin


class MarketPrice(Base, TimestampMixin):
    """Most recent traded-day statistics for a market type in a region."""

    __tablename__ = "market_prices"

    type_id = Column(
        Integer,
        primary_key=True,
        autoincrement=False,
        comment="Market type identifier"
    )
    region_id = Column(
        Integer,
        primary_key=True,
        autoincrement=False,
        comment="Region the history was pulled from"
    )

    average = Column(Float, nullable=False, default=0.0)
    highest = Column(Float, nullable=False, default=0.0)
    lowest = Column(Float, nullable=False, default=0.0)
    order_count = Column(BigInteger, nullable=False, default=0)
    volume = Column(BigInteger, nullable=False, default=0)

    def __repr__(self) -> str:
        return (
            f"<MarketPrice(type_id={self.type_id}, region_id={self.region_id}, "
            f"average={self.average}, order_count={self.order_count})>"
        )

    @property
    def has_observation(self) -> bool:
        """False for the neutral record written when nothing traded."""
        return bool(self.order_count)
