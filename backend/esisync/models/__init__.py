"""
Persisted record models written by the sync jobs.

Job and batch bookkeeping tables live with the ingestion engine
(esisync.ingestion.jobs.models, esisync.ingestion.batch).
"""

from esisync.models.base import TimestampMixin, JSONType
from esisync.models.market_price import MarketPrice
from esisync.models.corporation_medal import CorporationMedal

__all__ = [
    "TimestampMixin",
    "JSONType",
    "MarketPrice",
    "CorporationMedal",
]
