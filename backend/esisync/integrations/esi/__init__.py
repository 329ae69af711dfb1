"""
ESI integration for market and corporation data.

This module provides a client for the EVE Swagger Interface and the
exception hierarchy the sync jobs classify failures with.
"""

from esisync.integrations.esi.client import EsiClient, get_esi_client
from esisync.integrations.esi.exceptions import (
    EsiError,
    EsiAuthenticationError,
    EsiNotFoundError,
    EsiTemporaryOutageError,
    EsiErrorLimitedError,
    EsiConnectionError,
)
from esisync.integrations.esi.models import (
    EsiResponse,
    MarketHistoryEntry,
    CorporationMedalEntry,
)

__all__ = [
    # Client
    "EsiClient",
    "get_esi_client",
    # Exceptions
    "EsiError",
    "EsiAuthenticationError",
    "EsiNotFoundError",
    "EsiTemporaryOutageError",
    "EsiErrorLimitedError",
    "EsiConnectionError",
    # Models
    "EsiResponse",
    "MarketHistoryEntry",
    "CorporationMedalEntry",
]
