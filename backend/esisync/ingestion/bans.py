"""
Temporary bans for resource identifiers the upstream reports as missing.

A banned identifier is skipped without a request until its ban expires.
There is no unban: entries simply age out of the TTL store.
"""

import logging
from typing import Any, Optional

from esisync.ingestion.shared_store import TtlKeyStore

logger = logging.getLogger(__name__)

MARKET_HISTORY_BAN_PREFIX = "market_history_type_id_ban"


class BanRegistry:
    """Ban lookups and inserts for one identifier namespace."""

    def __init__(self, store: TtlKeyStore, prefix: str = MARKET_HISTORY_BAN_PREFIX):
        self.store = store
        self.prefix = prefix

    def key_for(self, resource_id: Any) -> str:
        return f"{self.prefix}.{resource_id}"

    def is_banned(self, resource_id: Any) -> bool:
        return self.store.get(self.key_for(resource_id)) is not None

    def reason_for(self, resource_id: Any) -> Optional[str]:
        """Return the stored ban reason, or None when not banned."""
        return self.store.get(self.key_for(resource_id))

    def ban(self, resource_id: Any, duration_seconds: float, reason: str) -> None:
        """
        Ban resource_id for duration_seconds.

        Re-banning an already banned id restarts its expiry.
        """
        if duration_seconds <= 0:
            raise ValueError(f"duration_seconds must be positive, got {duration_seconds}")

        self.store.set_with_ttl(self.key_for(resource_id), reason, duration_seconds)
        logger.info(
            "Resource banned",
            extra={
                "ban_key": self.key_for(resource_id),
                "reason": reason,
                "duration_seconds": duration_seconds,
            },
        )
