"""
Data models for ESI API responses.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Optional


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _parse_int_header(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class EsiResponse:
    """
    A successful ESI response.

    Attributes:
        body: Decoded JSON body
        status_code: HTTP status
        pages: Total page count from X-Pages (1 when absent)
        error_limit_remain: Remaining error budget from X-ESI-Error-Limit-Remain
        error_limit_reset: Seconds until the error window resets
        expires: Raw Expires header
    """

    body: Any
    status_code: int = 200
    pages: int = 1
    error_limit_remain: Optional[int] = None
    error_limit_reset: Optional[int] = None
    expires: Optional[str] = None

    @classmethod
    def from_headers(cls, body: Any, status_code: int, headers: Any) -> "EsiResponse":
        pages = _parse_int_header(headers.get("X-Pages")) or 1
        return cls(
            body=body,
            status_code=status_code,
            pages=max(pages, 1),
            error_limit_remain=_parse_int_header(headers.get("X-ESI-Error-Limit-Remain")),
            error_limit_reset=_parse_int_header(headers.get("X-ESI-Error-Limit-Reset")),
            expires=headers.get("Expires"),
        )


@dataclass(frozen=True)
class MarketHistoryEntry:
    """One traded day of market history for a type in a region."""

    date: date
    average: float
    highest: float
    lowest: float
    order_count: int
    volume: int

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MarketHistoryEntry":
        raw_date = data["date"]
        parsed = raw_date if isinstance(raw_date, date) else date.fromisoformat(str(raw_date))
        return cls(
            date=parsed,
            average=float(data.get("average", 0.0)),
            highest=float(data.get("highest", 0.0)),
            lowest=float(data.get("lowest", 0.0)),
            order_count=int(data.get("order_count", 0)),
            volume=int(data.get("volume", 0)),
        )


@dataclass(frozen=True)
class CorporationMedalEntry:
    """A medal as listed by /corporations/{corporation_id}/medals/."""

    medal_id: int
    title: str
    description: str
    creator_id: int
    created_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CorporationMedalEntry":
        return cls(
            medal_id=int(data["medal_id"]),
            title=data.get("title", ""),
            description=data.get("description", ""),
            creator_id=int(data.get("creator_id", 0)),
            created_at=_parse_datetime(data.get("created_at")),
        )
