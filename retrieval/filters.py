from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from lifecycle.source_models import SourceQuery, SourceStatus, SourceType


@dataclass(frozen=True)
class DateRange:
    start: Optional[datetime] = None
    end: Optional[datetime] = None


@dataclass(frozen=True)
class SearchFilters:
    source_types: Optional[Sequence[SourceType]] = None
    categories: Optional[Sequence[str]] = None
    tags: Optional[Sequence[str]] = None
    source_ids: Optional[Sequence[str]] = None
    date_range: Optional[DateRange] = None


def build_source_query(filters: Optional[SearchFilters], now: datetime) -> SourceQuery:
    """
    Translate search filters into the source-level scope of a query:
      - status PUBLISHED only, never deleted
      - expired sources excluded as of `now`
      - optional source type / category / tag (any-of) / id filters
      - optional published_at date range
    Empty filter lists are treated as "no filter".
    """
    filters = filters or SearchFilters()
    date_range = filters.date_range or DateRange()
    return SourceQuery(
        statuses={SourceStatus.PUBLISHED},
        source_types=set(filters.source_types) if filters.source_types else None,
        categories=set(filters.categories) if filters.categories else None,
        tags=set(filters.tags) if filters.tags else None,
        source_ids=set(filters.source_ids) if filters.source_ids else None,
        published_from=date_range.start,
        published_to=date_range.end,
        exclude_expired_at=now,
    )
