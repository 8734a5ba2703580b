from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from common.config import yaml_config
from common.errors import SourceNotFoundError
from common.logger import get_logger
from ingestion.hash_utils import sha256_text
from ingestion.loaders import fetch_url_async
from ingestion.parser_registry import ParserRegistry, default_registry
from lifecycle.source_models import (
    KnowledgeSource,
    SourceQuery,
    SourceStatus,
    SourceType,
    utcnow,
)
from lifecycle.source_repository import SourceRepository

log = get_logger(__name__)

DAY_SECONDS = 24 * 60 * 60


class FreshnessState(str, Enum):
    FRESH = "fresh"
    STALE = "stale"
    EXPIRED = "expired"
    NEEDS_CHECK = "needs_check"


@dataclass(frozen=True)
class FreshnessReport:
    source_id: str
    title: str
    status: FreshnessState
    last_checked: Optional[datetime] = None
    last_modified: Optional[datetime] = None
    days_until_expiry: Optional[int] = None
    days_until_check: Optional[int] = None


@dataclass(frozen=True)
class FreshnessCheckResult:
    source_id: str
    has_changed: bool
    content_hash: Optional[str] = None


@dataclass(frozen=True)
class ScheduledCheckSummary:
    checked: int
    changed: int
    errors: int


@dataclass(frozen=True)
class ExpiringSource:
    id: str
    title: str
    expires_at: datetime
    days_until_expiry: int


def whole_days(delta: timedelta) -> int:
    return math.floor(delta.total_seconds() / DAY_SECONDS)


def needs_freshness_check(
    last_checked_at: Optional[datetime], frequency_days: int, now: datetime
) -> bool:
    if last_checked_at is None:
        return True
    return whole_days(now - last_checked_at) >= frequency_days


def days_until_check(
    last_checked_at: Optional[datetime], frequency_days: int, now: datetime
) -> Optional[int]:
    if last_checked_at is None:
        return None
    return frequency_days - whole_days(now - last_checked_at)


def calculate_content_hash(content: str) -> str:
    return sha256_text(content)


def freshness_status(
    source: KnowledgeSource, now: datetime, stale_window_days: int = 30
) -> FreshnessReport:
    """
    expired  - expires_at has passed
    stale    - expires within the stale window
    needs_check - a verification is due; takes precedence over the expiry states
    fresh    - otherwise
    """
    frequency = source.check_frequency_days or yaml_config.lifecycle.check_frequency_days
    status = FreshnessState.FRESH
    until_expiry = None
    if source.expires_at is not None:
        until_expiry = whole_days(source.expires_at - now)
        if until_expiry < 0:
            status = FreshnessState.EXPIRED
        elif until_expiry < stale_window_days:
            status = FreshnessState.STALE

    until_check = None
    if needs_freshness_check(source.last_checked_at, frequency, now):
        status = FreshnessState.NEEDS_CHECK
    else:
        until_check = days_until_check(source.last_checked_at, frequency, now)

    return FreshnessReport(
        source_id=source.id,
        title=source.title,
        status=status,
        last_checked=source.last_checked_at,
        last_modified=source.last_modified_at,
        days_until_expiry=until_expiry,
        days_until_check=until_check,
    )


async def fetch_page_text(url: str, registry: Optional[ParserRegistry] = None) -> str:
    registry = registry or default_registry()
    fetched = await fetch_url_async(url)
    return registry.parse(fetched.data, fetched.mime_type).content


class FreshnessMonitor:
    def __init__(
        self,
        repository: SourceRepository,
        *,
        fetcher: Optional[Callable[[str], Awaitable[str]]] = None,
        on_change: Optional[Callable[[KnowledgeSource, str], Awaitable[None]]] = None,
        clock: Callable[[], datetime] = utcnow,
        stale_window_days: Optional[int] = None,
    ):
        self.repository = repository
        self.fetcher = fetcher or fetch_page_text
        self.on_change = on_change
        self.clock = clock
        self.stale_window_days = stale_window_days or yaml_config.lifecycle.stale_window_days

    async def check_source_freshness(self, district_id: str, source_id: str) -> FreshnessCheckResult:
        """Re-fetch a web page source and compare its content hash with the stored one."""
        source = await self.repository.get(district_id, source_id)
        if source is None:
            raise SourceNotFoundError(source_id, district_id)
        if source.source_type != SourceType.WEB_PAGE or not source.url:
            return FreshnessCheckResult(source_id=source_id, has_changed=False)

        content = await self.fetcher(source.url)
        new_hash = calculate_content_hash(content)
        changed = source.content_hash is not None and source.content_hash != new_hash

        now = self.clock()
        source.last_checked_at = now
        source.content_hash = new_hash
        if changed:
            source.last_modified_at = now
        await self.repository.save(source)

        if changed:
            log.info("Content changed for source %s (%s)", source_id, source.url)
            if self.on_change is not None:
                await self.on_change(source, content)
        return FreshnessCheckResult(source_id=source_id, has_changed=changed, content_hash=new_hash)

    async def run_scheduled_checks(self, district_id: str) -> ScheduledCheckSummary:
        now = self.clock()
        sources = await self.repository.find(
            district_id,
            SourceQuery(statuses={SourceStatus.PUBLISHED}, source_types={SourceType.WEB_PAGE}),
        )
        checked = changed = errors = 0
        for s in sources:
            if not s.url or not needs_freshness_check(
                s.last_checked_at, s.check_frequency_days, now
            ):
                continue
            try:
                result = await self.check_source_freshness(district_id, s.id)
            except Exception as e:
                log.error("Freshness check failed for source %s: %s", s.id, e)
                errors += 1
                continue
            checked += 1
            if result.has_changed:
                changed += 1

        log.info(
            "Scheduled freshness checks for %s: checked=%d changed=%d errors=%d",
            district_id,
            checked,
            changed,
            errors,
        )
        return ScheduledCheckSummary(checked=checked, changed=changed, errors=errors)

    async def get_district_freshness_status(self, district_id: str) -> List[FreshnessReport]:
        now = self.clock()
        sources = await self.repository.find(
            district_id, SourceQuery(statuses={SourceStatus.PUBLISHED})
        )
        return [freshness_status(s, now, self.stale_window_days) for s in sources]

    async def get_expiring_sources(
        self, district_id: str, days_threshold: int = 30
    ) -> List[ExpiringSource]:
        now = self.clock()
        horizon = now + timedelta(days=days_threshold)
        sources = await self.repository.find(
            district_id, SourceQuery(statuses={SourceStatus.PUBLISHED})
        )
        expiring = [
            ExpiringSource(
                id=s.id,
                title=s.title,
                expires_at=s.expires_at,
                days_until_expiry=whole_days(s.expires_at - now),
            )
            for s in sources
            if s.expires_at is not None and now <= s.expires_at <= horizon
        ]
        return sorted(expiring, key=lambda e: e.expires_at)
