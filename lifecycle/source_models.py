from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Generic, List, Optional, Set, TypeVar

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SourceStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING_REVIEW = "PENDING_REVIEW"
    PUBLISHED = "PUBLISHED"
    REJECTED = "REJECTED"
    ARCHIVED = "ARCHIVED"


class SourceType(str, Enum):
    POLICY_DOCUMENT = "POLICY_DOCUMENT"
    HANDBOOK = "HANDBOOK"
    ANNOUNCEMENT = "ANNOUNCEMENT"
    WEB_PAGE = "WEB_PAGE"
    CALENDAR = "CALENDAR"
    FAQ = "FAQ"
    OTHER = "OTHER"


@dataclass
class KnowledgeSource:
    district_id: str
    title: str
    source_type: SourceType = SourceType.OTHER
    status: SourceStatus = SourceStatus.DRAFT
    category: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    file_size: int = 0
    file_hash: Optional[str] = None
    mime_type: Optional[str] = None
    url: Optional[str] = None
    created_by: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    published_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    last_checked_at: Optional[datetime] = None
    last_modified_at: Optional[datetime] = None
    check_frequency_days: int = 30
    content_hash: Optional[str] = None
    deleted_at: Optional[datetime] = None
    chunk_count: int = 0

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now

    def is_searchable(self, now: datetime) -> bool:
        """Only published, live, unexpired sources contribute chunks to search."""
        return (
            self.status == SourceStatus.PUBLISHED
            and self.deleted_at is None
            and not self.is_expired(now)
        )


@dataclass
class SourceQuery:
    statuses: Optional[Set[SourceStatus]] = None
    source_types: Optional[Set[SourceType]] = None
    categories: Optional[Set[str]] = None
    tags: Optional[Set[str]] = None  # any-of
    source_ids: Optional[Set[str]] = None
    published_from: Optional[datetime] = None
    published_to: Optional[datetime] = None
    exclude_expired_at: Optional[datetime] = None
    title_contains: Optional[str] = None

    def matches(self, s: KnowledgeSource) -> bool:
        if s.deleted_at is not None:
            return False
        if self.statuses is not None and s.status not in self.statuses:
            return False
        if self.source_types is not None and s.source_type not in self.source_types:
            return False
        if self.categories is not None and s.category not in self.categories:
            return False
        if self.tags is not None and not self.tags.intersection(s.tags):
            return False
        if self.source_ids is not None and s.id not in self.source_ids:
            return False
        if self.published_from or self.published_to:
            if s.published_at is None:
                return False
            if self.published_from and s.published_at < self.published_from:
                return False
            if self.published_to and s.published_at > self.published_to:
                return False
        if self.exclude_expired_at is not None and s.is_expired(self.exclude_expired_at):
            return False
        if self.title_contains and self.title_contains.lower() not in s.title.lower():
            return False
        return True


@dataclass(frozen=True)
class Page(Generic[T]):
    items: List[T]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size else 0
