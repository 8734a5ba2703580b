from __future__ import annotations

import copy
from typing import Dict, List, Optional, Protocol

from common.errors import ValidationError, require_district
from lifecycle.source_models import KnowledgeSource, Page, SourceQuery

MAX_PAGE_SIZE = 100


class SourceRepository(Protocol):
    """District-scoped persistence for knowledge source records."""

    async def get(self, district_id: str, source_id: str) -> Optional[KnowledgeSource]: ...

    async def save(self, source: KnowledgeSource) -> KnowledgeSource: ...

    async def find_by_hash(self, district_id: str, file_hash: str) -> Optional[KnowledgeSource]: ...

    async def find(self, district_id: str, query: SourceQuery) -> List[KnowledgeSource]: ...

    async def list(
        self, district_id: str, query: SourceQuery, page: int = 1, page_size: int = 20
    ) -> Page[KnowledgeSource]: ...


class InMemorySourceRepository:
    """Reference repository. Records are copied in and out so callers never share state."""

    def __init__(self):
        self._rows: Dict[str, KnowledgeSource] = {}

    async def get(self, district_id: str, source_id: str) -> Optional[KnowledgeSource]:
        require_district(district_id)
        row = self._rows.get(source_id)
        if row is None or row.district_id != district_id or row.deleted_at is not None:
            return None
        return copy.deepcopy(row)

    async def save(self, source: KnowledgeSource) -> KnowledgeSource:
        require_district(source.district_id)
        existing = self._rows.get(source.id)
        if existing is not None and existing.district_id != source.district_id:
            raise ValidationError("A source cannot move between districts", {"source_id": source.id})
        self._rows[source.id] = copy.deepcopy(source)
        return source

    async def find_by_hash(self, district_id: str, file_hash: str) -> Optional[KnowledgeSource]:
        require_district(district_id)
        for row in self._rows.values():
            if row.district_id == district_id and row.file_hash == file_hash and row.deleted_at is None:
                return copy.deepcopy(row)
        return None

    async def find(self, district_id: str, query: SourceQuery) -> List[KnowledgeSource]:
        require_district(district_id)
        rows = [r for r in self._rows.values() if r.district_id == district_id and query.matches(r)]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return [copy.deepcopy(r) for r in rows]

    async def list(
        self, district_id: str, query: SourceQuery, page: int = 1, page_size: int = 20
    ) -> Page[KnowledgeSource]:
        page = max(1, page)
        page_size = max(1, min(page_size, MAX_PAGE_SIZE))
        rows = await self.find(district_id, query)
        start = (page - 1) * page_size
        return Page(items=rows[start : start + page_size], total=len(rows), page=page, page_size=page_size)
