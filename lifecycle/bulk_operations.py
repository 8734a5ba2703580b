from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence

from common.config import yaml_config
from common.errors import SourceNotFoundError, ValidationError, require_district
from common.logger import get_logger
from lifecycle.source_models import KnowledgeSource, utcnow
from lifecycle.source_repository import SourceRepository
from lifecycle.workflow import SourceWorkflow
from vectorstore.chunk_index import ChunkIndex

log = get_logger(__name__)


@dataclass(frozen=True)
class BulkItemError:
    source_id: str
    error: str


@dataclass
class BulkOperationResult:
    success: bool
    processed: int
    succeeded: int
    failed: int
    errors: List[BulkItemError] = field(default_factory=list)


async def soft_delete_source(
    repository: SourceRepository,
    index: ChunkIndex,
    district_id: str,
    source_id: str,
    now: datetime,
) -> KnowledgeSource:
    """Mark a source deleted and cascade the delete to its indexed chunks."""
    source = await repository.get(district_id, source_id)
    if source is None:
        raise SourceNotFoundError(source_id, district_id)
    removed = await index.delete_by_source(district_id, source_id)
    source.deleted_at = now
    source.updated_at = now
    source.chunk_count = 0
    await repository.save(source)
    log.info("Deleted source %s and %d chunks", source_id, removed)
    return source


def _merge_tags(existing: Iterable[str], extra: Iterable[str]) -> List[str]:
    out = list(existing)
    for t in extra:
        if t not in out:
            out.append(t)
    return out


class BulkOperations:
    """
    Batch lifecycle and metadata mutations. Each item is applied on its own:
    a failure is recorded against that item and the rest of the batch proceeds.
    """

    def __init__(
        self,
        repository: SourceRepository,
        workflow: SourceWorkflow,
        index: ChunkIndex,
        *,
        concurrency: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.workflow = workflow
        self.index = index
        self.concurrency = concurrency or yaml_config.lifecycle.bulk_concurrency
        self.clock = clock

    async def _run(
        self,
        name: str,
        district_id: str,
        source_ids: Sequence[str],
        op: Callable[[str], Awaitable[object]],
    ) -> BulkOperationResult:
        require_district(district_id)
        log.info("Starting bulk %s of %d sources in %s", name, len(source_ids), district_id)
        semaphore = asyncio.Semaphore(max(1, self.concurrency))

        async def one(source_id: str) -> Optional[BulkItemError]:
            async with semaphore:
                try:
                    await op(source_id)
                    return None
                except Exception as e:
                    log.warning("Bulk %s failed for %s: %s", name, source_id, e)
                    return BulkItemError(source_id=source_id, error=getattr(e, "message", str(e)))

        outcomes = await asyncio.gather(*(one(sid) for sid in source_ids))
        errors = [e for e in outcomes if e is not None]
        result = BulkOperationResult(
            success=not errors,
            processed=len(source_ids),
            succeeded=len(source_ids) - len(errors),
            failed=len(errors),
            errors=errors,
        )
        log.info(
            "Bulk %s finished: %d succeeded, %d failed", name, result.succeeded, result.failed
        )
        return result

    async def bulk_publish(
        self, district_id: str, source_ids: Sequence[str], user_id: Optional[str] = None
    ) -> BulkOperationResult:
        return await self._run(
            "publish", district_id, source_ids,
            lambda sid: self.workflow.publish(district_id, sid, user_id),
        )

    async def bulk_unpublish(
        self, district_id: str, source_ids: Sequence[str], user_id: Optional[str] = None
    ) -> BulkOperationResult:
        return await self._run(
            "unpublish", district_id, source_ids,
            lambda sid: self.workflow.unpublish(district_id, sid, user_id),
        )

    async def bulk_archive(
        self, district_id: str, source_ids: Sequence[str], user_id: Optional[str] = None
    ) -> BulkOperationResult:
        return await self._run(
            "archive", district_id, source_ids,
            lambda sid: self.workflow.archive(district_id, sid, user_id),
        )

    async def bulk_delete(self, district_id: str, source_ids: Sequence[str]) -> BulkOperationResult:
        return await self._run(
            "delete", district_id, source_ids,
            lambda sid: soft_delete_source(
                self.repository, self.index, district_id, sid, self.clock()
            ),
        )

    async def _mutate(
        self, district_id: str, source_id: str, change: Callable[[KnowledgeSource], None]
    ) -> KnowledgeSource:
        source = await self.repository.get(district_id, source_id)
        if source is None:
            raise SourceNotFoundError(source_id, district_id)
        change(source)
        source.updated_at = self.clock()
        return await self.repository.save(source)

    async def bulk_update_metadata(
        self,
        district_id: str,
        source_ids: Sequence[str],
        *,
        category: Optional[str] = None,
        tags: Optional[List[str]] = None,
        expires_at: Optional[datetime] = None,
        check_frequency_days: Optional[int] = None,
    ) -> BulkOperationResult:
        if check_frequency_days is not None and check_frequency_days <= 0:
            raise ValidationError("check_frequency_days must be positive")

        def change(s: KnowledgeSource) -> None:
            if category is not None:
                s.category = category
            if tags is not None:
                s.tags = list(tags)
            if expires_at is not None:
                s.expires_at = expires_at
            if check_frequency_days is not None:
                s.check_frequency_days = check_frequency_days

        return await self._run(
            "metadata update", district_id, source_ids,
            lambda sid: self._mutate(district_id, sid, change),
        )

    async def bulk_add_tags(
        self, district_id: str, source_ids: Sequence[str], tags: Sequence[str]
    ) -> BulkOperationResult:
        def change(s: KnowledgeSource) -> None:
            s.tags = _merge_tags(s.tags, tags)

        return await self._run(
            "add tags", district_id, source_ids,
            lambda sid: self._mutate(district_id, sid, change),
        )

    async def bulk_remove_tags(
        self, district_id: str, source_ids: Sequence[str], tags: Sequence[str]
    ) -> BulkOperationResult:
        drop = set(tags)

        def change(s: KnowledgeSource) -> None:
            s.tags = [t for t in s.tags if t not in drop]

        return await self._run(
            "remove tags", district_id, source_ids,
            lambda sid: self._mutate(district_id, sid, change),
        )
