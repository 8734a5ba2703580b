from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from tenacity import retry, stop_after_attempt, wait_exponential

from common.errors import (
    DuplicateSourceError,
    SourceNotFoundError,
    UnsupportedFormatError,
    require_district,
)
from common.logger import get_logger
from ingestion.chunkers import SemanticChunker
from ingestion.document_models import ChunkingOptions, EmbeddedChunk
from ingestion.hash_utils import sha256_bytes, sha256_text
from ingestion.loaders import fetch_url_async
from ingestion.parser_registry import ParserRegistry, default_registry
from lifecycle.bulk_operations import soft_delete_source
from lifecycle.source_models import (
    KnowledgeSource,
    Page,
    SourceQuery,
    SourceStatus,
    SourceType,
    utcnow,
)
from lifecycle.source_repository import SourceRepository
from lifecycle.workflow import SourceWorkflow
from vectorstore.chunk_index import ChunkIndex
from vectorstore.embedding_pipeline import EmbeddingPipeline

log = get_logger(__name__)

STORE_BATCH_SIZE = 100


class ProcessingStage(str, Enum):
    QUEUED = "QUEUED"
    PARSING = "PARSING"
    CHUNKING = "CHUNKING"
    EMBEDDING = "EMBEDDING"
    INDEXING = "INDEXING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


STAGE_PROGRESS = {
    ProcessingStage.QUEUED: 0,
    ProcessingStage.PARSING: 10,
    ProcessingStage.CHUNKING: 30,
    ProcessingStage.EMBEDDING: 50,
    ProcessingStage.INDEXING: 70,
    ProcessingStage.COMPLETED: 100,
}


@dataclass
class ProcessingStatus:
    source_id: str
    status: ProcessingStage = ProcessingStage.QUEUED
    progress: int = 0
    current_step: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    chunk_count: int = 0


@retry(wait=wait_exponential(multiplier=0.5, min=0.5, max=4), stop=stop_after_attempt(3), reraise=True)
async def _upsert_with_retry(index: ChunkIndex, district_id: str, batch: Sequence[EmbeddedChunk]) -> int:
    """
    Retry wrapper around index upserts with exponential backoff. Upserts are by
    chunk id, so a retried batch is idempotent.
    """
    return await index.upsert(district_id, batch)


class KnowledgeService:
    """
    Ingestion entry point: bytes + MIME type in, indexed chunks and a
    pollable processing status out.
      1) validate format and reject duplicate uploads (sha256 of the bytes)
      2) create a DRAFT source
      3) parse -> chunk -> embed -> replace the source's chunks in the index
      4) move the source to PENDING_REVIEW (or publish when auto_publish is set)
    Processing failures end in a FAILED status with a readable error; they are
    not raised to the caller.
    """

    def __init__(
        self,
        repository: SourceRepository,
        index: ChunkIndex,
        embeddings: EmbeddingPipeline,
        *,
        parsers: Optional[ParserRegistry] = None,
        chunking: Optional[ChunkingOptions] = None,
        workflow: Optional[SourceWorkflow] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.index = index
        self.embeddings = embeddings
        self.parsers = parsers or default_registry()
        self.chunker = SemanticChunker(chunking)
        self.workflow = workflow or SourceWorkflow(repository, clock=clock)
        self.clock = clock
        self._statuses: Dict[str, ProcessingStatus] = {}

    def get_processing_status(self, source_id: str) -> Optional[ProcessingStatus]:
        return self._statuses.get(source_id)

    def _advance(self, status: ProcessingStatus, stage: ProcessingStage, step: str) -> None:
        status.status = stage
        status.progress = STAGE_PROGRESS.get(stage, status.progress)
        status.current_step = step
        log.debug("Source %s: %s (%d%%)", status.source_id, step, status.progress)

    async def ingest_document(
        self,
        district_id: str,
        data: bytes,
        mime_type: Optional[str],
        *,
        title: Optional[str] = None,
        source_type: SourceType = SourceType.OTHER,
        category: Optional[str] = None,
        tags: Optional[List[str]] = None,
        user_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        check_frequency_days: int = 30,
        url: Optional[str] = None,
        auto_publish: bool = False,
    ) -> Tuple[KnowledgeSource, ProcessingStatus]:
        require_district(district_id)
        mime = self.parsers.resolve_mime_type(data, mime_type)
        if not self.parsers.is_supported(mime):
            raise UnsupportedFormatError(mime)

        file_hash = sha256_bytes(data)
        existing = await self.repository.find_by_hash(district_id, file_hash)
        if existing is not None:
            raise DuplicateSourceError(existing.id, file_hash)

        source = KnowledgeSource(
            district_id=district_id,
            title=title or "Untitled",
            source_type=source_type,
            category=category,
            tags=list(tags or []),
            file_size=len(data),
            file_hash=file_hash,
            mime_type=mime,
            url=url,
            created_by=user_id,
            expires_at=expires_at,
            check_frequency_days=check_frequency_days,
        )
        await self.repository.save(source)
        log.info("Created source %s (%s, %d bytes) in %s", source.id, mime, len(data), district_id)

        status = await self.process_source(
            source, data, mime, keep_title=title is not None, auto_publish=auto_publish, user_id=user_id
        )
        return await self.repository.get(district_id, source.id) or source, status

    async def ingest_url(self, district_id: str, url: str, **kwargs) -> Tuple[KnowledgeSource, ProcessingStatus]:
        fetched = await fetch_url_async(url)
        kwargs.setdefault("source_type", SourceType.WEB_PAGE)
        return await self.ingest_document(
            district_id, fetched.data, fetched.mime_type, url=url, **kwargs
        )

    async def process_source(
        self,
        source: KnowledgeSource,
        data: bytes,
        mime_type: str,
        *,
        keep_title: bool = True,
        auto_publish: bool = False,
        user_id: Optional[str] = None,
    ) -> ProcessingStatus:
        status = ProcessingStatus(source_id=source.id, started_at=self.clock())
        self._statuses[source.id] = status
        try:
            self._advance(status, ProcessingStage.PARSING, "Parsing document")
            parsed = self.parsers.parse(data, mime_type)

            self._advance(status, ProcessingStage.CHUNKING, "Chunking content")
            chunks = self.chunker.chunk(parsed, source.id)

            self._advance(status, ProcessingStage.EMBEDDING, "Generating embeddings")
            embedded = (await self.embeddings.embed(chunks)).chunks

            self._advance(status, ProcessingStage.INDEXING, "Indexing chunks")
            await self._store_chunks(source.district_id, source.id, embedded)

            now = self.clock()
            source = await self.repository.get(source.district_id, source.id) or source
            if not keep_title and parsed.title != "Untitled":
                source.title = parsed.title
            source.chunk_count = len(embedded)
            source.processed_at = now
            source.content_hash = sha256_text(parsed.content)
            source.updated_at = now
            await self.repository.save(source)

            if source.status in (SourceStatus.DRAFT, SourceStatus.REJECTED):
                if auto_publish:
                    await self.workflow.publish(source.district_id, source.id, user_id)
                else:
                    await self.workflow.submit_for_review(source.district_id, source.id, user_id)
        except Exception as e:
            status.status = ProcessingStage.FAILED
            status.error = getattr(e, "message", None) or str(e) or type(e).__name__
            status.completed_at = self.clock()
            log.error("Processing failed for source %s: %s", source.id, e)
            return status

        status.status = ProcessingStage.COMPLETED
        status.progress = 100
        status.current_step = "Completed"
        status.chunk_count = len(embedded)
        status.completed_at = now
        log.info("Processed source %s into %d chunks", source.id, len(embedded))
        return status

    async def _store_chunks(
        self, district_id: str, source_id: str, chunks: Sequence[EmbeddedChunk]
    ) -> int:
        """Replace the whole chunk set of a source, in upsert batches."""
        removed = await self.index.delete_by_source(district_id, source_id)
        if removed:
            log.info("Removed %d previous chunks of source %s", removed, source_id)
        stored = 0
        for i in range(0, len(chunks), STORE_BATCH_SIZE):
            stored += await _upsert_with_retry(self.index, district_id, chunks[i : i + STORE_BATCH_SIZE])
        return stored

    async def reprocess_source(
        self, district_id: str, source_id: str, data: bytes, mime_type: Optional[str] = None
    ) -> ProcessingStatus:
        source = await self.get_source(district_id, source_id)
        mime = self.parsers.resolve_mime_type(data, mime_type or source.mime_type)
        source.file_hash = sha256_bytes(data)
        source.file_size = len(data)
        source.mime_type = mime
        await self.repository.save(source)
        return await self.process_source(source, data, mime)

    async def handle_content_change(self, source: KnowledgeSource, content: str) -> None:
        """Freshness hook: re-index a web page whose fetched text changed."""
        status = await self.reprocess_source(
            source.district_id, source.id, content.encode("utf-8"), "text/plain"
        )
        if status.status == ProcessingStage.FAILED:
            log.warning("Re-index after content change failed for %s: %s", source.id, status.error)

    async def get_source(self, district_id: str, source_id: str) -> KnowledgeSource:
        source = await self.repository.get(district_id, source_id)
        if source is None:
            raise SourceNotFoundError(source_id, district_id)
        return source

    async def list_sources(
        self,
        district_id: str,
        query: Optional[SourceQuery] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Page[KnowledgeSource]:
        return await self.repository.list(district_id, query or SourceQuery(), page, page_size)

    async def delete_source(self, district_id: str, source_id: str) -> KnowledgeSource:
        self._statuses.pop(source_id, None)
        return await soft_delete_source(
            self.repository, self.index, district_id, source_id, self.clock()
        )
